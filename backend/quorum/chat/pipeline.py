"""Message ingest pipeline: validate, persist, then publish.

State machine for one submission::

    RECEIVED -> VALIDATED -> PERSISTED -> PUBLISHED

``PERSISTED`` is the commit point. Validation and storage failures are
raised to the caller and nothing is published. Anything that goes wrong
after the store accepted the message is logged and the submission still
succeeds; peers that missed the live frame get it from history.

Submissions for one group hold that group's lock across persist + publish,
so fan-out order equals persisted order. Different groups do not block each
other.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from .errors import StorageError, ValidationError
from .fanout import PublishReport, RoomRouter
from .schemas import MessageSubmission, NewMessage, StoredMessage
from quorum.store.base import MessageStore

logger = logging.getLogger(__name__)


class IngestState(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    PERSISTED = "persisted"
    PUBLISHED = "published"


@dataclass
class SubmitResult:
    """Outcome of a successful submission.

    Attributes:
        message: The stored, canonical message.
        state: PUBLISHED if fan-out ran, PERSISTED if it raised.
        report: Fan-out report when available.
    """
    message: StoredMessage
    state: IngestState
    report: Optional[PublishReport] = None


Candidate = Union[NewMessage, MessageSubmission, Mapping[str, Any]]


def _clean(value: Optional[str]) -> str:
    return value.strip() if isinstance(value, str) else ""


def validate_submission(candidate: Candidate) -> NewMessage:
    """Turn a client submission into a ``NewMessage`` or raise ``ValidationError``.

    ``group_id`` and ``sender`` are stripped; ``body`` is kept verbatim but
    a whitespace-only body counts as empty. An already validated
    ``NewMessage`` is returned as is.
    """
    if isinstance(candidate, NewMessage):
        return candidate
    if not isinstance(candidate, MessageSubmission):
        if not isinstance(candidate, Mapping):
            raise ValidationError("Submission must be an object")
        try:
            candidate = MessageSubmission.model_validate(dict(candidate))
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid submission: {e.errors()[0]['msg']}") from e

    group_id = _clean(candidate.group_id)
    if not group_id:
        raise ValidationError("group_id is required", field="group_id")
    sender = _clean(candidate.sender)
    if not sender:
        raise ValidationError("sender is required", field="sender")

    body = candidate.body or ""
    attachment = candidate.attachment or None
    if not body.strip() and not attachment:
        raise ValidationError("Message needs a body or an attachment", field="body")

    return NewMessage(group_id=group_id, sender=sender, body=body, attachment=attachment)


class MessageIngestPipeline:
    """Turn client submissions into durable, fanned-out messages."""

    def __init__(self, store: MessageStore, router: RoomRouter) -> None:
        self.store = store
        self.router = router
        # group_id -> lock serializing persist + publish for that group.
        # An entry lives only while a submission holds or waits for it.
        self._group_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _group_lock(self, group_id: str):
        lock = self._group_locks.get(group_id)
        if lock is None:
            lock = self._group_locks[group_id] = asyncio.Lock()
        self._lock_users[group_id] = self._lock_users.get(group_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[group_id] -= 1
            if not self._lock_users[group_id]:
                del self._lock_users[group_id]
                del self._group_locks[group_id]

    async def submit(self, candidate: Candidate) -> SubmitResult:
        """Validate, persist and publish one message.

        Raises:
            ValidationError: The submission is malformed. Nothing was stored.
            StorageError: The store did not accept the message. Nothing was
                published and the submitter may retry.
        """
        message = validate_submission(candidate)
        state = IngestState.VALIDATED
        logger.debug(f"[Ingest] {state.value} message for {message.group_id} from {message.sender}")

        async with self._group_lock(message.group_id):
            try:
                stored = await self.store.append(message)
            except StorageError:
                raise
            except Exception as e:
                logger.error(f"[Ingest] Store rejected message for {message.group_id}: {e}")
                raise StorageError(f"Could not save message: {e}") from e
            state = IngestState.PERSISTED
            logger.info(
                f"[Ingest] Persisted {stored.id} in {stored.group_id} "
                f"(seq {stored.sequence}) from {stored.sender}"
            )

            report = None
            try:
                report = self.router.publish(stored.group_id, stored)
                state = IngestState.PUBLISHED
            except Exception as e:
                logger.error(f"[Ingest] Fan-out of {stored.id} failed, message kept: {e}")

        return SubmitResult(message=stored, state=state, report=report)

    async def history(
        self,
        group_id: str,
        since: Optional[int] = None,
        limit: Optional[int] = None,
    ):
        """Read persisted messages, wrapping store failures in ``StorageError``."""
        try:
            return await self.store.query(group_id, since=since, limit=limit)
        except StorageError:
            raise
        except Exception as e:
            logger.error(f"[Ingest] History query for {group_id} failed: {e}")
            raise StorageError(f"Could not load messages: {e}") from e
