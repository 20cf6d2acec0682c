"""Wiring for the realtime chat core.

``ChatService`` bundles the components one process needs: a connection
registry, the room router built on it, the ingest pipeline, the store and
the membership service. The application creates one at startup and keeps it
in ``app.state.chat``; tests build as many independent ones as they like.
"""
import itertools
import logging
import uuid
from typing import Optional

from quorum.config import AppSettings
from quorum.membership import MembershipService, StaticMembershipService
from quorum.store import MessageStore, build_store

from .channel import ConnectionChannel, Transport
from .errors import NotAuthorizedError
from .fanout import RoomRouter
from .pipeline import Candidate, MessageIngestPipeline, SubmitResult, validate_submission
from .registry import Connection, ConnectionRegistry

logger = logging.getLogger(__name__)


class ChatService:
    """Per-process container for the realtime chat components."""

    def __init__(
        self,
        settings: AppSettings,
        store: MessageStore,
        membership: MembershipService,
        registry: Optional[ConnectionRegistry] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.membership = membership
        self.registry = registry or ConnectionRegistry()
        self.router = RoomRouter(self.registry)
        self.pipeline = MessageIngestPipeline(store, self.router)
        self._guest_numbers = itertools.count(1)

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    def open_connection(
        self, transport: Transport, identity: Optional[str] = None
    ) -> ConnectionChannel:
        """Create a connection record and its started outbound channel.

        Identity defaults to ``Guest N`` when the client did not give one.
        """
        name = (identity or "").strip() or f"Guest {next(self._guest_numbers)}"
        connection = Connection(connection_id=uuid.uuid4().hex, identity=name)
        channel = ConnectionChannel(
            connection.connection_id,
            transport,
            max_queue=self.settings.realtime.outbound_queue_size,
            send_timeout=self.settings.realtime.send_timeout_seconds,
            on_failure=self.router.on_channel_failure,
        )
        self.router.attach(connection, channel)
        channel.start()
        logger.info(f"[Chat] Opened {connection.connection_id} as {name!r}")
        return channel

    def close_connection(self, connection_id: str) -> None:
        self.router.disconnect(connection_id)

    # =========================================================================
    # Membership-checked operations
    # =========================================================================

    def authorize(self, identity: Optional[str], group_id: str) -> None:
        """Check that ``identity`` belongs to ``group_id``.

        Raises:
            NotAuthorizedError: If the membership service refuses it.
        """
        connection = Connection(connection_id="", identity=identity or "")
        if not self.membership.authorize(connection, group_id):
            raise NotAuthorizedError(group_id, connection.identity)

    async def submit(self, candidate: Candidate, identity: Optional[str] = None) -> SubmitResult:
        """Validate, authorize and hand a submission to the ingest pipeline.

        The sender must be allowed in the target group, and so must
        ``identity`` (the submitting connection) when it differs.

        Raises:
            ValidationError: Malformed submission.
            NotAuthorizedError: Sender or connection may not post to the group.
            StorageError: The store did not accept the message.
        """
        message = validate_submission(candidate)
        self.authorize(message.sender, message.group_id)
        if identity is not None and identity != message.sender:
            self.authorize(identity, message.group_id)
        return await self.pipeline.submit(message)

    def join_group(self, connection_id: str, group_id: str) -> bool:
        """Authorize and join.

        Raises:
            NotAuthorizedError: If the membership service refuses the join.
        """
        connection = self.registry.get(connection_id)
        if connection is None:
            connection = Connection(connection_id=connection_id)
        if not self.membership.authorize(connection, group_id):
            raise NotAuthorizedError(group_id, connection.identity)
        return self.router.join(connection_id, group_id)

    def leave_group(self, connection_id: str, group_id: str) -> bool:
        return self.router.leave(connection_id, group_id)


def build_chat_service(
    settings: AppSettings,
    store: Optional[MessageStore] = None,
    membership: Optional[MembershipService] = None,
) -> ChatService:
    """Create a ChatService from settings, building defaults for missing collaborators."""
    return ChatService(
        settings=settings,
        store=store or build_store(settings),
        membership=membership or StaticMembershipService(settings.membership),
    )
