"""In-process message store used for development and tests."""
import logging
import time
import uuid
from typing import Dict, List, Optional

from quorum.chat.schemas import NewMessage, StoredMessage

from .base import MessageStore

logger = logging.getLogger(__name__)


class InMemoryMessageStore(MessageStore):
    """Append-only per-group lists. Nothing survives a restart."""

    name = "memory"

    def __init__(self) -> None:
        # group_id -> messages in insertion order
        self._messages: Dict[str, List[StoredMessage]] = {}

    async def append(self, message: NewMessage) -> StoredMessage:
        history = self._messages.setdefault(message.group_id, [])
        stored = StoredMessage(
            id=uuid.uuid4().hex,
            group_id=message.group_id,
            sender=message.sender,
            body=message.body,
            attachment=message.attachment,
            sequence=len(history) + 1,
            ts=time.time(),
        )
        history.append(stored)
        logger.debug(f"[Store] Appended {stored.id} to {stored.group_id} (seq {stored.sequence})")
        return stored

    async def query(
        self,
        group_id: str,
        since: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[StoredMessage]:
        messages = self._messages.get(group_id, [])
        if since is not None:
            # sequence n lives at index n - 1
            messages = messages[max(since, 0):]
        if limit is not None:
            messages = messages[:limit]
        return list(messages)

    def count(self, group_id: str) -> int:
        return len(self._messages.get(group_id, []))
