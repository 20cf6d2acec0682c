"""MessageStore abstract interface for durable message storage.

The realtime core only needs two operations from the store:

    append(message) -> stored message with id, sequence and timestamp
    query(group_id, since?) -> stored messages of the group, oldest first

Implementations raise ``StorageError`` for anything that prevents a write
or read from completing.

Usage:
    from quorum.store import InMemoryMessageStore

    store = InMemoryMessageStore()
    stored = await store.append(NewMessage(group_id="g1", sender="alice", body="hi"))
    history = await store.query("g1")
"""
from abc import ABC, abstractmethod
from typing import List, Optional

from quorum.chat.schemas import NewMessage, StoredMessage


class MessageStore(ABC):
    """Abstract base class for message stores."""

    #: Short backend name reported by /health
    name: str = "abstract"

    @abstractmethod
    async def append(self, message: NewMessage) -> StoredMessage:
        """Persist a validated message.

        The store assigns ``id``, ``ts`` and the next ``sequence`` of the group.

        Raises:
            StorageError: If the write did not happen.
        """

    @abstractmethod
    async def query(
        self,
        group_id: str,
        since: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[StoredMessage]:
        """Return messages of a group in persisted order.

        Args:
            group_id: Group to read.
            since: Only messages with ``sequence > since``.
            limit: Maximum number of messages, taken from the oldest end.

        Raises:
            StorageError: If the store could not be read.
        """

    async def ensure_ready(self) -> None:
        """Prepare backing resources (indexes, connections). Optional."""

    async def close(self) -> None:
        """Release backing resources. Optional."""
