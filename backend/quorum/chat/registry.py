"""Connection registry for group rooms.

Keeps two indexes that must always agree:

    connection_id -> set of group_ids it has joined
    group_id      -> set of connection_ids currently in the room

A room has no existence of its own: it is whatever set of connections
joined it, and disappears from the index when the last one leaves.

Thread Safety:
    Every mutation and snapshot takes ``self._lock``. None of the operations
    await anything, so they are also atomic with respect to other asyncio
    tasks on the same loop.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional, Set

from .errors import RegistryInconsistency

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Connection:
    """One live transport session.

    Attributes:
        connection_id: Server-assigned, unique per active session.
        identity: Resolved user identity (may be a guest name).
        connected_at: Unix timestamp of the transport connect.
    """
    connection_id: str
    identity: str = ""
    connected_at: float = field(default_factory=time.time)


class ConnectionRegistry:
    """Authoritative mapping between connections and rooms.

    Instances are independent; the application holds one per process and
    passes it to the components that need it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        # connection_id -> Connection
        self._connections: Dict[str, Connection] = {}
        # connection_id -> joined group_ids
        self._rooms_by_connection: Dict[str, Set[str]] = {}
        # group_id -> member connection_ids
        self._members_by_room: Dict[str, Set[str]] = {}

    def register(self, connection: Connection) -> None:
        """Record a connection with no rooms. Re-registering is a no-op."""
        with self._lock:
            if connection.connection_id in self._connections:
                return
            self._connections[connection.connection_id] = connection
            self._rooms_by_connection.setdefault(connection.connection_id, set())
        logger.debug(f"[Registry] Registered {connection.connection_id} ({connection.identity})")

    def join(self, connection_id: str, group_id: str) -> bool:
        """Add a connection to a room.

        Joining a room already joined is a no-op. An unknown connection id is
        registered on the fly so that ``disconnect`` can still clean it up.

        Returns:
            True if membership changed.
        """
        with self._lock:
            if connection_id not in self._connections:
                self._connections[connection_id] = Connection(connection_id=connection_id)
            rooms = self._rooms_by_connection.setdefault(connection_id, set())
            if group_id in rooms:
                return False
            rooms.add(group_id)
            self._members_by_room.setdefault(group_id, set()).add(connection_id)
        logger.info(f"[Registry] {connection_id} joined {group_id}")
        return True

    def leave(self, connection_id: str, group_id: str) -> bool:
        """Remove a connection from a room. Leaving a room not joined is a no-op.

        Returns:
            True if membership changed.
        """
        with self._lock:
            changed = self._leave_locked(connection_id, group_id)
        if changed:
            logger.info(f"[Registry] {connection_id} left {group_id}")
        return changed

    def disconnect(self, connection_id: str) -> FrozenSet[str]:
        """Leave every room and discard the connection record.

        Safe to call for connections that were never (fully) registered and
        for connections that are already gone.

        Returns:
            The rooms the connection was removed from.
        """
        with self._lock:
            rooms = frozenset(self._rooms_by_connection.get(connection_id, ()))
            for group_id in rooms:
                self._leave_locked(connection_id, group_id)
            self._rooms_by_connection.pop(connection_id, None)
            known = self._connections.pop(connection_id, None) is not None
        if known:
            logger.info(f"[Registry] {connection_id} disconnected, left {len(rooms)} room(s)")
        return rooms

    def _leave_locked(self, connection_id: str, group_id: str) -> bool:
        rooms = self._rooms_by_connection.get(connection_id)
        if not rooms or group_id not in rooms:
            return False
        rooms.discard(group_id)
        members = self._members_by_room.get(group_id)
        if members is not None:
            members.discard(connection_id)
            if not members:
                del self._members_by_room[group_id]
        return True

    # =========================================================================
    # Snapshots
    # =========================================================================

    def members_of(self, group_id: str) -> FrozenSet[str]:
        """Snapshot of the connections currently in a room."""
        with self._lock:
            return frozenset(self._members_by_room.get(group_id, ()))

    def rooms_of(self, connection_id: str) -> FrozenSet[str]:
        """Snapshot of the rooms a connection has joined."""
        with self._lock:
            return frozenset(self._rooms_by_connection.get(connection_id, ()))

    def get(self, connection_id: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.get(connection_id)

    def room_size(self, group_id: str) -> int:
        with self._lock:
            return len(self._members_by_room.get(group_id, ()))

    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def check_invariants(self) -> None:
        """Verify both indexes agree.

        Raises:
            RegistryInconsistency: If any room lists a connection that does not
                list the room back, or vice versa.
        """
        with self._lock:
            for group_id, members in self._members_by_room.items():
                if not members:
                    raise RegistryInconsistency(f"Empty room {group_id} left in index")
                for connection_id in members:
                    if group_id not in self._rooms_by_connection.get(connection_id, ()):
                        raise RegistryInconsistency(
                            f"{connection_id} in room {group_id} but room missing from connection"
                        )
            for connection_id, rooms in self._rooms_by_connection.items():
                if connection_id not in self._connections:
                    raise RegistryInconsistency(f"Rooms tracked for unknown connection {connection_id}")
                for group_id in rooms:
                    if connection_id not in self._members_by_room.get(group_id, ()):
                        raise RegistryInconsistency(
                            f"{connection_id} lists {group_id} but room does not list it"
                        )
