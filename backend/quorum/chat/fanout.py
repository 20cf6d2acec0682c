"""Room Router: room membership requests and room-scoped fan-out.

The router owns the mapping from connection ids to their outbound channels
and is the only component that mutates the ``ConnectionRegistry``. Fan-out
works on a membership snapshot taken at publish time, so a connection that
joins while a publish is in flight may or may not get that message.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .channel import ConnectionChannel
from .errors import DeliveryError
from .registry import Connection, ConnectionRegistry
from .schemas import StoredMessage

logger = logging.getLogger(__name__)

# Outbound event name for fan-out frames
NEW_MESSAGE_EVENT = "newMessage"


@dataclass
class PublishReport:
    """Outcome of one fan-out.

    Attributes:
        group_id: Room the message was published to.
        message_id: Store id of the published message.
        delivered: Connections the frame was queued for.
        failed: Connections whose delivery failed (logged, not raised).
    """
    group_id: str
    message_id: str
    delivered: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


def new_message_event(group_id: str, message: StoredMessage) -> Dict[str, Any]:
    """Build the outbound frame, tagged with its group for multi-room clients."""
    return {
        "type": NEW_MESSAGE_EVENT,
        "groupId": group_id,
        "message": message.model_dump(),
    }


class RoomRouter:
    """Deliver canonical messages to the current members of a room."""

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry
        # connection_id -> outbound channel
        self._channels: Dict[str, ConnectionChannel] = {}

    def attach(self, connection: Connection, channel: ConnectionChannel) -> None:
        """Register a freshly connected client and its outbound channel."""
        self.registry.register(connection)
        self._channels[connection.connection_id] = channel

    def join(self, connection_id: str, group_id: str) -> bool:
        return self.registry.join(connection_id, group_id)

    def leave(self, connection_id: str, group_id: str) -> bool:
        return self.registry.leave(connection_id, group_id)

    def disconnect(self, connection_id: str) -> None:
        """Drop a connection from every room and close its channel.

        Idempotent; used both for transport disconnects and for channels that
        failed during fan-out.
        """
        rooms = self.registry.disconnect(connection_id)
        channel = self._channels.pop(connection_id, None)
        if channel is not None:
            channel.close()
        if rooms or channel is not None:
            logger.info(f"[Router] Disconnected {connection_id} from {sorted(rooms)}")

    def on_channel_failure(self, connection_id: str, reason: str) -> None:
        """Channel failure callback: a stalled or broken client is disconnected."""
        logger.warning(f"[Router] Dropping {connection_id}: {reason}")
        self.disconnect(connection_id)

    def publish(self, group_id: str, message: StoredMessage) -> PublishReport:
        """Fan a stored message out to every current member of ``group_id``.

        Enqueueing is synchronous, so two publishes for the same room reach
        each member's channel in call order. A failure for one member never
        affects the others and is never raised to the caller.
        """
        members = self.registry.members_of(group_id)
        report = PublishReport(group_id=group_id, message_id=message.id)
        if not members:
            logger.debug(f"[Router] No live members in {group_id} for {message.id}")
            return report

        event = new_message_event(group_id, message)
        for connection_id in sorted(members):
            try:
                self._deliver(connection_id, event)
                report.delivered.append(connection_id)
            except DeliveryError as e:
                logger.warning(f"[Router] {e.message}")
                report.failed.append(connection_id)

        logger.info(
            f"[Router] Published {message.id} (seq {message.sequence}) to {group_id}: "
            f"{len(report.delivered)} delivered, {len(report.failed)} failed"
        )
        return report

    def send_to(self, connection_id: str, event: Dict[str, Any]) -> bool:
        """Queue a direct reply for one connection. Returns False if it failed."""
        try:
            self._deliver(connection_id, event)
            return True
        except DeliveryError as e:
            logger.debug(f"[Router] {e.message}")
            return False

    def _deliver(self, connection_id: str, event: Dict[str, Any]) -> None:
        channel = self._channels.get(connection_id)
        if channel is None:
            raise DeliveryError(connection_id, "no channel attached")
        channel.offer(event)
