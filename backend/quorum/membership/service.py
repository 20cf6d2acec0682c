"""Membership service deciding which groups a connection may join.

User profiles and group membership live outside this service in a real
deployment; the realtime core only asks ``authorize(connection, group_id)``.
``StaticMembershipService`` answers from the ``membership`` config section.
"""
import logging
import re
from abc import ABC, abstractmethod

from quorum.chat.registry import Connection
from quorum.config import MembershipSettings

logger = logging.getLogger(__name__)

# Names handed out to connections that did not identify themselves
GUEST_NAME_PATTERN = re.compile(r"^Guest \d+$")


def is_guest_identity(identity: str) -> bool:
    return not identity or bool(GUEST_NAME_PATTERN.match(identity))


class MembershipService(ABC):
    """Answers whether a connection may join a group."""

    @abstractmethod
    def authorize(self, connection: Connection, group_id: str) -> bool:
        """Return True if ``connection`` may join ``group_id``."""


class StaticMembershipService(MembershipService):
    """Membership from configuration.

    Rules, in order:
        1. Guests are refused everywhere when ``allow_guests`` is false.
        2. A group listed in ``groups`` admits only the identities listed.
        3. Any other group admits everyone if ``open_groups`` is true.
    """

    def __init__(self, settings: MembershipSettings) -> None:
        self._settings = settings

    def authorize(self, connection: Connection, group_id: str) -> bool:
        identity = connection.identity
        if not self._settings.allow_guests and is_guest_identity(identity):
            logger.info(f"[Membership] Guest {identity!r} refused for {group_id}")
            return False

        allowed = self._settings.groups.get(group_id)
        if allowed is not None:
            ok = identity in allowed
            if not ok:
                logger.info(f"[Membership] {identity!r} is not a member of {group_id}")
            return ok

        return self._settings.open_groups
