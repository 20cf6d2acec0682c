"""Client-side history reconciliation for one group.

A client joining a room races two channels: the history fetch (pull) and
the live fan-out (push). Live messages that arrive before history are
buffered; once history lands, the buffer is merged behind it. A message can
legitimately show up in both, so every insert is deduplicated.

Dedup key is the store-assigned ``id``. Messages without one fall back to
``(sender, body, attachment, round(ts))``. When messages carry a
``sequence`` the transcript stays sorted by it, so a late-delivered live
message still lands in persisted order.
"""
import bisect
import logging
from typing import Any, Hashable, Iterable, List, Mapping, Set, Union

from .schemas import StoredMessage

logger = logging.getLogger(__name__)

MessageLike = Union[StoredMessage, Mapping[str, Any]]


def _as_message(message: MessageLike) -> StoredMessage:
    if isinstance(message, StoredMessage):
        return message
    return StoredMessage.model_validate(dict(message))


def dedup_key(message: StoredMessage) -> Hashable:
    """Identity of a message for duplicate suppression."""
    if message.id:
        return ("id", message.id)
    return ("fields", message.sender, message.body, message.attachment, round(message.ts))


class HistoryReconciler:
    """Builds one duplicate-free, ordered transcript for a group.

    Lifecycle::

        begin() -> on_live()* -> on_history() -> on_live()* -> reset()
    """

    def __init__(self, group_id: str) -> None:
        self.group_id = group_id
        self._transcript: List[StoredMessage] = []
        self._seen: Set[Hashable] = set()
        self._buffer: List[StoredMessage] = []
        self._buffering = False
        self._synced = False

    @property
    def is_synced(self) -> bool:
        """True once history has been merged."""
        return self._synced

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    @property
    def transcript(self) -> List[StoredMessage]:
        return list(self._transcript)

    def begin(self) -> None:
        """Start buffering live messages; call when the join is issued."""
        self.reset()
        self._buffering = True

    def reset(self) -> None:
        self._transcript = []
        self._seen = set()
        self._buffer = []
        self._buffering = False
        self._synced = False

    def on_live(self, message: MessageLike) -> bool:
        """Handle a live-delivered message.

        Returns:
            True if the message was added to the transcript (or buffered),
            False if it was ignored as foreign or duplicate.
        """
        msg = _as_message(message)
        if msg.group_id != self.group_id:
            return False
        if self._buffering and not self._synced:
            self._buffer.append(msg)
            return True
        return self._insert(msg)

    def on_history(self, messages: Iterable[MessageLike]) -> List[StoredMessage]:
        """Merge fetched history with whatever was buffered meanwhile.

        Returns:
            The reconciled transcript.
        """
        merged = 0
        for message in messages:
            msg = _as_message(message)
            if msg.group_id == self.group_id and self._insert(msg):
                merged += 1

        duplicates = 0
        for msg in self._buffer:
            if not self._insert(msg):
                duplicates += 1

        logger.debug(
            f"[Reconciler] {self.group_id}: {merged} from history, "
            f"{len(self._buffer) - duplicates} from live buffer, {duplicates} duplicate(s)"
        )
        self._buffer = []
        self._buffering = False
        self._synced = True
        return self.transcript

    def _insert(self, msg: StoredMessage) -> bool:
        key = dedup_key(msg)
        if key in self._seen:
            return False
        self._seen.add(key)

        if self._transcript and msg.sequence < self._transcript[-1].sequence:
            sequences = [m.sequence for m in self._transcript]
            self._transcript.insert(bisect.bisect_right(sequences, msg.sequence), msg)
        else:
            self._transcript.append(msg)
        return True


def reconcile(
    group_id: str,
    history: Iterable[MessageLike],
    live: Iterable[MessageLike],
) -> List[StoredMessage]:
    """One-shot merge of a history snapshot with live messages received during the fetch."""
    reconciler = HistoryReconciler(group_id)
    reconciler.begin()
    for message in live:
        reconciler.on_live(message)
    return reconciler.on_history(history)
