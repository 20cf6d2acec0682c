"""Per-connection outbound channel.

Every frame sent to a client goes through its ``ConnectionChannel``: a
bounded FIFO queue plus one writer task that drains it into the transport.
Producers never await the transport, so a stalled client can only fill its
own queue. When the queue overflows, or a send fails or times out, the
channel closes itself and reports the failure once through ``on_failure``.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Protocol

from .errors import DeliveryError

logger = logging.getLogger(__name__)

# Default buffer size when no config is supplied
DEFAULT_QUEUE_SIZE = 256

# Default per-send timeout (seconds)
DEFAULT_SEND_TIMEOUT = 5.0


class Transport(Protocol):
    """The subset of a Starlette WebSocket the channel needs."""

    async def send_json(self, data: Any) -> None: ...


FailureCallback = Callable[[str, str], None]


class ConnectionChannel:
    """Ordered, bounded, isolated delivery to one connection.

    Args:
        connection_id: Connection this channel belongs to.
        transport: Object with an async ``send_json``.
        max_queue: Frames buffered before the channel is considered stalled.
        send_timeout: Seconds a single send may take.
        on_failure: Called with ``(connection_id, reason)`` the first time the
            channel fails. Not called for a normal ``close()``.
    """

    def __init__(
        self,
        connection_id: str,
        transport: Transport,
        max_queue: int = DEFAULT_QUEUE_SIZE,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        on_failure: Optional[FailureCallback] = None,
    ) -> None:
        self.connection_id = connection_id
        self._transport = transport
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self._send_timeout = send_timeout
        self._on_failure = on_failure
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self._failed = asyncio.Event()
        self.sent = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def failed(self) -> bool:
        """True if the channel closed because of a failure, not a normal close()."""
        return self._failed.is_set()

    def start(self) -> None:
        """Start the writer task on the running loop."""
        if self._task is None and not self._closed:
            self._task = asyncio.create_task(
                self._drain(), name=f"channel-{self.connection_id}"
            )

    def offer(self, event: Dict[str, Any]) -> None:
        """Enqueue a frame without waiting.

        Raises:
            DeliveryError: If the channel is closed or its buffer is full. A
                full buffer closes the channel.
        """
        if self._closed:
            raise DeliveryError(self.connection_id, "channel closed")
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._fail("outbound buffer full")
            raise DeliveryError(self.connection_id, "outbound buffer full")

    async def drain(self) -> None:
        """Wait until every frame queued so far has been handed to the transport."""
        if self._task is None or self._closed:
            return
        await self._queue.join()

    def close(self) -> None:
        """Stop the writer task. Frames still queued are discarded."""
        if self._closed:
            return
        self._closed = True
        self._cancel_writer()
        self._discard_pending()
        logger.debug(f"[Channel] {self.connection_id} closed after {self.sent} frames")

    async def wait_failed(self) -> None:
        """Block until the channel fails. Never returns for a normally closed channel."""
        await self._failed.wait()

    async def wait_closed(self) -> None:
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    def _cancel_writer(self) -> None:
        task = self._task
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    def _discard_pending(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._queue.task_done()

    def _fail(self, reason: str) -> None:
        if self._closed:
            return
        self._closed = True
        logger.warning(f"[Channel] {self.connection_id} failed: {reason}")
        self._failed.set()
        self._cancel_writer()
        self._discard_pending()
        if self._on_failure is not None:
            self._on_failure(self.connection_id, reason)

    async def _drain(self) -> None:
        while not self._closed:
            event = await self._queue.get()
            try:
                await asyncio.wait_for(
                    self._transport.send_json(event), timeout=self._send_timeout
                )
                self.sent += 1
            except asyncio.TimeoutError:
                self._fail(f"send timed out after {self._send_timeout}s")
            except Exception as e:
                self._fail(f"send failed: {e}")
            finally:
                self._queue.task_done()
