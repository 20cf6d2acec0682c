"""Async Python client for the Quorum realtime API.

The client joins groups over the WebSocket and fetches their history over
HTTP at the same time; a ``HistoryReconciler`` per group merges the two into
one transcript.

Usage:
    async with GroupChatClient("http://localhost:5000", identity="alice") as client:
        await client.join("group123")
        await client.send("group123", "hello")
        print(client.transcript("group123"))
"""
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
import websockets
from websockets.exceptions import ConnectionClosed

from quorum.chat.errors import StorageError, ValidationError
from quorum.chat.reconciler import HistoryReconciler
from quorum.chat.schemas import StoredMessage

logger = logging.getLogger(__name__)


def websocket_url(base_url: str, identity: Optional[str] = None) -> str:
    """Map an http(s) base URL to the ws(s) URL of the realtime endpoint."""
    url = base_url.rstrip("/")
    if url.startswith("https://"):
        url = "wss://" + url[len("https://"):]
    elif url.startswith("http://"):
        url = "ws://" + url[len("http://"):]
    url += "/ws"
    if identity:
        url += "?" + urlencode({"identity": identity})
    return url


class GroupChatClient:
    """Client for one realtime session.

    Args:
        base_url: HTTP base URL of the backend.
        identity: Display identity sent on connect.
        http: Optional preconfigured ``httpx.AsyncClient`` (tests pass one
            bound to an ASGI transport).
    """

    def __init__(
        self,
        base_url: str,
        identity: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.identity = identity
        self.connection_id: Optional[str] = None
        self._http = http or httpx.AsyncClient(base_url=self.base_url)
        self._owns_http = http is None
        self._ws = None
        self._listener: Optional[asyncio.Task] = None
        self._reconcilers: Dict[str, HistoryReconciler] = {}
        # group_id -> future resolved by the joinedGroup / error reply
        self._pending_joins: Dict[str, asyncio.Future] = {}
        self.join_timeout = 10.0
        # Non fan-out frames (acks, errors, pong) for callers that want them
        self.events: asyncio.Queue = asyncio.Queue()

    async def __aenter__(self) -> "GroupChatClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def connect(self) -> None:
        """Open the WebSocket and start dispatching inbound frames."""
        ws = await websockets.connect(websocket_url(self.base_url, self.identity))
        await self.attach(ws)

    async def attach(self, ws) -> None:
        """Use an already open WebSocket connection.

        Reads the ``connected`` frame, then starts the listener task.
        """
        self._ws = ws
        hello = json.loads(await ws.recv())
        if hello.get("type") != "connected":
            raise ConnectionError(f"Unexpected first frame: {hello}")
        self.connection_id = hello["connectionId"]
        self.identity = hello.get("identity", self.identity)
        self._listener = asyncio.create_task(self.listen(), name="quorum-client-listener")
        logger.info(f"[Client] Connected as {self.identity} ({self.connection_id})")

    async def close(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._owns_http:
            await self._http.aclose()

    # =========================================================================
    # Rooms
    # =========================================================================

    async def join(self, group_id: str) -> List[StoredMessage]:
        """Join a group and return its reconciled transcript.

        The join frame and the history fetch are issued together; live
        messages arriving before history resolves are buffered by the
        reconciler and merged afterwards.

        If the history fetch or the join fails, the group is left again and
        no local state is kept for it.
        """
        reconciler = HistoryReconciler(group_id)
        reconciler.begin()
        self._reconcilers[group_id] = reconciler
        ack = asyncio.get_running_loop().create_future()
        self._pending_joins[group_id] = ack

        sent, history = await asyncio.gather(
            self._send_frame({"type": "joinGroup", "groupId": group_id}),
            self.fetch_history(group_id),
            return_exceptions=True,
        )
        for outcome in (sent, history):
            if isinstance(outcome, BaseException):
                await self._abandon_join(group_id, joined=not isinstance(sent, BaseException))
                raise outcome
        transcript = reconciler.on_history(history)

        try:
            reply = await asyncio.wait_for(ack, timeout=self.join_timeout)
        except asyncio.TimeoutError:
            await self._abandon_join(group_id, joined=True)
            raise
        finally:
            self._pending_joins.pop(group_id, None)
        if reply.get("type") == "error":
            self._reconcilers.pop(group_id, None)
            raise PermissionError(reply.get("error", f"Could not join {group_id}"))

        # Messages persisted after the history snapshot but before the join
        # took effect were neither in history nor fanned out to us.
        since = transcript[-1].sequence if transcript else 0
        for message in await self.fetch_history(group_id, since=since):
            reconciler.on_live(message)
        return reconciler.transcript

    async def _abandon_join(self, group_id: str, joined: bool) -> None:
        self._pending_joins.pop(group_id, None)
        self._reconcilers.pop(group_id, None)
        if not joined:
            return
        try:
            await self._send_frame({"type": "leaveGroup", "groupId": group_id})
        except (ConnectionError, ConnectionClosed) as e:
            logger.warning(f"[Client] Could not leave {group_id} after failed join: {e}")

    async def leave(self, group_id: str) -> None:
        await self._send_frame({"type": "leaveGroup", "groupId": group_id})
        reconciler = self._reconcilers.pop(group_id, None)
        if reconciler is not None:
            reconciler.reset()

    def transcript(self, group_id: str) -> List[StoredMessage]:
        reconciler = self._reconcilers.get(group_id)
        return reconciler.transcript if reconciler else []

    # =========================================================================
    # HTTP
    # =========================================================================

    async def fetch_history(
        self,
        group_id: str,
        since: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> List[StoredMessage]:
        """Fetch every persisted message of a group after ``since``, following pages.

        Raises:
            PermissionError: This identity may not read the group.
            StorageError: The server could not read its store.
        """
        messages: List[StoredMessage] = []
        while True:
            params: Dict[str, Any] = {}
            if self.identity:
                params["identity"] = self.identity
            if since is not None:
                params["since"] = since
            if page_size is not None:
                params["limit"] = page_size
            response = await self._http.get(f"/api/groups/{group_id}/messages", params=params)
            if response.status_code == 403:
                raise PermissionError(response.json().get("error", f"Not a member of {group_id}"))
            if response.status_code == 503:
                raise StorageError(response.json().get("error", "history unavailable"))
            response.raise_for_status()
            data = response.json()
            page = [StoredMessage.model_validate(m) for m in data["messages"]]
            messages.extend(page)
            if not data.get("hasMore") or not page:
                return messages
            since = page[-1].sequence

    async def send(
        self, group_id: str, body: str, attachment: Optional[str] = None
    ) -> StoredMessage:
        """Submit a message over HTTP.

        Raises:
            ValidationError: The server rejected the submission as malformed.
            PermissionError: This identity may not post to the group.
            StorageError: The server could not persist it; safe to retry.
        """
        payload = {
            "group_id": group_id,
            "sender": self.identity,
            "body": body,
            "attachment": attachment,
        }
        response = await self._http.post("/api/messages", json=payload)
        data = response.json()
        if response.status_code == 400:
            raise ValidationError(data.get("error", "invalid message"))
        if response.status_code == 403:
            raise PermissionError(data.get("error", f"Not a member of {group_id}"))
        if response.status_code == 503:
            raise StorageError(data.get("error", "store unavailable"))
        response.raise_for_status()
        return StoredMessage.model_validate(data["message"])

    # =========================================================================
    # WebSocket
    # =========================================================================

    async def _send_frame(self, frame: Dict[str, Any]) -> None:
        if self._ws is None:
            raise ConnectionError("Not connected")
        await self._ws.send(json.dumps(frame))

    def dispatch(self, frame: Dict[str, Any]) -> None:
        """Route one inbound frame: fan-out to its reconciler, the rest to ``events``."""
        kind = frame.get("type")
        if kind == "newMessage":
            reconciler = self._reconcilers.get(frame.get("groupId", ""))
            if reconciler is not None:
                reconciler.on_live(frame["message"])
            return
        if kind in ("joinedGroup", "error"):
            pending = self._pending_joins.get(frame.get("groupId", ""))
            if pending is not None and not pending.done():
                pending.set_result(frame)
                return
        self.events.put_nowait(frame)

    async def listen(self) -> None:
        """Read frames until the socket closes."""
        try:
            while True:
                raw = await self._ws.recv()
                try:
                    frame = json.loads(raw)
                except ValueError:
                    logger.warning("[Client] Dropping non-JSON frame")
                    continue
                self.dispatch(frame)
        except ConnectionClosed:
            logger.info("[Client] Connection closed by server")
