"""Tests for GroupChatClient.

HTTP goes through ``httpx.ASGITransport`` into the real app. The WebSocket
side is a loopback object wired straight into the app's ChatService, so the
client sees exactly the frames the server would send.
"""
import asyncio
import json
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock

import httpx
import pytest
from websockets.exceptions import ConnectionClosed

from quorum.chat.errors import StorageError, ValidationError
from quorum.chat.router import _handle_frame
from quorum.client import GroupChatClient, websocket_url
from quorum.config import AppSettings, MembershipSettings
from quorum.main import create_app
from quorum.store import InMemoryMessageStore


class LoopbackSocket:
    """Client-side socket whose peer is a ChatService in the same loop."""

    def __init__(self, chat, identity=None):
        self.chat = chat
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.channel = chat.open_connection(self, identity)
        self.connection_id = self.channel.connection_id
        self.identity = chat.registry.get(self.connection_id).identity
        chat.router.send_to(self.connection_id, {
            "type": "connected",
            "connectionId": self.connection_id,
            "identity": self.identity,
        })

    # Server -> client
    async def send_json(self, data):
        await self.inbox.put(json.dumps(data))

    # Client -> server
    async def send(self, raw):
        await _handle_frame(self.chat, self.connection_id, self.identity, json.loads(raw))

    async def recv(self):
        raw = await self.inbox.get()
        if raw is None:
            raise ConnectionClosed(None, None)
        return raw

    async def close(self):
        self.chat.close_connection(self.connection_id)
        await self.channel.wait_closed()
        self.inbox.put_nowait(None)


@asynccontextmanager
async def connected_client(app, identity="alice", socket=None, **http_kwargs):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test", **http_kwargs) as http:
        client = GroupChatClient("http://test", identity=identity, http=http)
        await client.attach(socket or LoopbackSocket(app.state.chat, identity))
        try:
            yield client
        finally:
            await client.close()


async def until(predicate, timeout=1.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)
    await asyncio.wait_for(_poll(), timeout)


class TestWebsocketUrl:
    @pytest.mark.parametrize("base, expected", [
        ("http://localhost:5000", "ws://localhost:5000/ws"),
        ("https://chat.example.com/", "wss://chat.example.com/ws"),
    ])
    def test_scheme_mapping(self, base, expected):
        assert websocket_url(base) == expected

    def test_identity_is_encoded(self):
        assert websocket_url("http://h", "Ann Lee") == "ws://h/ws?identity=Ann+Lee"


class TestConnect:
    @pytest.mark.asyncio
    async def test_attach_reads_connected_frame(self, app):
        async with connected_client(app, identity="alice") as client:
            assert client.identity == "alice"
            assert app.state.chat.registry.get(client.connection_id) is not None

    @pytest.mark.asyncio
    async def test_close_disconnects_server_side(self, app):
        chat = app.state.chat
        async with connected_client(app) as client:
            await client.join("g1")
            connection_id = client.connection_id
        assert chat.registry.get(connection_id) is None
        assert chat.registry.members_of("g1") == frozenset()


class TestJoin:
    @pytest.mark.asyncio
    async def test_join_returns_history(self, app):
        pipeline = app.state.chat.pipeline
        for body in ("a", "b"):
            await pipeline.submit({"group_id": "g1", "sender": "bob", "body": body})

        async with connected_client(app) as client:
            transcript = await client.join("g1")
            assert [m.body for m in transcript] == ["a", "b"]
            assert app.state.chat.registry.room_size("g1") == 1

    @pytest.mark.asyncio
    async def test_live_messages_extend_transcript(self, app):
        async with connected_client(app) as client:
            await client.join("g1")
            await client.send("g1", "one")
            await client.send("g1", "two")
            await until(lambda: len(client.transcript("g1")) == 2)
            assert [m.body for m in client.transcript("g1")] == ["one", "two"]
            assert [m.sender for m in client.transcript("g1")] == ["alice", "alice"]

    @pytest.mark.asyncio
    async def test_message_persisted_between_snapshot_and_join_is_recovered(self, app):
        """A message stored after the history read but before the join is fetched afterwards."""
        chat = app.state.chat
        history_read = asyncio.Event()

        class DelayedJoinSocket(LoopbackSocket):
            async def send(self, raw):
                if json.loads(raw).get("type") == "joinGroup":
                    await history_read.wait()
                await super().send(raw)

        async def on_response(response):
            if response.request.url.path.endswith("/messages") and not history_read.is_set():
                await chat.pipeline.submit({"group_id": "g1", "sender": "bob", "body": "late"})
                history_read.set()

        socket = DelayedJoinSocket(chat, "alice")
        async with connected_client(
            app, socket=socket, event_hooks={"response": [on_response]}
        ) as client:
            transcript = await client.join("g1")
            assert [m.body for m in transcript] == ["late"]

    @pytest.mark.asyncio
    async def test_refused_join_raises(self):
        settings = AppSettings(membership=MembershipSettings(groups={"team": ["bob"]}))
        app = create_app(config=settings, store=InMemoryMessageStore())
        async with connected_client(app, identity="mallory") as client:
            with pytest.raises(PermissionError):
                await client.join("team")
            assert client.transcript("team") == []

    @pytest.mark.asyncio
    async def test_failed_history_fetch_leaves_group(self, app, store):
        chat = app.state.chat
        store.query = AsyncMock(side_effect=ConnectionError("down"))
        async with connected_client(app) as client:
            with pytest.raises(StorageError):
                await client.join("g1")

            await until(lambda: chat.registry.room_size("g1") == 0)
            assert client._pending_joins == {}
            assert client.transcript("g1") == []

            # Store back: a second join works and live messages are delivered
            del store.query
            await chat.submit({"group_id": "g1", "sender": "bob", "body": "first"})
            transcript = await client.join("g1")
            assert [m.body for m in transcript] == ["first"]
            await chat.submit({"group_id": "g1", "sender": "bob", "body": "second"})
            await until(lambda: len(client.transcript("g1")) == 2)

    @pytest.mark.asyncio
    async def test_leave_drops_transcript(self, app):
        async with connected_client(app) as client:
            await client.join("g1")
            await client.leave("g1")
            assert client.transcript("g1") == []
            await until(lambda: app.state.chat.registry.room_size("g1") == 0)


class TestHttp:
    @pytest.mark.asyncio
    async def test_fetch_history_follows_pages(self):
        settings = AppSettings(history={"default_page_size": 2, "max_page_size": 2})
        app = create_app(config=settings, store=InMemoryMessageStore())
        for i in range(5):
            await app.state.chat.pipeline.submit({"group_id": "g1", "sender": "bob", "body": str(i)})

        async with connected_client(app) as client:
            messages = await client.fetch_history("g1")
            assert [m.sequence for m in messages] == [1, 2, 3, 4, 5]
            tail = await client.fetch_history("g1", since=3)
            assert [m.body for m in tail] == ["3", "4"]

    @pytest.mark.asyncio
    async def test_send_validation_error(self, app):
        async with connected_client(app) as client:
            with pytest.raises(ValidationError):
                await client.send("g1", "   ")

    @pytest.mark.asyncio
    async def test_non_member_cannot_send_or_read(self):
        settings = AppSettings(membership=MembershipSettings(groups={"team": ["bob"]}))
        app = create_app(config=settings, store=InMemoryMessageStore())
        async with connected_client(app, identity="mallory") as client:
            with pytest.raises(PermissionError):
                await client.send("team", "hello")
            with pytest.raises(PermissionError):
                await client.fetch_history("team")

    @pytest.mark.asyncio
    async def test_send_storage_error(self, app, store):
        store.append = AsyncMock(side_effect=ConnectionError("down"))
        async with connected_client(app) as client:
            with pytest.raises(StorageError):
                await client.send("g1", "hello")

    @pytest.mark.asyncio
    async def test_history_storage_error(self, app, store):
        store.query = AsyncMock(side_effect=ConnectionError("down"))
        async with connected_client(app) as client:
            with pytest.raises(StorageError):
                await client.fetch_history("g1")


class TestDispatch:
    @pytest.mark.asyncio
    async def test_other_frames_go_to_events(self, app):
        async with connected_client(app) as client:
            client.dispatch({"type": "newMessage", "groupId": "unjoined", "message": {}})
            client.dispatch({"type": "pong"})
            assert client.events.get_nowait() == {"type": "pong"}
            assert client.events.empty()

    @pytest.mark.asyncio
    async def test_listener_stops_when_server_closes(self, app):
        async with connected_client(app) as client:
            client._ws.inbox.put_nowait(None)
            await asyncio.wait_for(client._listener, timeout=1.0)
