"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - POST /api/messages: Submit a message (validate, persist, fan out)
    - GET /api/groups/{group_id}/messages: Persisted history, oldest first
    - GET /api/groups/{group_id}/presence: Live connection count of a room
    - WebSocket /ws: Realtime channel

The WebSocket protocol supports:
    - joinGroup / leaveGroup: Room membership (joins are authorized)
    - newMessage: Submit a message over the socket
    - ping: Keepalive

Protocol Message Types (server -> client):
    - connected: Backend-assigned connectionId and identity
    - joinedGroup / leftGroup: Membership acknowledgements
    - newMessage: Fan-out of a stored message, tagged with groupId
    - messageAccepted: Acknowledges the sender's own newMessage
    - error: Rejected request
    - pong
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from .channel import ConnectionChannel
from .errors import NotAuthorizedError, StorageError, ValidationError
from .schemas import HistoryResponse, MessageSubmission, PresenceResponse
from .service import ChatService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat


def _error(error: str, **extra: Any) -> Dict[str, Any]:
    return {"type": "error", "error": error, **extra}


@router.post("/api/messages", status_code=201)
async def submit_message(
    submission: MessageSubmission,
    chat: ChatService = Depends(get_chat_service),
) -> JSONResponse:
    """Submit a chat message.

    The message is validated and persisted before it is fanned out to the
    live members of its group. A success response means the message is
    durable; live delivery is best-effort.

    Returns:
        201 with ``{"success": true, "message": {...}}``; 400 on validation
        failure; 403 if the sender may not post to the group; 503 if the
        store is unavailable.

    Example:
        POST /api/messages {"group_id": "group123", "sender": "alice", "body": "hi"}
    """
    try:
        result = await chat.submit(submission)
    except (ValidationError, NotAuthorizedError, StorageError) as e:
        logger.info(f"[HTTP] Submission rejected ({e.status_code}): {e.message}")
        return JSONResponse({"success": False, "error": e.message}, status_code=e.status_code)

    return JSONResponse(
        {"success": True, "message": result.message.model_dump()},
        status_code=201,
    )


@router.get("/api/groups/{group_id}/messages")
async def get_group_history(
    group_id: str,
    since: Optional[int] = Query(None, ge=0, description="Return messages with sequence > since"),
    limit: Optional[int] = Query(None, ge=1, description="Page size (capped by history.max_page_size)"),
    identity: Optional[str] = Query(None, description="Reader identity, checked against group membership"),
    chat: ChatService = Depends(get_chat_service),
) -> JSONResponse:
    """Get persisted history of a group in persisted order.

    Clients page forward by passing the ``sequence`` of the last message they
    hold as ``since`` until ``hasMore`` is false. Restricted groups only
    answer readers named in their membership (403 otherwise).

    Example:
        GET /api/groups/group123/messages?identity=alice
        GET /api/groups/group123/messages?identity=alice&since=50&limit=50
    """
    try:
        chat.authorize(identity, group_id)
    except NotAuthorizedError as e:
        logger.info(f"[HTTP] History refused: {e.message}")
        return JSONResponse({"success": False, "error": e.message}, status_code=e.status_code)

    history_cfg = chat.settings.history
    page_size = min(limit or history_cfg.default_page_size, history_cfg.max_page_size)

    try:
        messages = await chat.pipeline.history(group_id, since=since, limit=page_size + 1)
    except StorageError as e:
        return JSONResponse({"success": False, "error": e.message}, status_code=e.status_code)

    response = HistoryResponse(
        groupId=group_id,
        messages=messages[:page_size],
        hasMore=len(messages) > page_size,
    )
    return JSONResponse(response.model_dump())


@router.get("/api/groups/{group_id}/presence", response_model=PresenceResponse)
async def get_group_presence(
    group_id: str,
    chat: ChatService = Depends(get_chat_service),
) -> PresenceResponse:
    """Number of live connections currently joined to a group."""
    return PresenceResponse(groupId=group_id, connections=chat.registry.room_size(group_id))


@router.websocket("/ws")
async def group_chat_socket(
    websocket: WebSocket,
    identity: Optional[str] = Query(None, description="Display identity; defaults to Guest N"),
) -> None:
    """WebSocket endpoint for realtime group chat.

    Protocol Flow:
        1. Client connects -> Server sends {type: "connected", connectionId, identity}
        2. Client sends {type: "joinGroup", groupId} -> {type: "joinedGroup", groupId}
        3. Members of a group receive {type: "newMessage", groupId, message}
           for every message persisted to it while they are joined
        4. Client sends {type: "newMessage", payload: {group_id, body, ...}}
           -> {type: "messageAccepted", message} or {type: "error", kind}
        5. Client sends {type: "leaveGroup", groupId} -> {type: "leftGroup", groupId}
        6. On disconnect the connection leaves every group it joined
        7. A client that stops reading is dropped: the server closes the
           socket with code 1008 and the client must rejoin and re-sync

    Every server frame goes through the connection's outbound channel, so
    replies and fan-out reach the client in the order they were produced.
    """
    chat: ChatService = websocket.app.state.chat
    await websocket.accept()

    channel = chat.open_connection(websocket, identity)
    connection_id = channel.connection_id
    connection = chat.registry.get(connection_id)
    assigned_identity = connection.identity if connection else ""
    chat.router.send_to(connection_id, {
        "type": "connected",
        "connectionId": connection_id,
        "identity": assigned_identity,
    })

    # A listen-only client never sends again, so the drop cannot wait for
    # the next receive.
    dropped = asyncio.create_task(
        _close_when_dropped(websocket, channel), name=f"ws-drop-{connection_id}"
    )

    try:
        while True:
            try:
                data = await websocket.receive_json()
            except ValueError:
                chat.router.send_to(connection_id, _error("Invalid JSON"))
                continue

            if channel.closed:
                break

            if not isinstance(data, dict):
                chat.router.send_to(connection_id, _error("Frames must be JSON objects"))
                continue

            await _handle_frame(chat, connection_id, assigned_identity, data)

    except WebSocketDisconnect:
        logger.info(f"[WS] {connection_id} disconnected")
    finally:
        # Runs on disconnect, errors and task cancellation alike
        chat.close_connection(connection_id)
        if channel.failed:
            await dropped
        else:
            dropped.cancel()
        await channel.wait_closed()


async def _close_when_dropped(websocket: WebSocket, channel: ConnectionChannel) -> None:
    """Close the socket with 1008 once its outbound channel has failed."""
    await channel.wait_failed()
    logger.warning(f"[WS] Channel for {channel.connection_id} was dropped; closing socket")
    try:
        await websocket.close(code=1008)
    except (RuntimeError, OSError) as e:
        # The client already went away
        logger.debug(f"[WS] Close after drop of {channel.connection_id} skipped: {e}")


async def _handle_frame(
    chat: ChatService, connection_id: str, identity: str, data: Dict[str, Any]
) -> None:
    event = data.get("type")
    logger.debug("[WS] %s received: type=%s", connection_id, event)

    if event == "joinGroup":
        group_id = str(data.get("groupId") or "").strip()
        if not group_id:
            chat.router.send_to(connection_id, _error("groupId is required"))
            return
        try:
            chat.join_group(connection_id, group_id)
        except NotAuthorizedError as e:
            logger.info(f"[WS] {e.message}")
            chat.router.send_to(connection_id, _error(e.message, groupId=group_id))
            return
        chat.router.send_to(connection_id, {"type": "joinedGroup", "groupId": group_id})
        return

    if event == "leaveGroup":
        group_id = str(data.get("groupId") or "").strip()
        if not group_id:
            chat.router.send_to(connection_id, _error("groupId is required"))
            return
        chat.leave_group(connection_id, group_id)
        chat.router.send_to(connection_id, {"type": "leftGroup", "groupId": group_id})
        return

    if event == "newMessage":
        payload = data.get("payload")
        if not isinstance(payload, dict):
            chat.router.send_to(
                connection_id, _error("payload must be an object", kind="validation")
            )
            return
        if not payload.get("sender"):
            payload = {**payload, "sender": identity}
        try:
            result = await chat.submit(payload, identity=identity)
        except ValidationError as e:
            chat.router.send_to(connection_id, _error(e.message, kind="validation"))
            return
        except NotAuthorizedError as e:
            chat.router.send_to(
                connection_id, _error(e.message, kind="forbidden", groupId=e.group_id)
            )
            return
        except StorageError as e:
            chat.router.send_to(connection_id, _error(e.message, kind="storage"))
            return
        chat.router.send_to(connection_id, {
            "type": "messageAccepted",
            "message": result.message.model_dump(),
        })
        return

    if event == "ping":
        chat.router.send_to(connection_id, {"type": "pong"})
        return

    chat.router.send_to(connection_id, _error(f"Unknown event type: {event}"))
