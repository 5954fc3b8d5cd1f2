"""Room router providing the WebSocket gateway and read-only HTTP endpoints.

This module provides:
    - WebSocket /ws/chat/{room_id}: Real-time room session
    - GET /rooms/{room_id}/history: Paginated message history
    - GET /rooms/{room_id}/settings: Current admin settings

Connection lifecycle:
    1. Client connects → server assigns a connection identity and sends the
       full message history (one frame per message), the user list and the
       current settings
    2. Client sends {type: "clientAction", action: "join", sender}
       → server broadcasts the user list, unicasts the welcome message
    3. Client sends text/media/clientAction/getSettings/adminUpdate frames
       → handled one at a time by the room's worker
    4. On disconnect → presence removed, user list broadcast; an empty room
       is evicted from the registry

The HTTP endpoints read live rooms or their snapshots and never create a
room.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from .manager import manager
from .store import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/rooms/{room_id}/history")
async def get_message_history(
    room_id: str,
    before: Optional[int] = Query(None, description="Epoch ms cursor (get messages before this time)"),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, description="Number of messages to return")
) -> JSONResponse:
    """Get paginated message history for a room.

    Clients can fetch older messages by passing the ``timestamp`` of the
    oldest message they currently have as ``before``.

    Returns:
        JSON with messages array and hasMore boolean.

    Example:
        GET /rooms/lobby/history?limit=50
        GET /rooms/lobby/history?before=1707321600123&limit=50
    """
    store = manager.history_store(room_id)
    messages = store.page(before, limit)

    # Check if there are more messages before the oldest returned
    has_more = bool(messages) and bool(store.page(messages[0].timestamp, 1))

    return JSONResponse({
        "messages": [msg.to_wire() for msg in messages],
        "hasMore": has_more
    })


@router.get("/rooms/{room_id}/settings")
async def get_room_settings(room_id: str) -> JSONResponse:
    """Current admin settings for a room (same shape as ``settingsUpdate``)."""
    return JSONResponse({"settings": manager.room_settings(room_id).model_dump()})


@router.websocket("/ws/chat/{room_id}")
async def websocket_chat_endpoint(websocket: WebSocket, room_id: str) -> None:
    """WebSocket endpoint for one client's session in a room.

    Every received frame is handed to the room's worker as-is; parsing,
    validation and error replies happen there so that malformed frames are
    answered in order with everything else.
    """
    room, conn = await manager.connect(websocket, room_id)
    logger.info(
        f"[WS] Connection accepted. Assigned id={conn.id}. "
        f"Room {room_id} now has {len(room.connections)} connections"
    )

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            raw = message.get("text")
            if raw is None:
                # Binary frames are decoded and parsed like text
                raw = (message.get("bytes") or b"").decode("utf-8", errors="replace")
            await room.handle_text(conn, raw)
    except WebSocketDisconnect:
        logger.info(f"[WS] {conn.id} left room {room_id}")
    finally:
        await manager.disconnect(room, conn)
