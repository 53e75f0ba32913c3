"""
Relay WebSocket endpoint: the wire side of the room channel.

URL: /ws/{room_id}?key={member_id}[&self=1]

Connection flow:
  1. Accept, normalize the room id
  2. Subscribe to the hub -> "subscribed" + one presence "sync"
  3. Frame loop: track / untrack / broadcast / ping (see RoomHub.handle_frame)
  4. On disconnect: unsubscribe -> presence "leave" + "sync" to everyone else

The relay never looks inside broadcast payloads.
"""
import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from services.room_hub import Subscriber, hub
from utils.ids import normalize_room_id

logger = logging.getLogger(__name__)

router = APIRouter(tags=["relay"])


class WebSocketSubscriber(Subscriber):
    def __init__(self, ws: WebSocket, key: str, echo_self: bool = False):
        super().__init__(key, echo_self=echo_self)
        self.ws = ws

    async def send(self, frame: Dict[str, Any]) -> None:
        await self.ws.send_json(frame)


@router.websocket("/ws/{room_id}")
async def relay_endpoint(
    ws: WebSocket,
    room_id: str,
    key: str = Query(..., min_length=1, description="Presence key (member id)"),
    echo: bool = Query(False, alias="self", description="Receive own broadcasts"),
):
    room = normalize_room_id(room_id)
    await ws.accept()
    sub = WebSocketSubscriber(ws, key, echo_self=echo)
    await hub.subscribe(room, sub)

    try:
        while True:
            raw = await ws.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                await sub.send({"type": "error", "code": "PARSE_ERROR", "message": "Invalid JSON"})
                continue
            if not isinstance(frame, dict):
                await sub.send({"type": "error", "code": "BAD_FRAME", "message": "Frame must be an object"})
                continue
            await _handle_frame(room, sub, frame)

    except WebSocketDisconnect:
        pass
    finally:
        await hub.unsubscribe(room, sub.conn_id)


async def _handle_frame(room: str, sub: WebSocketSubscriber, frame: Dict[str, Any]) -> None:
    try:
        await hub.handle_frame(room, sub, frame)
    except WebSocketDisconnect:
        raise
    except Exception:
        logger.exception(f"[{room}] Unhandled error in relay frame (type={frame.get('type')})")
        try:
            await sub.send({"type": "error", "code": "SERVER_ERROR", "message": "Internal server error"})
        except Exception as exc:
            logger.warning(f"[{room}] could not report error to {sub.key}: {exc}")


@router.get("/api/rooms/{room_id}")
async def room_snapshot(room_id: str):
    """Diagnostics: who the relay currently sees in a room."""
    room = normalize_room_id(room_id)
    return {
        "room": room,
        "subscribers": hub.count(room),
        "presence": hub.presence_state(room),
    }
