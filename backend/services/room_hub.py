"""
Room Hub: the publish/subscribe relay behind every room channel.

The hub is dumb. Per room it keeps
  - the live presence table (connection -> announced metadata), and
  - the set of subscribed connections,
and fans broadcasts out to subscribers. It never interprets game payloads
and holds no session state; clients converge on their own.

Presence notifications always carry the full table so clients can
recompute their member list from scratch:
  track            -> "join", then "sync"
  untrack / leave  -> "leave", then "sync"
  new subscriber   -> one "sync" to that subscriber only
"""
import logging
import uuid
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class Subscriber:
    """
    One subscribed connection. Concrete transports (websocket, in-process)
    override send(); a send that raises gets the subscriber dropped.
    """

    def __init__(self, key: str, echo_self: bool = False):
        self.conn_id = uuid.uuid4().hex
        self.key = key
        self.echo_self = echo_self

    async def send(self, frame: Dict[str, Any]) -> None:
        raise NotImplementedError


class _Room:
    def __init__(self, room_id: str):
        self.room_id = room_id
        self.subscribers: Dict[str, Subscriber] = {}
        # {conn_id: meta}, insertion order == track order
        self.presence: Dict[str, Dict[str, Any]] = {}

    def presence_state(self) -> Dict[str, List[Dict[str, Any]]]:
        state: Dict[str, List[Dict[str, Any]]] = {}
        for conn_id, meta in self.presence.items():
            sub = self.subscribers.get(conn_id)
            if sub is None:
                continue
            state.setdefault(sub.key, []).append(dict(meta))
        return state


class RoomHub:
    """
    Tracks subscribers and presence per room.
    Safe for the asyncio single-threaded event loop (no extra locking needed).
    """

    def __init__(self):
        self._rooms: Dict[str, _Room] = {}

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def subscribe(self, room_id: str, sub: Subscriber) -> None:
        room = self._rooms.setdefault(room_id, _Room(room_id))
        room.subscribers[sub.conn_id] = sub
        logger.debug(
            f"[{room_id}] {sub.key} subscribed ({len(room.subscribers)} total)"
        )
        ok = await self._deliver(room, sub, {"type": "subscribed", "room": room_id})
        if ok:
            await self._deliver(room, sub, {
                "type": "presence", "event": "sync", "state": room.presence_state(),
            })

    async def unsubscribe(self, room_id: str, conn_id: str) -> None:
        room = self._rooms.get(room_id)
        if not room:
            return
        was_tracked = conn_id in room.presence
        room.presence.pop(conn_id, None)
        sub = room.subscribers.pop(conn_id, None)
        if sub:
            logger.debug(
                f"[{room_id}] {sub.key} unsubscribed ({len(room.subscribers)} left)"
            )
        if not room.subscribers:
            self._rooms.pop(room_id, None)
            return
        if was_tracked:
            await self._presence_changed(room, "leave")

    # ── Presence ───────────────────────────────────────────────────────────────

    async def track(self, room_id: str, conn_id: str, meta: Dict[str, Any]) -> None:
        room = self._rooms.get(room_id)
        if not room or conn_id not in room.subscribers:
            raise KeyError(f"connection {conn_id} is not subscribed to {room_id}")
        room.presence[conn_id] = dict(meta)
        logger.info(f"[{room_id}] presence join {room.subscribers[conn_id].key}")
        await self._presence_changed(room, "join")

    async def untrack(self, room_id: str, conn_id: str) -> None:
        room = self._rooms.get(room_id)
        if not room or conn_id not in room.presence:
            return
        room.presence.pop(conn_id)
        await self._presence_changed(room, "leave")

    def presence_state(self, room_id: str) -> Dict[str, List[Dict[str, Any]]]:
        room = self._rooms.get(room_id)
        return room.presence_state() if room else {}

    def count(self, room_id: str) -> int:
        room = self._rooms.get(room_id)
        return len(room.subscribers) if room else 0

    def reset(self) -> None:
        """Forget every room (tests / process restart)."""
        self._rooms.clear()

    # ── Broadcast ──────────────────────────────────────────────────────────────

    async def broadcast(
        self,
        room_id: str,
        conn_id: str,
        event: str,
        payload: Dict[str, Any],
    ) -> Optional[str]:
        """
        Relay one message to every subscriber of the room.
        The sender only gets its own copy back when it asked for echo.
        Returns the relay message id, or None if the room is gone.
        """
        room = self._rooms.get(room_id)
        if not room:
            return None
        message_id = uuid.uuid4().hex
        frame = {"type": "broadcast", "event": event, "payload": payload, "id": message_id}
        await self._fanout(room, frame, sender=conn_id)
        return message_id

    # ── Client frames ──────────────────────────────────────────────────────────

    async def handle_frame(self, room_id: str, sub: Subscriber, frame: Dict[str, Any]) -> None:
        """Apply one client -> relay frame (track, untrack, broadcast, ping)."""
        room = self._rooms.get(room_id)
        if not room or sub.conn_id not in room.subscribers:
            return
        kind = frame.get("type", "")

        if kind == "ping":
            await self._deliver(room, sub, {"type": "pong"})

        elif kind == "track":
            meta = frame.get("meta")
            if not isinstance(meta, dict):
                await self._error(room, sub, "BAD_FRAME", "track needs a meta object")
                return
            await self.track(room_id, sub.conn_id, meta)

        elif kind == "untrack":
            await self.untrack(room_id, sub.conn_id)

        elif kind == "broadcast":
            event = frame.get("event")
            payload = frame.get("payload")
            if not isinstance(event, str) or not isinstance(payload, dict):
                await self._error(room, sub, "BAD_FRAME", "broadcast needs event and payload")
                return
            message_id = await self.broadcast(room_id, sub.conn_id, event, payload)
            ref = frame.get("ref")
            if ref and message_id and sub.conn_id in room.subscribers:
                await self._deliver(room, sub, {"type": "ack", "ref": ref, "id": message_id})

        else:
            await self._error(room, sub, "UNKNOWN_TYPE", f"Unknown frame type: '{kind}'")

    # ── Internals ──────────────────────────────────────────────────────────────

    async def _error(self, room: _Room, sub: Subscriber, code: str, message: str) -> None:
        await self._deliver(room, sub, {"type": "error", "code": code, "message": message})

    async def _presence_changed(self, room: _Room, event: str) -> None:
        await self._fanout(room, {"type": "presence", "event": event, "state": room.presence_state()})
        # Recomputed: a failed delivery above may have dropped someone
        await self._fanout(room, {"type": "presence", "event": "sync", "state": room.presence_state()})

    async def _fanout(
        self, room: _Room, frame: Dict[str, Any], sender: Optional[str] = None
    ) -> None:
        failed: List[str] = []
        for conn_id, sub in list(room.subscribers.items()):
            if conn_id == sender and not sub.echo_self:
                continue
            if not await self._deliver(room, sub, frame, drop=False):
                failed.append(conn_id)
        for conn_id in failed:
            await self.unsubscribe(room.room_id, conn_id)

    async def _deliver(
        self, room: _Room, sub: Subscriber, frame: Dict[str, Any], drop: bool = True
    ) -> bool:
        try:
            await sub.send(frame)
            return True
        except Exception as exc:
            logger.warning(
                f"[{room.room_id}] send to {sub.key} failed: {exc}"
            )
            if drop:
                await self.unsubscribe(room.room_id, sub.conn_id)
            return False


hub = RoomHub()
