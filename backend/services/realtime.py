"""
Room Channel Transport: client side of the publish/subscribe relay.

    client = RealtimeClient(websocket_link_factory(settings.relay_url))
    handle = await client.connect("MAIN", me)     # TransportConnectError on timeout
    handle.on_presence(lambda event, state: ...)
    handle.subscribe("state", on_state)
    await handle.announce_presence()              # once, after establishment
    await handle.broadcast(StatePayload(puzzle_index=2))

One RealtimeClient owns at most one channel per room; connecting to a room
that already has a channel closes the old one first. Every received frame
goes through one inbound queue per handle and is dispatched by a single
pump task, so presence and broadcast callbacks never interleave.

If the relay drops the connection the handle reports dropped, every
on_closed handler runs once and later broadcasts return False. The handle
never reconnects by itself.

Self-echo: the relay does not send a connection its own broadcasts back
(links are opened with echo off). Callers apply their own messages locally.
"""
import asyncio
import json
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Union
from urllib.parse import quote

from config import settings
from models.messages import MessageValidationError, BasePayload, dump_payload, parse_payload
from models.room import Member
from services.room_hub import RoomHub, Subscriber
from utils.ids import normalize_room_id

logger = logging.getLogger(__name__)

PresenceHandler = Callable[[str, Dict[str, List[Dict[str, Any]]]], None]
MessageHandler = Callable[[BasePayload, Optional[str]], None]


class TransportConnectError(Exception):
    """The subscription never reached the established state in time."""

    def __init__(self, room_id: str, reason: str):
        super().__init__(f"[{room_id}] could not subscribe: {reason}")
        self.room_id = room_id
        self.reason = reason


ConnectError = TransportConnectError


class PresenceTrackError(Exception):
    """Presence announce failed; the handle is subscribed but invisible."""


class ChannelStateError(RuntimeError):
    """Channel used out of order (announce twice, send after close, ...)."""


# ── Links ──────────────────────────────────────────────────────────────────────

class ChannelLink:
    """Moves JSON frames between one handle and the relay."""

    async def open(self, deliver: Callable[[Dict[str, Any]], None]) -> None:
        raise NotImplementedError

    async def transmit(self, frame: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


def _wire_copy(frame: Dict[str, Any]) -> Dict[str, Any]:
    return json.loads(json.dumps(frame))


class _InboxSubscriber(Subscriber):
    def __init__(self, key: str, deliver: Callable[[Dict[str, Any]], None], echo_self: bool):
        super().__init__(key, echo_self=echo_self)
        self._deliver = deliver

    async def send(self, frame: Dict[str, Any]) -> None:
        self._deliver(_wire_copy(frame))


class LocalLink(ChannelLink):
    """Attaches a channel straight to an in-process RoomHub."""

    def __init__(self, hub: RoomHub, room_id: str, key: str, echo_self: bool = False):
        self.hub = hub
        self.room_id = room_id
        self.key = key
        self.echo_self = echo_self
        self._sub: Optional[_InboxSubscriber] = None

    async def open(self, deliver: Callable[[Dict[str, Any]], None]) -> None:
        self._sub = _InboxSubscriber(self.key, deliver, self.echo_self)
        await self.hub.subscribe(self.room_id, self._sub)

    async def transmit(self, frame: Dict[str, Any]) -> None:
        if self._sub is None:
            raise ConnectionError("link is not open")
        await self.hub.handle_frame(self.room_id, self._sub, _wire_copy(frame))

    async def close(self) -> None:
        sub, self._sub = self._sub, None
        if sub is not None:
            await self.hub.unsubscribe(self.room_id, sub.conn_id)


class WebSocketLink(ChannelLink):
    """Talks to the relay's /ws/{room_id} endpoint."""

    def __init__(self, base_url: str, room_id: str, key: str, echo_self: bool = False):
        url = f"{base_url.rstrip('/')}/ws/{room_id}?key={quote(key)}"
        if echo_self:
            url += "&self=1"
        self.url = url
        self.room_id = room_id
        self._ws = None
        self._reader: Optional[asyncio.Task] = None

    async def open(self, deliver: Callable[[Dict[str, Any]], None]) -> None:
        from websockets.asyncio.client import connect

        self._ws = await connect(self.url)
        self._reader = asyncio.create_task(self._read(deliver))

    async def _read(self, deliver: Callable[[Dict[str, Any]], None]) -> None:
        from websockets.exceptions import ConnectionClosed

        try:
            async for raw in self._ws:
                try:
                    deliver(json.loads(raw))
                except json.JSONDecodeError:
                    logger.warning(f"[{self.room_id}] dropped non-JSON frame from relay")
        except ConnectionClosed as exc:
            logger.info(f"[{self.room_id}] relay connection closed: {exc}")
        deliver({"type": "closed"})

    async def transmit(self, frame: Dict[str, Any]) -> None:
        if self._ws is None:
            raise ConnectionError("link is not open")
        await self._ws.send(json.dumps(frame))

    async def close(self) -> None:
        if self._reader and not self._reader.done():
            self._reader.cancel()
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()


LinkFactory = Callable[[str, str], ChannelLink]


def local_link_factory(hub: RoomHub, echo_self: bool = False) -> LinkFactory:
    return lambda room_id, key: LocalLink(hub, room_id, key, echo_self=echo_self)


def websocket_link_factory(base_url: Optional[str] = None, echo_self: bool = False) -> LinkFactory:
    url = base_url or settings.relay_url
    return lambda room_id, key: WebSocketLink(url, room_id, key, echo_self=echo_self)


# ── Channel handle ─────────────────────────────────────────────────────────────

class ChannelHandle:
    """One subscription to one room. Created by RealtimeClient.connect()."""

    def __init__(self, room_id: str, member: Member, link: ChannelLink):
        self.room_id = room_id
        self.member = member
        self._link = link
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._pump_task: Optional[asyncio.Task] = None
        self._established = asyncio.Event()
        self._announced = False
        self._closed = False
        self._handlers: Dict[str, List[MessageHandler]] = {}
        self._presence_handlers: List[PresenceHandler] = []
        self._closed_handlers: List[Callable[[], None]] = []
        self._dropped = False
        self._acks: Dict[str, asyncio.Future] = {}
        self.presence_state: Dict[str, List[Dict[str, Any]]] = {}

    @property
    def established(self) -> bool:
        return self._established.is_set() and not self._closed

    @property
    def announced(self) -> bool:
        return self._announced

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def dropped(self) -> bool:
        """The relay ended the connection; nothing sent from here arrives."""
        return self._dropped

    async def _open(self) -> None:
        self._pump_task = asyncio.create_task(self._pump())
        await self._link.open(self._inbox.put_nowait)
        await self._established.wait()

    # ── Registration ───────────────────────────────────────────────────────────

    def subscribe(self, topic: str, handler: MessageHandler) -> Callable[[], None]:
        """Register a handler for one topic; returns a disposer."""
        self._handlers.setdefault(topic, []).append(handler)
        return lambda: self._discard(self._handlers.get(topic, []), handler)

    def on_presence(self, handler: PresenceHandler) -> Callable[[], None]:
        """Handler gets (event, full presence table) on every sync/join/leave."""
        self._presence_handlers.append(handler)
        return lambda: self._discard(self._presence_handlers, handler)

    def on_closed(self, handler: Callable[[], None]) -> Callable[[], None]:
        """Handler runs once if the relay drops the connection (not on close())."""
        self._closed_handlers.append(handler)
        return lambda: self._discard(self._closed_handlers, handler)

    @staticmethod
    def _discard(handlers: list, handler) -> None:
        if handler in handlers:
            handlers.remove(handler)

    # ── Outbound ───────────────────────────────────────────────────────────────

    async def announce_presence(self, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Track this member in the room's presence table. At most once."""
        if self._closed:
            raise ChannelStateError("channel is closed")
        if not self._established.is_set():
            raise ChannelStateError("announce before subscription is established")
        if self._announced:
            raise ChannelStateError("presence already announced on this connection")
        meta = metadata if metadata is not None else self.member.to_meta()
        try:
            await self._link.transmit({"type": "track", "meta": meta})
        except Exception as exc:
            logger.error(f"[{self.room_id}] presence track failed: {exc}")
            raise PresenceTrackError(str(exc)) from exc
        self._announced = True

    async def broadcast(
        self,
        topic: str,
        payload: Union[BasePayload, Dict[str, Any]],
        wait_ack: bool = False,
        ack_timeout: float = 5.0,
    ) -> bool:
        """
        Fire-and-forget fan out to the room. Returns False when the frame could
        not be handed to the relay. With wait_ack, also waits for relay receipt
        (not for any subscriber to have processed it).
        """
        if self._closed:
            raise ChannelStateError("broadcast on a closed channel")
        if self._dropped:
            logger.warning(f"[{self.room_id}] broadcast '{topic}' not sent: relay link lost")
            return False
        model = parse_payload(topic, payload) if isinstance(payload, dict) else payload
        if model.topic.value != topic:
            raise MessageValidationError(topic, f"payload is a '{model.topic.value}' message")
        frame: Dict[str, Any] = {"type": "broadcast", "event": topic, "payload": dump_payload(model)}
        fut: Optional[asyncio.Future] = None
        if wait_ack:
            ref = uuid.uuid4().hex
            frame["ref"] = ref
            fut = asyncio.get_running_loop().create_future()
            self._acks[ref] = fut
        try:
            await self._link.transmit(frame)
        except Exception as exc:
            logger.warning(f"[{self.room_id}] broadcast '{topic}' failed: {exc}")
            if fut is not None:
                self._acks.pop(frame["ref"], None)
            return False
        if fut is None:
            return True
        try:
            await asyncio.wait_for(fut, ack_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"[{self.room_id}] no relay ack for '{topic}'")
            return False
        finally:
            self._acks.pop(frame["ref"], None)

    # ── Inbound ────────────────────────────────────────────────────────────────

    async def _pump(self) -> None:
        while True:
            frame = await self._inbox.get()
            try:
                self._dispatch(frame)
            except Exception:
                logger.exception(f"[{self.room_id}] handler failed for frame {frame.get('type')}")
            finally:
                self._inbox.task_done()

    def _dispatch(self, frame: Dict[str, Any]) -> None:
        if self._closed:
            return
        kind = frame.get("type")

        if kind == "subscribed":
            self._established.set()

        elif kind == "presence":
            state = frame.get("state") or {}
            self.presence_state = state
            event = frame.get("event", "sync")
            for fn in list(self._presence_handlers):
                fn(event, state)

        elif kind == "broadcast":
            topic = frame.get("event", "")
            try:
                payload = parse_payload(topic, frame.get("payload"))
            except MessageValidationError as exc:
                logger.warning(f"[{self.room_id}] dropped message: {exc}")
                return
            for fn in list(self._handlers.get(topic, [])):
                fn(payload, frame.get("id"))

        elif kind == "ack":
            fut = self._acks.get(frame.get("ref"))
            if fut and not fut.done():
                fut.set_result(frame.get("id"))

        elif kind == "error":
            logger.warning(
                f"[{self.room_id}] relay error {frame.get('code')}: {frame.get('message')}"
            )

        elif kind == "closed":
            if self._dropped:
                return
            logger.warning(f"[{self.room_id}] channel closed by relay")
            self._established.clear()
            self._dropped = True
            for fn in list(self._closed_handlers):
                fn()

    async def drain(self) -> None:
        """Wait until every frame received so far has been dispatched."""
        await self._inbox.join()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._pump_task and not self._pump_task.done():
            self._pump_task.cancel()
        for fut in self._acks.values():
            if not fut.done():
                fut.cancel()
        self._acks.clear()
        try:
            await self._link.close()
        except Exception as exc:
            logger.warning(f"[{self.room_id}] error closing link: {exc}")


# ── Client ─────────────────────────────────────────────────────────────────────

class RealtimeClient:
    """Owns this process's channels, at most one per room."""

    def __init__(self, link_factory: LinkFactory, connect_timeout: Optional[float] = None):
        self._link_factory = link_factory
        self.connect_timeout = (
            connect_timeout if connect_timeout is not None else settings.connect_timeout_seconds
        )
        self._channels: Dict[str, ChannelHandle] = {}

    def channel(self, room_id: str) -> Optional[ChannelHandle]:
        return self._channels.get(normalize_room_id(room_id))

    async def connect(self, room_id: str, member: Member) -> ChannelHandle:
        """
        Subscribe to a room. Fails with TransportConnectError after the
        bounded timeout; never retries on its own.
        """
        room_id = normalize_room_id(room_id)
        stale = self._channels.pop(room_id, None)
        if stale is not None:
            logger.info(f"[{room_id}] replacing existing channel")
            await stale.close()

        handle = ChannelHandle(room_id, member, self._link_factory(room_id, member.id))
        try:
            await asyncio.wait_for(handle._open(), self.connect_timeout)
        except asyncio.TimeoutError:
            await handle.close()
            raise TransportConnectError(room_id, f"timed out after {self.connect_timeout}s")
        except Exception as exc:
            await handle.close()
            raise TransportConnectError(room_id, str(exc)) from exc

        self._channels[room_id] = handle
        logger.info(f"[{room_id}] subscribed as {member.id}")
        return handle

    async def disconnect(self, room_id: str) -> None:
        handle = self._channels.pop(normalize_room_id(room_id), None)
        if handle is not None:
            await handle.close()

    async def close_all(self) -> None:
        for room_id in list(self._channels):
            await self.disconnect(room_id)
