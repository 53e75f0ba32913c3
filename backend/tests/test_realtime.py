"""Tests for the room channel transport (client side, in-process relay)."""
from __future__ import annotations

import pytest

from models.messages import AiPayload, MessageValidationError, StatePayload
from services.realtime import (
    ChannelHandle,
    ChannelLink,
    ChannelStateError,
    LocalLink,
    PresenceTrackError,
    RealtimeClient,
    TransportConnectError,
    local_link_factory,
)

from conftest import DroppableLink, member

pytestmark = pytest.mark.asyncio


class SilentLink(ChannelLink):
    """Opens fine but the relay never confirms the subscription."""

    async def open(self, deliver):
        pass

    async def transmit(self, frame):
        pass

    async def close(self):
        pass


class RefusingLink(SilentLink):
    async def open(self, deliver):
        raise ConnectionRefusedError("relay down")


class NoTrackLink(LocalLink):
    """Subscribes normally but every presence track fails."""

    async def transmit(self, frame):
        if frame.get("type") == "track":
            raise ConnectionResetError("socket dropped")
        await super().transmit(frame)


@pytest.fixture
async def clients(hub):
    made = []

    def _make(echo_self=False, factory=None):
        c = RealtimeClient(factory or local_link_factory(hub, echo_self=echo_self), connect_timeout=0.2)
        made.append(c)
        return c

    yield _make

    for c in made:
        await c.close_all()


class TestConnect:
    async def test_connect_reaches_established(self, clients, hub):
        handle = await clients().connect("main", member("a", 1))
        assert handle.room_id == "MAIN"
        assert handle.established
        assert not handle.announced
        assert hub.count("MAIN") == 1

    async def test_never_established_times_out(self, clients):
        client = clients(factory=lambda room, key: SilentLink())
        with pytest.raises(TransportConnectError) as exc:
            await client.connect("MAIN", member("a", 1))
        assert exc.value.room_id == "MAIN"
        assert client.channel("MAIN") is None

    async def test_link_failure_is_a_connect_error(self, clients):
        client = clients(factory=lambda room, key: RefusingLink())
        with pytest.raises(TransportConnectError, match="relay down"):
            await client.connect("MAIN", member("a", 1))

    async def test_second_connect_replaces_first_channel(self, clients, hub):
        client = clients()
        first = await client.connect("MAIN", member("a", 1))
        second = await client.connect("MAIN", member("a", 1))
        assert first.closed
        assert not second.closed
        assert client.channel("MAIN") is second
        assert hub.count("MAIN") == 1

    async def test_disconnect_unsubscribes(self, clients, hub):
        client = clients()
        await client.connect("MAIN", member("a", 1))
        await client.disconnect("MAIN")
        assert hub.count("MAIN") == 0
        assert client.channel("MAIN") is None


class TestPresence:
    async def test_announce_once(self, clients, hub):
        handle = await clients().connect("MAIN", member("a", 1))
        await handle.announce_presence()
        assert handle.announced
        assert list(hub.presence_state("MAIN")) == ["a"]
        with pytest.raises(ChannelStateError):
            await handle.announce_presence()

    async def test_announce_before_established_is_refused(self, hub):
        handle = ChannelHandle("MAIN", member("a", 1), LocalLink(hub, "MAIN", "a"))
        with pytest.raises(ChannelStateError):
            await handle.announce_presence()

    async def test_announce_after_close_is_refused(self, clients):
        handle = await clients().connect("MAIN", member("a", 1))
        await handle.close()
        with pytest.raises(ChannelStateError):
            await handle.announce_presence()

    async def test_failed_track_leaves_member_invisible(self, clients, hub):
        client = clients(factory=lambda room, key: NoTrackLink(hub, room, key))
        handle = await client.connect("MAIN", member("a", 1))
        with pytest.raises(PresenceTrackError):
            await handle.announce_presence()
        assert not handle.announced
        assert hub.presence_state("MAIN") == {}

    async def test_join_and_leave_reach_other_members(self, clients):
        a_client, b_client = clients(), clients()
        b = await b_client.connect("MAIN", member("b", 2))
        seen = []
        b.on_presence(lambda event, state: seen.append((event, sorted(state))))

        a = await a_client.connect("MAIN", member("a", 1))
        await a.announce_presence()
        await b.drain()
        assert seen[-2:] == [("join", ["a"]), ("sync", ["a"])]

        await a_client.disconnect("MAIN")
        await b.drain()
        assert seen[-2:] == [("leave", []), ("sync", [])]

    async def test_new_subscriber_gets_current_table(self, clients):
        a = await clients().connect("MAIN", member("a", 1))
        await a.announce_presence()
        b = await clients().connect("MAIN", member("b", 2))
        await b.drain()
        assert list(b.presence_state) == ["a"]
        assert b.presence_state["a"][0]["name"] == "a"

    async def test_presence_disposer(self, clients):
        a = await clients().connect("MAIN", member("a", 1))
        seen = []
        dispose = a.on_presence(lambda event, state: seen.append(event))
        dispose()
        await a.announce_presence()
        await a.drain()
        assert seen == []


class TestBroadcast:
    async def test_others_receive_sender_does_not(self, clients):
        a = await clients().connect("MAIN", member("a", 1))
        b = await clients().connect("MAIN", member("b", 2))
        got_a, got_b = [], []
        a.subscribe("state", lambda p, mid: got_a.append(p))
        b.subscribe("state", lambda p, mid: got_b.append((p, mid)))

        assert await a.broadcast("state", StatePayload(puzzle_index=2))
        await a.drain()
        await b.drain()
        assert got_a == []
        assert got_b[0][0] == StatePayload(puzzle_index=2)
        assert got_b[0][1]  # relay message id

    async def test_echo_when_requested(self, clients):
        a = await clients(echo_self=True).connect("MAIN", member("a", 1))
        got = []
        a.subscribe("ai", lambda p, mid: got.append(p.text))
        await a.broadcast("ai", AiPayload(text="hello"))
        await a.drain()
        assert got == ["hello"]

    async def test_dict_payload_is_validated(self, clients):
        a = await clients().connect("MAIN", member("a", 1))
        assert await a.broadcast("state", {"puzzleIndex": 1})
        with pytest.raises(MessageValidationError):
            await a.broadcast("state", {})
        with pytest.raises(MessageValidationError):
            await a.broadcast("chat", StatePayload(puzzle_index=1))

    async def test_invalid_inbound_payload_is_dropped(self, clients, hub):
        b = await clients().connect("MAIN", member("b", 2))
        got = []
        b.subscribe("state", lambda p, mid: got.append(p))
        await hub.broadcast("MAIN", "someone", "state", {"puzzleIndex": "three"})
        await hub.broadcast("MAIN", "someone", "state", {"puzzleIndex": 3})
        await b.drain()
        assert got == [StatePayload(puzzle_index=3)]

    async def test_failing_handler_does_not_stop_dispatch(self, clients, hub):
        b = await clients().connect("MAIN", member("b", 2))
        got = []

        def flaky(p, mid):
            if p.text == "one":
                raise RuntimeError("handler bug")
            got.append(p.text)

        b.subscribe("ai", flaky)
        await hub.broadcast("MAIN", "someone", "ai", {"text": "one"})
        await hub.broadcast("MAIN", "someone", "ai", {"text": "two"})
        await b.drain()
        assert got == ["two"]

    async def test_wait_ack(self, clients):
        a = await clients().connect("MAIN", member("a", 1))
        assert await a.broadcast("ai", AiPayload(text="x"), wait_ack=True, ack_timeout=1.0)

    async def test_broadcast_after_close_is_refused(self, clients):
        a = await clients().connect("MAIN", member("a", 1))
        await a.close()
        with pytest.raises(ChannelStateError):
            await a.broadcast("ai", AiPayload(text="late"))

    async def test_frames_are_dispatched_in_arrival_order(self, clients, hub):
        b = await clients().connect("MAIN", member("b", 2))
        order = []
        b.on_presence(lambda event, state: order.append(("presence", event)))
        b.subscribe("state", lambda p, mid: order.append(("state", p.puzzle_index)))
        a = await clients().connect("MAIN", member("a", 1))
        await a.announce_presence()
        await a.broadcast("state", StatePayload(puzzle_index=1))
        await a.broadcast("state", StatePayload(puzzle_index=2))
        await b.drain()
        assert order[order.index(("presence", "join")):] == [
            ("presence", "join"), ("presence", "sync"), ("state", 1), ("state", 2),
        ]


class TestRelayDrop:
    async def test_drop_runs_closed_handlers_once(self, clients, hub):
        client = clients(factory=lambda room, key: DroppableLink(hub, room, key))
        handle = await client.connect("MAIN", member("a", 1))
        calls = []
        handle.on_closed(lambda: calls.append("closed"))

        await handle._link.drop()
        await handle.drain()
        handle._dispatch({"type": "closed"})
        assert calls == ["closed"]
        assert handle.dropped
        assert not handle.established
        assert not await handle.broadcast("ai", AiPayload(text="anyone?"))

    async def test_local_close_is_not_a_drop(self, clients):
        handle = await clients().connect("MAIN", member("a", 1))
        calls = []
        handle.on_closed(lambda: calls.append("closed"))
        await handle.close()
        assert calls == []
        assert not handle.dropped

    async def test_closed_disposer(self, clients, hub):
        client = clients(factory=lambda room, key: DroppableLink(hub, room, key))
        handle = await client.connect("MAIN", member("a", 1))
        calls = []
        dispose = handle.on_closed(lambda: calls.append("closed"))
        dispose()
        await handle._link.drop()
        await handle.drain()
        assert calls == []
        assert handle.dropped
