"""
Crew Session: the per-participant session controller.

Owns everything one client needs for one session and wires it together:

  RealtimeClient/ChannelHandle --presence--> PresenceReconciler --> members, host
                               --start/state--> SessionStateMachine --> countdown, transcript
                               --chat/ai/try--> transcript, tries
  submit() --> ProgressionEngine --> (accepted) apply locally + broadcast "state"

There is no module-level channel: the handle belongs to this object and
is dropped by restart(). Anything scheduled by an old session (ticker,
narration tasks, late frames on the old handle) is cut off by restart()
before a new session can be joined.

Decisions that keep clients convergent:
  - own broadcasts are applied locally once; the relay does not echo them
  - relay message ids are remembered (bounded window) so a re-delivered
    chat/ai/try message is appended only once
  - any member may propose an advance or a win; the monotonicity guard
    in SessionStateMachine makes the proposer irrelevant
  - only the host issues "start" and the timeout "lost" broadcast; if two
    members both issue one while presence converges, the earlier deadline
    wins (see SessionStateMachine)
  - the first terminal outcome reached locally sticks
  - a relay drop or a failed send marks the session disconnected; actions
    then raise ChannelStateError until restart()
"""
import asyncio
import logging
from collections import OrderedDict
from typing import Callable, List, Optional, Sequence, Set

from config import settings
from agents.countdown import CountdownSynchronizer
from agents.host_election import elect_host
from agents.narrator_agent import (
    FALLBACK_LINES,
    hint_request,
    nudge_request,
    victory_request,
    welcome_request,
    zeta_speak,
)
from agents.presence import PresenceReconciler
from agents.progression import ProgressionEngine, SubmitResult
from agents.session_machine import SessionStateMachine, Transition
from data.puzzles import PUZZLES, Puzzle
from models.messages import (
    AiPayload,
    ChatPayload,
    StartPayload,
    StatePayload,
    Topic,
    TryPayload,
)
from models.room import ChatEntry, Member, Outcome, RoomMembership, SessionPhase
from services.realtime import ChannelHandle, ChannelStateError, RealtimeClient
from utils.ids import make_id, new_member_id, normalize_room_id, now_ms, random_color

logger = logging.getLogger(__name__)

SEEN_WINDOW = 256
NAME_MAX_LEN = 24


class NotHostError(RuntimeError):
    """A host-only action was attempted by a non-host member."""


class CrewSession:
    def __init__(
        self,
        realtime: RealtimeClient,
        puzzles: Sequence[Puzzle] = PUZZLES,
        narrator=None,
        clock: Callable[[], int] = now_ms,
        room_id: Optional[str] = None,
        max_members: Optional[int] = None,
        session_seconds: Optional[int] = None,
        start_buffer_ms: Optional[int] = None,
        grace_ms: Optional[int] = None,
        tick_seconds: Optional[float] = None,
        autotick: bool = True,
    ):
        self.realtime = realtime
        self.engine = ProgressionEngine(puzzles)
        self.narrator = narrator
        self.room_id = normalize_room_id(room_id)
        self.max_members = max_members if max_members is not None else settings.max_members
        self.session_seconds = session_seconds if session_seconds is not None else settings.session_seconds
        self.start_buffer_ms = start_buffer_ms if start_buffer_ms is not None else settings.start_buffer_ms
        self.grace_ms = grace_ms if grace_ms is not None else settings.empty_snapshot_grace_ms
        self.tick_seconds = tick_seconds if tick_seconds is not None else settings.tick_seconds
        self.autotick = autotick
        self._clock = clock
        self._generation = 0
        self._tasks: Set[asyncio.Task] = set()
        self._reset_local()

    def _reset_local(self) -> None:
        self.me: Optional[Member] = None
        self.channel: Optional[ChannelHandle] = None
        self.reconciler: Optional[PresenceReconciler] = None
        self.machine = SessionStateMachine(
            len(self.engine), self.room_id, start_window_ms=self.start_buffer_ms
        )
        self.machine.listen(self._on_transition)
        self.countdown = CountdownSynchronizer(
            on_expire=self._on_expire,
            clock=self._clock,
            tick_seconds=self.tick_seconds,
            room_id=self.room_id,
        )
        self.membership = RoomMembership(room_id=self.room_id)
        self.host: Optional[Member] = None
        self.room_full = False
        self.disconnected = False
        self.hints_used = 0
        self.transcript: List[ChatEntry] = []
        self.tries: List[TryPayload] = []
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._puzzle_started_at: Optional[int] = None

    # ── Read-only view ─────────────────────────────────────────────────────────

    @property
    def phase(self) -> SessionPhase:
        return self.machine.phase

    @property
    def puzzle_index(self) -> int:
        return self.machine.puzzle_index

    @property
    def current_puzzle(self) -> Optional[Puzzle]:
        return self.engine.puzzle(self.machine.puzzle_index)

    @property
    def deadline(self) -> Optional[int]:
        return self.machine.deadline_ts

    @property
    def seconds_left(self) -> Optional[int]:
        return self.countdown.seconds_left

    @property
    def members(self) -> List[Member]:
        return self.membership.admitted(self.max_members)

    @property
    def is_host(self) -> bool:
        return self.me is not None and self.host is not None and self.host.id == self.me.id

    # ── Joining ────────────────────────────────────────────────────────────────

    async def join(self, name: str, color: Optional[str] = None) -> Member:
        """
        Subscribe to the room and announce presence.
        TransportConnectError / PresenceTrackError propagate to the caller,
        who decides whether to retry.
        """
        if self.channel is not None:
            raise ChannelStateError("already joined; restart() first")

        display_name = (name or "").strip()[:NAME_MAX_LEN] or f"player-{make_id(4)}"
        member = Member(
            id=new_member_id(),
            display_name=display_name,
            color=color or random_color(),
            join_ts=self._clock(),
        )
        handle = await self.realtime.connect(self.room_id, member)
        self.me = member
        self.channel = handle
        self.reconciler = PresenceReconciler(handle.room_id, self.grace_ms, self._clock)
        self.reconciler.listen(self._on_membership)

        handle.on_presence(self._bound(handle, self.reconciler.handle))
        handle.on_closed(self._bound(handle, self._on_link_lost))
        handle.subscribe(Topic.START.value, self._bound(handle, self._on_start))
        handle.subscribe(Topic.STATE.value, self._bound(handle, self._on_state))
        handle.subscribe(Topic.CHAT.value, self._bound(handle, self._on_chat))
        handle.subscribe(Topic.AI.value, self._bound(handle, self._on_ai))
        handle.subscribe(Topic.TRY.value, self._bound(handle, self._on_try))

        # Whatever the relay already told us before the handlers existed
        self.reconciler.reconcile(handle.presence_state, guard=False)

        await handle.announce_presence(member.to_meta())
        logger.info(f"[{self.room_id}] {display_name} joined as {member.id}")
        return member

    async def retry_presence(self) -> None:
        """Re-attempt a presence announce that failed during join()."""
        channel = self._require_channel()
        if not channel.announced:
            await channel.announce_presence(self.me.to_meta())

    def _bound(self, handle: ChannelHandle, fn: Callable) -> Callable:
        # Frames still queued on a handle we already dropped must not reach a new session
        def guarded(*args):
            if self.channel is handle:
                fn(*args)
        return guarded

    def _require_channel(self) -> ChannelHandle:
        if self.channel is None or self.me is None:
            raise ChannelStateError("not joined")
        if self.disconnected:
            raise ChannelStateError("relay link lost; restart() to rejoin")
        return self.channel

    async def _send(self, channel: ChannelHandle, topic: str, payload) -> bool:
        ok = await channel.broadcast(topic, payload)
        if not ok and channel is self.channel:
            self._mark_disconnected(f"'{topic}' could not be sent")
        return ok

    def _on_link_lost(self) -> None:
        self._mark_disconnected("relay closed the connection")

    def _mark_disconnected(self, reason: str) -> None:
        if self.disconnected:
            return
        self.disconnected = True
        logger.warning(f"[{self.room_id}] link to the crew lost: {reason}")
        self._system_line("Link to the relay lost. Restart to rejoin the crew.")

    # ── Actions ────────────────────────────────────────────────────────────────

    async def start(self) -> bool:
        """Host only: fix the shared deadline and tell everyone."""
        channel = self._require_channel()
        if self.machine.phase != SessionPhase.LOBBY:
            return False
        if not self.is_host:
            raise NotHostError("only the host can start the session")
        members = self.members
        if not members or self.room_full:
            return False

        deadline = self._clock() + self.start_buffer_ms + self.session_seconds * 1000
        payload = StartPayload(deadline_ts=deadline, members=members)
        self.machine.apply_start(payload, source="local", now=self._clock())
        if await self._send(channel, Topic.START.value, payload):
            self._spawn(self._narrate("welcome", welcome_request()))
        return True

    async def submit(self, text: str) -> SubmitResult:
        """Check an answer for the current puzzle and share the attempt."""
        channel = self._require_channel()
        index = self.machine.puzzle_index
        if self.machine.phase != SessionPhase.RUNNING:
            return SubmitResult(False, None, (text or "").strip())

        result = self.engine.submit(index, text)
        if not result.answer:
            return result

        advance: Optional[StatePayload] = None
        if result.accepted:
            advance = self.machine.next_advance(from_index=index)
            # Applied before any await so a concurrent remote advance cannot skip a puzzle
            if not self.machine.apply_state(advance, source="local"):
                advance = None

        attempt = TryPayload(nick=self.me.display_name, answer=result.answer)
        self.tries.append(attempt)
        await self._send(channel, Topic.TRY.value, attempt)

        if advance is not None:
            await self._send(channel, Topic.STATE.value, advance)
            if advance.outcome == Outcome.WON:
                self._spawn(self._narrate("victory", victory_request()))
        elif not result.accepted:
            self._spawn(self._narrate("nudge", nudge_request(result.puzzle_id, result.answer)))
        return result

    async def say(self, text: str) -> Optional[ChatPayload]:
        channel = self._require_channel()
        text = (text or "").strip()
        if not text:
            return None
        scope = "lobby" if self.machine.phase == SessionPhase.LOBBY else "game"
        payload = ChatPayload(
            sender=self.me.display_name, text=text, at=self._clock(),
            color=self.me.color, scope=scope,
        )
        self._append_chat(payload, origin=self.me.id)
        await self._send(channel, Topic.CHAT.value, payload)
        return payload

    def tick(self) -> Optional[int]:
        """One countdown step (the background ticker calls this at ~1 Hz)."""
        return self.countdown.tick()

    def hint(self) -> Optional[str]:
        """Escalating hint for the current puzzle, or None if it is too early."""
        if self.machine.phase != SessionPhase.RUNNING or self._puzzle_started_at is None:
            return None
        elapsed = (self._clock() - self._puzzle_started_at) / 1000
        return self.engine.hint_for(self.machine.puzzle_index, elapsed)

    async def ask_hint(self) -> Optional[str]:
        """
        Ask AI-Zeta for a nudge on the current puzzle. The reply is only for
        this member: it is returned, not broadcast or added to the transcript.
        """
        puzzle = self.current_puzzle
        if self.machine.phase != SessionPhase.RUNNING or puzzle is None:
            return None
        self.hints_used += 1
        return await zeta_speak(self.narrator, hint_request(puzzle), FALLBACK_LINES["hint"])

    async def restart(self) -> None:
        """
        Tear the session down: stop the ticker and pending narration, drop
        the channel. join() afterwards starts a brand-new session.
        """
        self._generation += 1
        self.countdown.stop()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        channel = self.channel
        self._reset_local()
        if channel is not None:
            await self.realtime.disconnect(channel.room_id)
        logger.info(f"[{self.room_id}] session reset")

    # ── Inbound ────────────────────────────────────────────────────────────────

    def _on_membership(self, membership: RoomMembership) -> None:
        self.membership = membership
        self.host = elect_host(membership.admitted(self.max_members))
        if self.me is None or self.room_full:
            return
        pos = membership.position(self.me.id)
        if pos is not None and pos >= self.max_members:
            self.room_full = True
            logger.warning(
                f"[{self.room_id}] room is full ({self.max_members}); leaving at position {pos}"
            )
            self.countdown.stop()
            self._spawn(self._leave_full(self.channel))

    async def _leave_full(self, handle: Optional[ChannelHandle]) -> None:
        if handle is not None and handle is self.channel:
            await self.realtime.disconnect(handle.room_id)

    def _on_start(self, payload: StartPayload, message_id: Optional[str]) -> None:
        self.machine.apply_start(payload, now=self._clock())

    def _on_state(self, payload: StatePayload, message_id: Optional[str]) -> None:
        self.machine.apply_state(payload)

    def _on_chat(self, payload: ChatPayload, message_id: Optional[str]) -> None:
        if self._first_sighting(message_id):
            self._append_chat(payload)

    def _on_ai(self, payload: AiPayload, message_id: Optional[str]) -> None:
        if self._first_sighting(message_id):
            self.transcript.append(ChatEntry(role="assistant", text=payload.text, speaker="AI-Zeta"))

    def _on_try(self, payload: TryPayload, message_id: Optional[str]) -> None:
        if self._first_sighting(message_id):
            self.tries.append(payload)

    def _first_sighting(self, message_id: Optional[str]) -> bool:
        if not message_id:
            return True
        if message_id in self._seen:
            logger.debug(f"[{self.room_id}] duplicate message {message_id} dropped")
            return False
        self._seen[message_id] = None
        while len(self._seen) > SEEN_WINDOW:
            self._seen.popitem(last=False)
        return True

    def _append_chat(self, payload: ChatPayload, origin: Optional[str] = None) -> None:
        self.transcript.append(ChatEntry(
            role="user", text=payload.text, speaker=payload.sender,
            color=payload.color, at=payload.at, origin_member_id=origin,
        ))

    # ── Transitions ────────────────────────────────────────────────────────────

    def _on_transition(self, transition: Transition) -> None:
        now = self._clock()
        if transition.kind == "started":
            self._puzzle_started_at = now
            self.countdown.arm(transition.state.deadline_ts)
            if self.autotick:
                self.countdown.start()
            self._system_line(f"Session started. First system: {self.current_puzzle.title}.")

        elif transition.kind == "rebased":
            self.countdown.arm(transition.state.deadline_ts)
            logger.info(f"[{self.room_id}] countdown re-armed on the crew's earliest start")

        elif transition.kind == "advanced":
            self._puzzle_started_at = now
            self._system_line(
                f"System restored. Next: {self.current_puzzle.title} "
                f"[{transition.state.puzzle_index + 1}/{len(self.engine)}]."
            )

        elif transition.kind == "won":
            self.countdown.stop()
            self._system_line(FALLBACK_LINES["victory"])

        elif transition.kind == "lost":
            self.countdown.stop()
            self._system_line("Life support failed. The station is lost.")

    def _on_expire(self) -> None:
        changed = self.machine.expire()
        if changed and self.is_host and self.channel is not None and not self.disconnected:
            self._spawn(self._send(self.channel, Topic.STATE.value, StatePayload(outcome=Outcome.LOST)))

    def _system_line(self, text: str) -> None:
        self.transcript.append(ChatEntry(role="assistant", text=text, speaker="system"))

    # ── Narration ──────────────────────────────────────────────────────────────

    async def _narrate(self, kind: str, request) -> None:
        generation = self._generation
        text = await zeta_speak(self.narrator, request, FALLBACK_LINES[kind])
        channel = self.channel
        if generation != self._generation or channel is None or channel.closed:
            return
        self.transcript.append(ChatEntry(role="assistant", text=text, speaker="AI-Zeta"))
        if not self.disconnected:
            await self._send(channel, Topic.AI.value, AiPayload(text=text))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[{self.room_id}] background task failed: {task.exception()!r}")

    async def settle(self) -> None:
        """Wait for pending background work and queued inbound frames."""
        while True:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            if self.channel is not None and not self.channel.closed:
                await self.channel.drain()
            if not self._tasks:
                return
