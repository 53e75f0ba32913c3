"""
Session State Machine: shared phase, puzzle index and countdown anchor.

    lobby --start--> running --state{puzzleIndex}--> running
                     running --state{outcome: won}--> won
                     running --state{outcome: lost} / local expiry--> lost

Every transition is driven by an absolute value carried in a broadcast,
never by a delta, so re-delivery and reordering are harmless:
  - puzzleIndex is applied only while running and only when it is ahead
    of the local index; a lobby client never carries an index into its
    next start
  - phase only moves forward; won/lost are terminal and sticky
  - the deadline is adopted verbatim from the first start message

Competing starts: two members can both believe they are host while
presence converges and each issue a start. A second start that carries
an earlier deadline replaces the local one ("rebased") as long as the
crew is still on the first puzzle and the first start was applied no
more than start_window_ms ago. Every client ends up on the earliest
deadline whatever order the starts arrive in.

apply_* return True when something changed. Listeners fire only on real
changes, so side effects hung off transitions happen once per client.
"""
import logging
from typing import Callable, List, NamedTuple, Optional

from models.messages import StartPayload, StatePayload
from models.room import Member, Outcome, SessionPhase, SessionState

logger = logging.getLogger(__name__)


class Transition(NamedTuple):
    kind: str  # started | rebased | advanced | won | lost
    state: SessionState
    source: str  # broadcast | local | expiry


TransitionListener = Callable[[Transition], None]


class SessionStateMachine:
    def __init__(self, puzzle_count: int, room_id: str = "", start_window_ms: int = 0):
        if puzzle_count < 1:
            raise ValueError("a session needs at least one puzzle")
        self.puzzle_count = puzzle_count
        self.room_id = room_id
        self.start_window_ms = start_window_ms
        self.state = SessionState()
        self.start_members: List[Member] = []
        self._started_at: Optional[int] = None
        self._listeners: List[TransitionListener] = []

    def listen(self, fn: TransitionListener) -> None:
        self._listeners.append(fn)

    @property
    def phase(self) -> SessionPhase:
        return self.state.phase

    @property
    def puzzle_index(self) -> int:
        return self.state.puzzle_index

    @property
    def deadline_ts(self) -> Optional[int]:
        return self.state.deadline_ts

    # ── Transitions ────────────────────────────────────────────────────────────

    def apply_start(
        self,
        payload: StartPayload,
        source: str = "broadcast",
        now: Optional[int] = None,
    ) -> bool:
        if self.state.phase == SessionPhase.RUNNING:
            return self._contest_start(payload, source, now)
        if self.state.phase != SessionPhase.LOBBY:
            self._stale("start", f"phase is {self.state.phase.value}")
            return False
        self.state = SessionState(phase=SessionPhase.RUNNING, deadline_ts=payload.deadline_ts)
        self.start_members = list(payload.members)
        self._started_at = now
        logger.info(f"[{self.room_id}] Phase: lobby → running (deadline {payload.deadline_ts})")
        self._fire("started", source)
        return True

    def _contest_start(self, payload: StartPayload, source: str, now: Optional[int]) -> bool:
        current = self.state.deadline_ts
        if current is None or payload.deadline_ts >= current:
            self._stale("start", "already running on an earlier or equal deadline")
            return False
        if self.state.puzzle_index > 0:
            self._stale("start", f"crew already on puzzle {self.state.puzzle_index}")
            return False
        if now is None or self._started_at is None or now - self._started_at > self.start_window_ms:
            self._stale("start", "outside the start window")
            return False
        self.state = self.state.model_copy(update={"deadline_ts": payload.deadline_ts})
        self.start_members = list(payload.members)
        logger.info(
            f"[{self.room_id}] competing start: deadline {current} → {payload.deadline_ts}"
        )
        self._fire("rebased", source)
        return True

    def apply_state(self, payload: StatePayload, source: str = "broadcast") -> bool:
        if self.state.phase != SessionPhase.RUNNING:
            self._stale("state", f"phase is {self.state.phase.value}")
            return False

        changed = False
        index = payload.puzzle_index
        if index is not None:
            if index >= self.puzzle_count:
                logger.warning(
                    f"[{self.room_id}] ignoring puzzleIndex {index} past last puzzle"
                )
            elif index > self.state.puzzle_index:
                previous = self.state.puzzle_index
                self.state = self.state.model_copy(update={"puzzle_index": index})
                logger.info(f"[{self.room_id}] Puzzle: {previous} → {index}")
                changed = True
                self._fire("advanced", source)
            else:
                self._stale("state", f"puzzleIndex {index} <= local {self.state.puzzle_index}")

        if payload.outcome is not None:
            changed = self._finish(payload.outcome, source) or changed
        return changed

    def expire(self) -> bool:
        """Local countdown hit zero: fall back to lost without waiting for anyone."""
        return self._finish(Outcome.LOST, "expiry")

    def _finish(self, outcome: Outcome, source: str) -> bool:
        if self.state.phase != SessionPhase.RUNNING:
            self._stale(outcome.value, f"phase is {self.state.phase.value}")
            return False
        phase = SessionPhase.WON if outcome == Outcome.WON else SessionPhase.LOST
        self.state = self.state.model_copy(update={"phase": phase})
        logger.info(f"[{self.room_id}] Phase: running → {phase.value} ({source})")
        self._fire(phase.value, source)
        return True

    # ── Proposals ──────────────────────────────────────────────────────────────

    def next_advance(self, from_index: Optional[int] = None) -> StatePayload:
        """Absolute message for "puzzle `from_index` (default: current) solved"."""
        base = self.state.puzzle_index if from_index is None else from_index
        nxt = base + 1
        if nxt >= self.puzzle_count:
            return StatePayload(outcome=Outcome.WON)
        return StatePayload(puzzle_index=nxt)

    # ── Internals ──────────────────────────────────────────────────────────────

    def _stale(self, what: str, why: str) -> None:
        logger.debug(f"[{self.room_id}] stale {what} ignored: {why}")

    def _fire(self, kind: str, source: str) -> None:
        transition = Transition(kind, self.state, source)
        for fn in list(self._listeners):
            fn(transition)
