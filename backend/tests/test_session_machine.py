"""Tests for the shared session state machine."""
from __future__ import annotations

import itertools

import pytest

from agents.session_machine import SessionStateMachine
from models.messages import StartPayload, StatePayload
from models.room import Outcome, SessionPhase

from conftest import T0, member


def started(puzzles: int = 4) -> SessionStateMachine:
    sm = SessionStateMachine(puzzles, "MAIN")
    sm.apply_start(StartPayload(deadline_ts=T0 + 600_000, members=[member("a", 1)]))
    return sm


class TestStart:
    """lobby -> running."""

    def test_start_adopts_carried_deadline(self):
        sm = SessionStateMachine(4)
        assert sm.phase == SessionPhase.LOBBY
        assert sm.apply_start(StartPayload(deadline_ts=T0 + 5000, members=[member("a", 1)]))
        assert sm.phase == SessionPhase.RUNNING
        assert sm.deadline_ts == T0 + 5000
        assert [m.id for m in sm.start_members] == ["a"]

    def test_second_start_is_ignored(self):
        sm = started()
        assert not sm.apply_start(StartPayload(deadline_ts=T0 + 1, members=[]))
        assert sm.deadline_ts == T0 + 600_000

    def test_start_after_terminal_is_ignored(self):
        sm = started()
        sm.expire()
        assert not sm.apply_start(StartPayload(deadline_ts=T0 + 1, members=[]))
        assert sm.phase == SessionPhase.LOST

    def test_needs_at_least_one_puzzle(self):
        with pytest.raises(ValueError):
            SessionStateMachine(0)


class TestCompetingStart:
    """Two self-declared hosts start at nearly the same time."""

    def contested(self) -> SessionStateMachine:
        sm = SessionStateMachine(4, "MAIN", start_window_ms=1500)
        sm.apply_start(StartPayload(deadline_ts=T0 + 600_000, members=[member("b", 2)]), now=T0)
        return sm

    def test_earlier_deadline_wins(self):
        sm = self.contested()
        kinds = []
        sm.listen(lambda t: kinds.append(t.kind))
        assert sm.apply_start(StartPayload(deadline_ts=T0 + 599_600, members=[member("a", 1)]), now=T0 + 200)
        assert sm.deadline_ts == T0 + 599_600
        assert [m.id for m in sm.start_members] == ["a"]
        assert kinds == ["rebased"]

    def test_later_deadline_is_ignored(self):
        sm = self.contested()
        assert not sm.apply_start(StartPayload(deadline_ts=T0 + 600_400, members=[]), now=T0 + 200)
        assert sm.deadline_ts == T0 + 600_000

    def test_both_orders_converge(self):
        early = StartPayload(deadline_ts=T0 + 599_000, members=[member("a", 1)])
        late = StartPayload(deadline_ts=T0 + 600_000, members=[member("b", 2)])
        x = SessionStateMachine(4, start_window_ms=1500)
        y = SessionStateMachine(4, start_window_ms=1500)
        x.apply_start(early, now=T0)
        x.apply_start(late, now=T0)
        y.apply_start(late, now=T0)
        y.apply_start(early, now=T0)
        assert x.deadline_ts == y.deadline_ts == T0 + 599_000

    def test_outside_start_window_is_ignored(self):
        sm = self.contested()
        assert not sm.apply_start(StartPayload(deadline_ts=T0 + 1000, members=[]), now=T0 + 1501)
        assert sm.deadline_ts == T0 + 600_000

    def test_after_first_advance_is_ignored(self):
        sm = self.contested()
        sm.apply_state(StatePayload(puzzle_index=1))
        assert not sm.apply_start(StartPayload(deadline_ts=T0 + 1000, members=[]), now=T0)
        assert sm.deadline_ts == T0 + 600_000


class TestAdvance:
    """running -> running by absolute puzzle index."""

    def test_applying_same_index_twice_is_idempotent(self):
        sm = started()
        assert sm.apply_state(StatePayload(puzzle_index=1))
        once = sm.state.model_copy()
        assert not sm.apply_state(StatePayload(puzzle_index=1))
        assert sm.state == once

    def test_stale_index_is_ignored(self):
        sm = started()
        for idx in (1, 3, 2):
            sm.apply_state(StatePayload(puzzle_index=idx))
        assert sm.puzzle_index == 3

    def test_index_never_decreases_for_any_delivery_order(self):
        for order in itertools.permutations([1, 2, 3]):
            sm = started()
            seen = []
            for idx in order:
                sm.apply_state(StatePayload(puzzle_index=idx))
                seen.append(sm.puzzle_index)
            assert seen == sorted(seen)
            assert sm.puzzle_index == 3

    def test_index_past_last_puzzle_is_ignored(self):
        sm = started(puzzles=2)
        assert not sm.apply_state(StatePayload(puzzle_index=2))
        assert sm.puzzle_index == 0

    def test_index_received_in_lobby_is_not_carried_into_start(self):
        sm = SessionStateMachine(4)
        assert not sm.apply_state(StatePayload(puzzle_index=2))
        assert sm.puzzle_index == 0
        sm.apply_start(StartPayload(deadline_ts=T0 + 5000, members=[member("a", 1)]))
        assert sm.phase == SessionPhase.RUNNING
        assert sm.puzzle_index == 0

    def test_listeners_fire_once_per_real_change(self):
        sm = started()
        kinds = []
        sm.listen(lambda t: kinds.append(t.kind))
        for _ in range(3):
            sm.apply_state(StatePayload(puzzle_index=1))
        assert kinds == ["advanced"]


class TestOutcome:
    """running -> won / lost."""

    def test_won_is_terminal(self):
        sm = started()
        assert sm.apply_state(StatePayload(outcome=Outcome.WON))
        assert sm.phase == SessionPhase.WON
        assert not sm.apply_state(StatePayload(puzzle_index=2))
        assert not sm.apply_state(StatePayload(outcome=Outcome.LOST))
        assert sm.phase == SessionPhase.WON

    def test_local_expiry_reaches_lost(self):
        sm = started()
        assert sm.expire()
        assert sm.phase == SessionPhase.LOST

    def test_lost_broadcast_and_local_expiry_converge(self):
        a, b = started(), started()
        a.apply_state(StatePayload(outcome=Outcome.LOST))
        b.expire()
        b.apply_state(StatePayload(outcome=Outcome.LOST))
        assert a.state == b.state

    def test_won_after_local_lost_does_not_unterminate(self):
        sm = started()
        sm.expire()
        assert not sm.apply_state(StatePayload(outcome=Outcome.WON))
        assert sm.phase == SessionPhase.LOST

    def test_outcome_in_lobby_is_ignored(self):
        sm = SessionStateMachine(4)
        assert not sm.apply_state(StatePayload(outcome=Outcome.WON))
        assert not sm.expire()
        assert sm.phase == SessionPhase.LOBBY

    def test_duplicate_outcome_fires_once(self):
        sm = started()
        kinds = []
        sm.listen(lambda t: kinds.append(t.kind))
        sm.apply_state(StatePayload(outcome=Outcome.WON))
        sm.apply_state(StatePayload(outcome=Outcome.WON))
        assert kinds == ["won"]


class TestNextAdvance:
    """Absolute proposals for a solved puzzle."""

    def test_middle_puzzle_proposes_next_index(self):
        sm = started(puzzles=3)
        assert sm.next_advance() == StatePayload(puzzle_index=1)

    def test_last_puzzle_proposes_win(self):
        sm = started(puzzles=2)
        sm.apply_state(StatePayload(puzzle_index=1))
        assert sm.next_advance() == StatePayload(outcome=Outcome.WON)

    def test_proposal_from_explicit_index(self):
        sm = started(puzzles=4)
        sm.apply_state(StatePayload(puzzle_index=2))
        assert sm.next_advance(from_index=0) == StatePayload(puzzle_index=1)
