"""
Puzzle Progression Engine: pure answer evaluation plus the hint schedule.

Holds no shared state and never broadcasts. The caller turns an accepted
answer into an absolute advancement (SessionStateMachine.next_advance)
and decides what to send.
"""
from typing import NamedTuple, Optional, Sequence

from data.puzzles import Puzzle

SMALL_HINT_AFTER_S = 90
BIG_HINT_AFTER_S = 150


class SubmitResult(NamedTuple):
    accepted: bool
    puzzle_id: Optional[str] = None
    answer: str = ""


def next_hint_index(elapsed_in_puzzle_s: float) -> int:
    """-1 = no hint yet, 0 = small hint after 1:30, 1 = big hint after 2:30."""
    if elapsed_in_puzzle_s >= BIG_HINT_AFTER_S:
        return 1
    if elapsed_in_puzzle_s >= SMALL_HINT_AFTER_S:
        return 0
    return -1


class ProgressionEngine:
    def __init__(self, puzzles: Sequence[Puzzle]):
        if not puzzles:
            raise ValueError("puzzle list is empty")
        self.puzzles = tuple(puzzles)

    def __len__(self) -> int:
        return len(self.puzzles)

    def puzzle(self, index: int) -> Optional[Puzzle]:
        if 0 <= index < len(self.puzzles):
            return self.puzzles[index]
        return None

    def submit(self, index: int, candidate: str) -> SubmitResult:
        puzzle = self.puzzle(index)
        text = (candidate or "").strip()
        if puzzle is None or not text:
            return SubmitResult(False, puzzle.id if puzzle else None, text)
        return SubmitResult(puzzle.check(text), puzzle.id, text)

    def hint_for(self, index: int, elapsed_in_puzzle_s: float) -> Optional[str]:
        puzzle = self.puzzle(index)
        hint_idx = next_hint_index(elapsed_in_puzzle_s)
        if puzzle is None or hint_idx < 0 or not puzzle.hints:
            return None
        return puzzle.hints[min(hint_idx, len(puzzle.hints) - 1)]
