"""
Countdown Synchronizer.

Every client derives the time left from the one shared absolute deadline
carried by the start message: remaining = max(0, deadline - now). There is
no per-tick network traffic and no clock sync protocol; clients agree up
to their local clock error.
"""
import asyncio
import logging
from typing import Callable, Optional

from config import settings
from utils.ids import now_ms

logger = logging.getLogger(__name__)


def remaining_ms(deadline_ts: int, now: int) -> int:
    return max(0, deadline_ts - now)


def seconds_left(deadline_ts: int, now: int) -> int:
    """Whole seconds left, rounded up so zero means the deadline has passed."""
    return -(-remaining_ms(deadline_ts, now) // 1000)


def format_clock(seconds: int) -> str:
    m, s = divmod(max(0, seconds), 60)
    return f"{m:02d}:{s:02d}"


class CountdownSynchronizer:
    """
    Ticks at ~1 Hz against a shared deadline and calls on_expire exactly
    once per armed deadline when the local view reaches zero.
    """

    def __init__(
        self,
        on_expire: Optional[Callable[[], None]] = None,
        clock: Callable[[], int] = now_ms,
        tick_seconds: Optional[float] = None,
        room_id: str = "",
    ):
        self.on_expire = on_expire
        self.room_id = room_id
        self.tick_seconds = tick_seconds if tick_seconds is not None else settings.tick_seconds
        self._clock = clock
        self._deadline: Optional[int] = None
        self._expired = False
        self._task: Optional[asyncio.Task] = None
        self.seconds_left: Optional[int] = None

    @property
    def deadline_ts(self) -> Optional[int]:
        return self._deadline

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def arm(self, deadline_ts: int) -> None:
        self._deadline = deadline_ts
        self._expired = False
        self.seconds_left = seconds_left(deadline_ts, self._clock())

    def tick(self) -> Optional[int]:
        """One local step. Returns seconds left, or None when not armed."""
        if self._deadline is None:
            return None
        self.seconds_left = seconds_left(self._deadline, self._clock())
        if self.seconds_left <= 0 and not self._expired:
            self._expired = True
            logger.info(f"[{self.room_id}] countdown reached zero")
            if self.on_expire:
                self.on_expire()
        return self.seconds_left

    def start(self) -> None:
        """Run tick() in the background until stopped or expired."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while self._deadline is not None and not self._expired:
            self.tick()
            if self._expired:
                break
            await asyncio.sleep(self.tick_seconds)

    def stop(self) -> None:
        """Synchronously cancel the ticker and forget the deadline."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self._deadline = None
        self._expired = False
