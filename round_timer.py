"""
round_timer.py -- Countdown for the active round of a circle.

remaining = max(0, roundStart + periodDuration - now), expired = remaining == 0.
Purely derived: nothing is persisted, and the timer is rebuilt whenever the
tracked circle, its state or its round changes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable

import config
from circle_state import Circle, CircleState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoundClock:
    remaining: int
    expired: bool


def remaining_seconds(round_start: int, period_duration: int, now: float) -> int:
    return max(0, int(round_start) + int(period_duration) - int(now))


def compute(round_start: int, period_duration: int, now: float) -> RoundClock:
    remaining = remaining_seconds(round_start, period_duration, now)
    return RoundClock(remaining=remaining, expired=remaining == 0)


def format_remaining(seconds: int) -> str:
    seconds = max(0, int(seconds))
    days, rest = divmod(seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, secs = divmod(rest, 60)
    if days:
        return f"{days}d {hours:02d}h {minutes:02d}m"
    if hours:
        return f"{hours}h {minutes:02d}m {secs:02d}s"
    return f"{minutes:02d}m {secs:02d}s"


class RoundTimer:
    """Recomputes the countdown once per tick while the tracked circle is Active."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        tick_sec: float | None = None,
        on_tick: Callable[[RoundClock], None] | None = None,
    ) -> None:
        self._clock = clock
        self.tick_sec = float(tick_sec if tick_sec is not None else config.TIMER_TICK_SEC)
        self.on_tick = on_tick
        self.circle: Circle | None = None
        self.current: RoundClock | None = None
        self._task: asyncio.Task | None = None

    @staticmethod
    def _identity(circle: Circle | None) -> tuple | None:
        if circle is None:
            return None
        return (circle.circle_id, circle.state, circle.current_round, circle.round_start, circle.period_duration)

    def track(self, circle: Circle | None) -> None:
        """Point the timer at *circle*; a different circle or state rebuilds it."""
        if self._identity(circle) == self._identity(self.circle):
            return
        self.circle = circle
        self.current = None
        if circle is not None and circle.state == CircleState.ACTIVE:
            self.tick()
        else:
            self.stop()

    @property
    def active(self) -> bool:
        return self.circle is not None and self.circle.state == CircleState.ACTIVE

    @property
    def expired(self) -> bool:
        return bool(self.current and self.current.expired)

    def tick(self) -> RoundClock | None:
        if not self.active:
            self.current = None
            return None
        was_expired = self.expired
        self.current = compute(self.circle.round_start, self.circle.period_duration, self._clock())
        if self.current.expired and not was_expired:
            logger.info("Round %d of circle %d expired", self.circle.current_round, self.circle.circle_id)
        if self.on_tick is not None:
            self.on_tick(self.current)
        return self.current

    async def run(self) -> None:
        while self.active:
            self.tick()
            await asyncio.sleep(self.tick_sec)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run())

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
