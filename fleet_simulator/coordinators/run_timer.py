"""Bounded simulation run with countdown, extension and final report."""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime
from typing import Callable, Optional

from ..const import COUNTDOWN_INTERVAL
from ..models.device_stats import FleetStats

_LOGGER = logging.getLogger(__name__)


class RunTimer:
    """A single shutdown timer for the whole run.

    ``extend_timer`` adds to the time still remaining and reschedules the
    one outstanding handle; ``stop_timer`` fires it immediately.
    """

    __slots__ = (
        "_duration_minutes",
        "_on_expire",
        "_show_countdown",
        "_countdown_interval",
        "_loop",
        "_handle",
        "_deadline",
        "_countdown_task",
        "_fired",
        "_planned_minutes",
        "started_at",
        "ended_at",
    )

    def __init__(
        self,
        duration_minutes: float,
        on_expire: Callable[[str], None],
        *,
        show_countdown: bool = True,
        countdown_interval: float = COUNTDOWN_INTERVAL,
    ) -> None:
        self._duration_minutes = duration_minutes
        self._on_expire = on_expire
        self._show_countdown = show_countdown
        self._countdown_interval = countdown_interval
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._handle: Optional[asyncio.TimerHandle] = None
        self._deadline: Optional[float] = None
        self._countdown_task: Optional[asyncio.Task] = None
        self._fired = False
        self._planned_minutes = duration_minutes
        self.started_at: Optional[datetime] = None
        self.ended_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._handle is not None

    @property
    def planned_minutes(self) -> float:
        return self._planned_minutes

    def start(self) -> None:
        if self._handle is not None or self._fired:
            return
        self._loop = asyncio.get_running_loop()
        self.started_at = datetime.now()
        self._schedule(self._duration_minutes * 60)
        _LOGGER.info(f"Simulation will run for {self._duration_minutes:g} minutes")
        if self._show_countdown:
            self._countdown_task = asyncio.ensure_future(self._countdown())

    def _schedule(self, delay: float) -> None:
        assert self._loop is not None
        if self._handle is not None:
            self._handle.cancel()
        self._deadline = self._loop.time() + delay
        self._handle = self._loop.call_later(delay, self._expire, "run duration reached")

    def remaining_seconds(self) -> float:
        if self._handle is None or self._deadline is None or self._loop is None:
            return 0.0
        return max(0.0, self._deadline - self._loop.time())

    def remaining_minutes(self) -> int:
        """Whole minutes left, rounded up."""
        return math.ceil(self.remaining_seconds() / 60)

    def extend_timer(self, minutes: float) -> int:
        """Add ``minutes`` to the remaining time; returns the new remaining minutes."""
        if self._handle is None:
            _LOGGER.warning("Run timer is not active, nothing to extend")
            return 0
        self._schedule(self.remaining_seconds() + minutes * 60)
        self._planned_minutes += minutes
        remaining = self.remaining_minutes()
        _LOGGER.info(f"Run extended by {minutes:g} minutes, {remaining} minutes remaining")
        return remaining

    def stop_timer(self) -> None:
        """Trigger shutdown now."""
        _LOGGER.info("Run timer stopped by operator")
        self._expire("stopped by operator")

    def cancel(self) -> None:
        """Drop the timer without triggering shutdown."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._countdown_task is not None:
            self._countdown_task.cancel()
            self._countdown_task = None

    def _expire(self, reason: str) -> None:
        if self._fired:
            return
        self._fired = True
        self.cancel()
        self.ended_at = datetime.now()
        _LOGGER.info(f"Run timer expired: {reason}")
        self._on_expire(reason)

    async def _countdown(self) -> None:
        while True:
            await asyncio.sleep(self._countdown_interval)
            remaining = self.remaining_minutes()
            if remaining <= 0:
                return
            if remaining <= 1:
                _LOGGER.warning("Less than 1 minute remaining, preparing to shut down")
            else:
                _LOGGER.info(f"Time remaining: {remaining} minutes")

    def final_report(self, stats: FleetStats) -> str:
        """Summary of the run, logged and returned."""
        ended = self.ended_at or datetime.now()
        started = self.started_at or ended
        actual_minutes = (ended - started).total_seconds() / 60
        lines = [
            "Simulation report",
            f"  Start time:      {started.isoformat(timespec='seconds')}",
            f"  End time:        {ended.isoformat(timespec='seconds')}",
            f"  Actual runtime:  {actual_minutes:.1f} minutes",
            f"  Planned runtime: {self._planned_minutes:g} minutes",
            f"  Devices:         {stats.connected_count}/{stats.requested_count} connected "
            f"({stats.running_count} running)",
            f"  Telemetry sent:  {stats.total_telemetry} (avg {stats.average_telemetry:.1f}/device)",
            f"  Errors:          {stats.total_errors}",
        ]
        report = "\n".join(lines)
        _LOGGER.info(report)
        return report
