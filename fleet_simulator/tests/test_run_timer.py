"""Tests for the bounded-run timer."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from fleet_simulator.coordinators.run_timer import RunTimer
from fleet_simulator.models.device_stats import FleetStats


@pytest.mark.asyncio
async def test_timer_fires_once_after_duration():
    on_expire = MagicMock()
    timer = RunTimer(0.05 / 60, on_expire, show_countdown=False)

    timer.start()
    assert timer.is_running
    await asyncio.sleep(0.1)

    on_expire.assert_called_once_with("run duration reached")
    assert not timer.is_running
    timer.stop_timer()
    on_expire.assert_called_once()


@pytest.mark.asyncio
async def test_extend_adds_to_remaining_time():
    timer = RunTimer(10, MagicMock(), show_countdown=False)
    timer.start()

    remaining = timer.extend_timer(5)

    assert remaining == 15
    assert 14.9 * 60 < timer.remaining_seconds() <= 15 * 60
    assert timer.planned_minutes == 15
    timer.cancel()


@pytest.mark.asyncio
async def test_extend_reschedules_single_handle():
    on_expire = MagicMock()
    timer = RunTimer(0.05 / 60, on_expire, show_countdown=False)
    timer.start()

    timer.extend_timer(0.1 / 60)
    await asyncio.sleep(0.08)
    on_expire.assert_not_called()

    await asyncio.sleep(0.15)
    on_expire.assert_called_once()


@pytest.mark.asyncio
async def test_stop_timer_fires_immediately():
    on_expire = MagicMock()
    timer = RunTimer(10, on_expire, show_countdown=False)
    timer.start()

    timer.stop_timer()

    on_expire.assert_called_once_with("stopped by operator")
    assert timer.remaining_minutes() == 0
    assert timer.extend_timer(5) == 0


@pytest.mark.asyncio
async def test_remaining_minutes_rounds_up():
    timer = RunTimer(2.5, MagicMock(), show_countdown=False)
    timer.start()
    assert timer.remaining_minutes() == 3
    timer.cancel()


@pytest.mark.asyncio
async def test_countdown_task_stops_on_cancel():
    timer = RunTimer(10, MagicMock(), countdown_interval=0.01)
    timer.start()
    await asyncio.sleep(0.03)
    timer.cancel()
    assert not timer.is_running


@pytest.mark.asyncio
async def test_final_report_contains_stats():
    timer = RunTimer(12, MagicMock(), show_countdown=False)
    timer.start()
    timer.stop_timer()
    stats = FleetStats(
        requested_count=4, connected_count=3, total_telemetry=40, total_errors=2, transport="mqtt"
    )

    report = timer.final_report(stats)

    assert "Planned runtime: 12 minutes" in report
    assert "3/4 connected" in report
    assert "avg 10.0/device" in report
    assert report.splitlines()[-1].split() == ["Errors:", "2"]
