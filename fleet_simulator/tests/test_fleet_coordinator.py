"""Tests for batched fleet startup, stats and coordinated shutdown."""

from __future__ import annotations

import asyncio
from typing import List
from unittest.mock import MagicMock

import pytest

from fleet_simulator.core.exceptions import JobInProgress, RegistrationError
from fleet_simulator.coordinators.fleet_coordinator import FleetOrchestrator, plan_batches
from fleet_simulator.models.device_stats import DeviceStatsSnapshot


class StubAgent:
    """Agent double that records startup concurrency."""

    in_flight = 0
    max_in_flight = 0

    def __init__(self, index: int, *, fail: bool = False, hang_on_close: bool = False) -> None:
        self.index = index
        self.device_id = f"dev-{index:03d}"
        self.fail = fail
        self.hang_on_close = hang_on_close
        self.telemetry_delay = None
        self.closed = False
        self.update_calls: List[tuple] = []

    async def start(self, telemetry_delay: float = 0.0) -> None:
        StubAgent.in_flight += 1
        StubAgent.max_in_flight = max(StubAgent.max_in_flight, StubAgent.in_flight)
        try:
            await asyncio.sleep(0.01)
            if self.fail:
                raise RegistrationError("Provisioning timed out")
            self.telemetry_delay = telemetry_delay
        finally:
            StubAgent.in_flight -= 1

    async def close(self) -> None:
        if self.hang_on_close:
            await asyncio.Event().wait()
        self.closed = True

    def start_firmware_update(self, version, url):
        if self.index == 2:
            raise JobInProgress("Update to 2.0.0 already downloading")
        self.update_calls.append((version, url))

    def get_stats(self) -> DeviceStatsSnapshot:
        return DeviceStatsSnapshot(
            device_id=self.device_id,
            telemetry_count=self.index,
            error_count=1,
            firmware_version="1.0.0",
            is_connected=self.index != 3,
            transport="mqtt",
        )


@pytest.fixture(autouse=True)
def reset_stub_counters():
    StubAgent.in_flight = 0
    StubAgent.max_in_flight = 0


def make_orchestrator(settings, factory, force_exit=None) -> FleetOrchestrator:
    return FleetOrchestrator(settings, MagicMock(), agent_factory=factory, force_exit=force_exit)


def test_plan_batches_splits_23_into_10_10_3():
    batches = plan_batches(23, 10)
    assert [len(batch) for batch in batches] == [10, 10, 3]
    assert list(batches[0]) == list(range(1, 11))
    assert list(batches[-1]) == [21, 22, 23]


def test_plan_batches_rejects_zero_batch_size():
    with pytest.raises(ValueError):
        plan_batches(5, 0)


@pytest.mark.asyncio
async def test_start_bounds_concurrency_by_batch(settings):
    """Test 23 devices start in batches with at most 10 initializing at once."""
    created = []

    def factory(index):
        agent = StubAgent(index)
        created.append(agent)
        return agent

    orchestrator = make_orchestrator(settings, factory)
    agents = await orchestrator.start(count=23, batch_size=10, batch_delay=0, stagger_delay=0.1)

    assert len(agents) == 23
    assert StubAgent.max_in_flight == 10
    assert created[4].telemetry_delay == pytest.approx(0.5)
    await orchestrator.shutdown("test over")


@pytest.mark.asyncio
async def test_batch_delay_waits_between_batches_only(settings, monkeypatch):
    sleeps = []
    real_sleep = asyncio.sleep

    async def recording_sleep(delay, *args):
        if delay == 2.0:
            sleeps.append(delay)
            return
        await real_sleep(delay, *args)

    monkeypatch.setattr("fleet_simulator.coordinators.fleet_coordinator.asyncio.sleep", recording_sleep)
    orchestrator = make_orchestrator(settings, StubAgent)

    await orchestrator.start(count=23, batch_size=10, batch_delay=2.0, stagger_delay=0)

    assert sleeps == [2.0, 2.0]
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_failed_agent_is_dropped(settings):
    orchestrator = make_orchestrator(settings, lambda index: StubAgent(index, fail=index == 2))

    agents = await orchestrator.start(count=3)

    assert [agent.device_id for agent in agents] == ["dev-001", "dev-003"]
    assert "dev-002" in orchestrator.failed_devices
    assert orchestrator.get_device("dev-002") is None
    assert orchestrator.get_device("dev-003") is agents[1]
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_get_stats_aggregates_agents(settings):
    orchestrator = make_orchestrator(settings, StubAgent)
    await orchestrator.start(count=3)

    stats = orchestrator.get_stats()

    assert stats.requested_count == 3
    assert stats.connected_count == 2
    assert stats.total_telemetry == 6
    assert stats.total_errors == 3
    assert stats.average_telemetry == 2.0
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_trigger_update_all_collects_failures(settings):
    orchestrator = make_orchestrator(settings, StubAgent)
    agents = await orchestrator.start(count=3)

    results = orchestrator.trigger_firmware_update_all("2.0.0", "https://example.com/fw.bin")

    assert results["dev-001"] is None
    assert results["dev-003"] is None
    assert "already downloading" in results["dev-002"]
    assert agents[2].update_calls == [("2.0.0", "https://example.com/fw.bin")]
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_graceful_shutdown_closes_everything(settings):
    force_exit = MagicMock()
    orchestrator = make_orchestrator(settings, StubAgent, force_exit)
    agents = await orchestrator.start(count=3)

    assert await orchestrator.shutdown("done") is True
    assert all(agent.closed for agent in agents)
    force_exit.assert_not_called()
    # a second call reuses the finished shutdown
    assert await orchestrator.shutdown("again") is True


@pytest.mark.asyncio
async def test_shutdown_with_hung_close_forces_exit(settings):
    """Test one close that never resolves still ends within the timeout."""
    force_exit = MagicMock()
    orchestrator = make_orchestrator(
        settings, lambda index: StubAgent(index, hang_on_close=index == 2), force_exit
    )
    agents = await orchestrator.start(count=3)

    loop = asyncio.get_running_loop()
    started = loop.time()
    graceful = await orchestrator.shutdown("timer expired")
    elapsed = loop.time() - started

    assert graceful is False
    force_exit.assert_called_once_with(1)
    assert elapsed < settings.shutdown_timeout + 0.5
    assert agents[0].closed and agents[2].closed
    assert not agents[1].closed


class SlowStartAgent(StubAgent):
    """Agent whose start takes long enough to be interrupted."""

    started_agents: List["SlowStartAgent"] = []

    async def start(self, telemetry_delay: float = 0.0) -> None:
        SlowStartAgent.started_agents.append(self)
        await asyncio.sleep(0.5 if self.index > 1 else 0)


@pytest.mark.asyncio
async def test_shutdown_during_startup_closes_started_and_starting_agents(settings):
    """Test a stop mid-batch is prompt and leaves no agent running."""
    SlowStartAgent.started_agents = []
    force_exit = MagicMock()
    orchestrator = make_orchestrator(settings, SlowStartAgent, force_exit)

    start_task = asyncio.ensure_future(orchestrator.start(count=6, batch_size=3))
    await asyncio.sleep(0.05)

    loop = asyncio.get_running_loop()
    began = loop.time()
    assert await orchestrator.shutdown("stopped during startup") is True
    assert loop.time() - began < 0.4

    agents = await start_task
    assert agents == []
    # only the first batch was created and every member got closed
    assert [agent.index for agent in SlowStartAgent.started_agents] == [1, 2, 3]
    assert all(agent.closed for agent in SlowStartAgent.started_agents)
    force_exit.assert_not_called()


@pytest.mark.asyncio
async def test_shutdown_between_batches_closes_registered_agents(settings):
    created = []

    def factory(index):
        agent = StubAgent(index)
        created.append(agent)
        return agent

    orchestrator = make_orchestrator(settings, factory)
    start_task = asyncio.ensure_future(orchestrator.start(count=4, batch_size=2, batch_delay=5.0))
    await asyncio.sleep(0.1)

    assert await orchestrator.shutdown() is True
    agents = await start_task

    assert [agent.device_id for agent in agents] == ["dev-001", "dev-002"]
    assert len(created) == 2
    assert all(agent.closed for agent in created)


@pytest.mark.asyncio
async def test_start_after_shutdown_does_nothing(settings):
    created = []
    orchestrator = make_orchestrator(settings, lambda index: created.append(index) or StubAgent(index))

    await orchestrator.shutdown()

    assert await orchestrator.start(count=3) == []
    assert created == []
