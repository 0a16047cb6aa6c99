"""Starts, monitors and shuts down the simulated fleet."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Optional

import aiohttp

from ..config import SimulatorSettings
from ..core.exceptions import ShutdownTimeout, SimulatorException
from ..models.device_stats import FleetStats
from .device_agent import DeviceAgent

_LOGGER = logging.getLogger(__name__)

AgentFactory = Callable[[int], DeviceAgent]


def plan_batches(count: int, batch_size: int) -> List[range]:
    """Split 1-based device indices ``1..count`` into consecutive batches."""
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    return [range(start, min(start + batch_size, count + 1)) for start in range(1, count + 1, batch_size)]


class FleetOrchestrator:
    """Runs N device agents with bounded startup concurrency.

    Startup goes batch by batch: every agent in a batch initializes
    concurrently, the batch settles, then ``batch_delay`` passes before the
    next one. An agent that fails to start is logged and dropped. Shutdown
    closes every agent concurrently and gives up after ``shutdown_timeout``.
    """

    def __init__(
        self,
        settings: SimulatorSettings,
        session: aiohttp.ClientSession,
        *,
        agent_factory: Optional[AgentFactory] = None,
        force_exit: Optional[Callable[[int], None]] = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            settings: Validated simulator settings
            session: aiohttp session shared by the agents
            agent_factory: Builds the agent for a fleet index
            force_exit: Called with exit status 1 when shutdown times out
        """
        self._settings = settings
        self._session = session
        self._agent_factory = agent_factory or self._default_agent
        self._force_exit = force_exit
        self._agents: Dict[str, DeviceAgent] = {}
        self._starting: Dict[str, DeviceAgent] = {}
        self._failed: Dict[str, str] = {}
        self._requested_count = 0
        self._start_task: Optional[asyncio.Task] = None
        self._stats_task: Optional[asyncio.Task] = None
        self._shutdown_task: Optional[asyncio.Task] = None

    def _default_agent(self, index: int) -> DeviceAgent:
        return DeviceAgent(index, self._settings, self._session)

    @property
    def agents(self) -> List[DeviceAgent]:
        return list(self._agents.values())

    @property
    def failed_devices(self) -> Dict[str, str]:
        """Device id to failure reason for agents dropped at startup."""
        return dict(self._failed)

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown_task is not None

    async def start(
        self,
        count: Optional[int] = None,
        batch_size: Optional[int] = None,
        batch_delay: Optional[float] = None,
        stagger_delay: Optional[float] = None,
    ) -> List[DeviceAgent]:
        """Start the fleet; returns the agents that came up."""
        settings = self._settings
        count = settings.number_of_devices if count is None else count
        batch_size = settings.batch_size if batch_size is None else batch_size
        batch_delay = settings.batch_delay if batch_delay is None else batch_delay
        stagger_delay = settings.stagger_delay if stagger_delay is None else stagger_delay

        self._requested_count = count
        if self.is_shutting_down:
            _LOGGER.warning("Shutdown already requested, not starting the fleet")
            return self.agents

        self._start_task = asyncio.ensure_future(
            self._start_batches(count, batch_size, batch_delay, stagger_delay)
        )
        try:
            await self._start_task
        except asyncio.CancelledError:
            # shutdown() cancels startup; any other cancellation propagates
            if not (self.is_shutting_down and self._start_task.cancelled()):
                raise
            _LOGGER.warning(
                f"Startup interrupted by shutdown: {len(self._agents)}/{count} devices had started"
            )
            return self.agents

        _LOGGER.info(
            f"Fleet started: {len(self._agents)}/{count} devices running, {len(self._failed)} failed"
        )
        if self._stats_task is None and not self.is_shutting_down:
            self._stats_task = asyncio.ensure_future(self._stats_loop())
        return self.agents

    async def _start_batches(self, count: int, batch_size: int, batch_delay: float, stagger_delay: float) -> None:
        batches = plan_batches(count, batch_size)
        _LOGGER.info(
            f"Starting {count} devices in {len(batches)} batches of up to {batch_size} "
            f"({self._settings.transport})"
        )
        for number, batch in enumerate(batches, start=1):
            _LOGGER.info(f"Batch {number}/{len(batches)}: devices {batch.start}-{batch.stop - 1}")
            await self._start_batch(batch, stagger_delay)
            if number < len(batches) and batch_delay > 0:
                await asyncio.sleep(batch_delay)

    async def _start_batch(self, batch: range, stagger_delay: float) -> None:
        agents = [self._agent_factory(index) for index in batch]
        # tracked until settled so shutdown can close agents caught mid-start
        for agent in agents:
            self._starting[agent.device_id] = agent
        results = await asyncio.gather(
            *(agent.start(agent.index * stagger_delay) for agent in agents),
            return_exceptions=True,
        )
        for agent, result in zip(agents, results):
            if isinstance(result, BaseException):
                self._failed[agent.device_id] = f"{type(result).__name__}: {result}"
                _LOGGER.error(f"[{agent.device_id}] Failed to start: {result}")
                await self._discard(agent)
            else:
                self._agents[agent.device_id] = agent
            del self._starting[agent.device_id]

    async def _discard(self, agent: DeviceAgent) -> None:
        try:
            await agent.close()
        except (SimulatorException, OSError) as exc:
            _LOGGER.warning(f"[{agent.device_id}] Cleanup after failed start raised: {exc}")

    def get_stats(self) -> FleetStats:
        devices = [agent.get_stats() for agent in self._agents.values()]
        return FleetStats(
            requested_count=self._requested_count,
            connected_count=sum(1 for d in devices if d.is_connected),
            total_telemetry=sum(d.telemetry_count for d in devices),
            total_errors=sum(d.error_count for d in devices),
            transport=self._settings.transport,
            devices=devices,
        )

    def get_device(self, device_id: str) -> Optional[DeviceAgent]:
        return self._agents.get(device_id)

    def trigger_firmware_update_all(self, version: str, url: str) -> Dict[str, Optional[str]]:
        """Start an update on every agent.

        Returns:
            Device id to None when the job started, or the rejection reason
        """
        _LOGGER.info(f"Triggering firmware update to {version} on {len(self._agents)} devices")
        results: Dict[str, Optional[str]] = {}
        for device_id, agent in self._agents.items():
            try:
                agent.start_firmware_update(version, url)
            except SimulatorException as exc:
                results[device_id] = str(exc)
                _LOGGER.warning(f"[{device_id}] Firmware update not started: {exc}")
            else:
                results[device_id] = None
        started = sum(1 for reason in results.values() if reason is None)
        _LOGGER.info(f"Firmware update started on {started}/{len(results)} devices")
        return results

    def log_stats(self) -> FleetStats:
        stats = self.get_stats()
        _LOGGER.info(
            f"Stats: {stats.connected_count}/{stats.requested_count} connected, "
            f"telemetry {stats.total_telemetry} (avg {stats.average_telemetry:.1f}/device), "
            f"errors {stats.total_errors}"
        )
        return stats

    async def _stats_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.stats_interval)
            self.log_stats()

    async def shutdown(self, reason: str = "shutdown requested") -> bool:
        """Close every agent; returns False when the close timed out.

        A second call waits for the shutdown already in progress.
        """
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._shutdown(reason))
        return await asyncio.shield(self._shutdown_task)

    async def _shutdown(self, reason: str) -> bool:
        _LOGGER.info(f"Shutting down fleet: {reason}")
        if self._stats_task is not None:
            self._stats_task.cancel()
            self._stats_task = None
        if self._start_task is not None and not self._start_task.done():
            _LOGGER.warning("Shutdown during startup, cancelling remaining batches")
            self._start_task.cancel()
            await asyncio.wait([self._start_task])
        try:
            await self._close_all(self._settings.shutdown_timeout)
        except ShutdownTimeout as exc:
            _LOGGER.error(f"{exc}, forcing exit")
            if self._force_exit is not None:
                self._force_exit(1)
            return False
        _LOGGER.info("All devices closed")
        return True

    async def _close_all(self, timeout: float) -> None:
        """Close all agents concurrently and wait for every one to settle.

        Raises:
            ShutdownTimeout: If any close is still pending after ``timeout``
        """
        agents = list(self._agents.values()) + list(self._starting.values())
        tasks = {asyncio.ensure_future(agent.close()): agent for agent in agents}
        if not tasks:
            return
        done, pending = await asyncio.wait(list(tasks), timeout=timeout)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                _LOGGER.error(f"[{tasks[task].device_id}] Close failed: {task.exception()}")
        if pending:
            for task in pending:
                task.cancel()
            stuck = ", ".join(sorted(tasks[task].device_id for task in pending))
            raise ShutdownTimeout(f"{len(pending)} device(s) did not close within {timeout}s: {stuck}")
