"""Simulated IoT device fleet: group-key provisioning, hub telemetry and OTA updates."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

import aiohttp

from .config import SimulatorSettings
from .const import DOMAIN, _LOGGER
from .coordinators.fleet_coordinator import AgentFactory, FleetOrchestrator
from .coordinators.run_timer import RunTimer

__all__ = ["DOMAIN", "FleetRuntime", "async_setup_fleet", "async_unload_fleet"]


@dataclass
class FleetRuntime:
    """Objects that live for one simulator run."""

    settings: SimulatorSettings
    session: aiohttp.ClientSession
    orchestrator: FleetOrchestrator
    timer: Optional[RunTimer] = None
    owns_session: bool = False
    start_task: Optional[asyncio.Task] = None


async def async_setup_fleet(
    settings: SimulatorSettings,
    *,
    session: Optional[aiohttp.ClientSession] = None,
    on_expire: Optional[Callable[[str], None]] = None,
    agent_factory: Optional[AgentFactory] = None,
    force_exit: Optional[Callable[[int], None]] = None,
    wait_for_start: bool = True,
) -> FleetRuntime:
    """Start the run timer (when enabled) and the fleet.

    Args:
        settings: Validated simulator settings
        session: aiohttp session to use, created and owned here when omitted
        on_expire: Called with a reason when the run timer fires
        agent_factory: Builds the agent for a fleet index
        force_exit: Called with exit status 1 when shutdown times out
        wait_for_start: When False, batched startup runs as
            ``runtime.start_task`` and this returns immediately
    """
    _LOGGER.info(
        f"Setting up fleet: {settings.number_of_devices} devices, transport={settings.transport}, "
        f"scope={settings.id_scope}"
    )
    owns_session = session is None
    if session is None:
        session = aiohttp.ClientSession()

    orchestrator = FleetOrchestrator(settings, session, agent_factory=agent_factory, force_exit=force_exit)
    runtime = FleetRuntime(settings, session, orchestrator, owns_session=owns_session)

    if settings.timer_enabled and on_expire is not None:
        runtime.timer = RunTimer(
            settings.run_duration_minutes, on_expire, show_countdown=settings.show_countdown
        )
        runtime.timer.start()

    if not wait_for_start:
        runtime.start_task = asyncio.ensure_future(orchestrator.start())
        return runtime

    try:
        await orchestrator.start()
    except Exception:
        if runtime.timer is not None:
            runtime.timer.cancel()
        if owns_session:
            await session.close()
        raise
    return runtime


async def async_unload_fleet(runtime: FleetRuntime, reason: str = "shutdown requested") -> bool:
    """Shut the fleet down; returns False when device closes timed out."""
    _LOGGER.info(f"Unloading fleet: {reason}")
    if runtime.timer is not None:
        runtime.timer.cancel()

    graceful = await runtime.orchestrator.shutdown(reason)
    if runtime.start_task is not None:
        await asyncio.wait([runtime.start_task])

    if runtime.timer is not None:
        runtime.timer.final_report(runtime.orchestrator.get_stats())
    else:
        runtime.orchestrator.log_stats()

    if runtime.owns_session:
        try:
            await runtime.session.close()
        except Exception as close_err:
            _LOGGER.warning(f"Error closing HTTP session: {close_err}")
    if _LOGGER.isEnabledFor(logging.DEBUG):
        _LOGGER.debug("Fleet unload finished (graceful=%s)", graceful)
    return graceful
