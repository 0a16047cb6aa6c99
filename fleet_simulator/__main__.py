"""Command line entry point: ``python -m fleet_simulator --config config.json``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Callable, List, Optional

from . import async_setup_fleet, async_unload_fleet
from .config import SimulatorSettings, load_config
from .const import TRANSPORT_HTTP, TRANSPORT_MQTT
from .core.exceptions import SimulatorException
from .services.control import ControlConsole

_LOGGER = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fleet_simulator", description="Simulated IoT device fleet")
    parser.add_argument("--config", default="config.json", help="Path to the JSON configuration")
    parser.add_argument("--devices", type=int, help="Override simulation.numberOfDevices")
    parser.add_argument("--transport", choices=[TRANSPORT_MQTT, TRANSPORT_HTTP], help="Override hub.transport")
    parser.add_argument("--no-console", action="store_true", help="Do not read operator commands from stdin")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


async def run_fleet(
    settings: SimulatorSettings,
    *,
    console: bool = True,
    force_exit: Callable[[int], None] = os._exit,
) -> int:
    """Run the fleet until a signal, the run timer or the operator stops it."""
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    stop_reason: List[str] = []

    def request_stop(reason: str) -> None:
        if not stop_event.is_set():
            stop_reason.append(reason)
            stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_stop, f"received {sig.name}")
        except (NotImplementedError, RuntimeError):
            _LOGGER.warning(f"Cannot install handler for {sig.name}")

    try:
        runtime = await async_setup_fleet(
            settings, on_expire=request_stop, force_exit=force_exit, wait_for_start=False
        )
    except SimulatorException as exc:
        _LOGGER.error(f"Fleet setup failed: {exc}")
        return 1

    def on_started(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _LOGGER.error(f"Fleet startup failed: {exc}")
            request_stop("startup failed")

    # startup runs alongside stop_event so a signal or the timer can interrupt it
    if runtime.start_task is not None:
        runtime.start_task.add_done_callback(on_started)

    control: Optional[ControlConsole] = None
    if console and sys.stdin.isatty():
        control = ControlConsole(runtime.orchestrator, request_stop, runtime.timer)
        try:
            control.attach()
        except (NotImplementedError, OSError, ValueError) as exc:
            _LOGGER.warning(f"Control console unavailable: {exc}")
            control = None

    await stop_event.wait()
    if control is not None:
        control.detach()

    graceful = await async_unload_fleet(runtime, stop_reason[0] if stop_reason else "shutdown requested")
    return 0 if graceful else 1


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

    try:
        settings = load_config(args.config)
    except SimulatorException as exc:
        _LOGGER.error(str(exc))
        return 1
    settings = settings.with_overrides(number_of_devices=args.devices, transport=args.transport)

    if settings.detailed_logging or args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    return asyncio.run(run_fleet(settings, console=not args.no_console))


if __name__ == "__main__":
    sys.exit(main())
