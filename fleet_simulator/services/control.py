"""Operator console bound to a running orchestrator."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Callable, List, Optional, TextIO

from ..coordinators.fleet_coordinator import FleetOrchestrator
from ..coordinators.run_timer import RunTimer

_LOGGER = logging.getLogger(__name__)

HELP_TEXT = """Commands:
  stats                    fleet statistics
  device <id>              one device's info
  update <version> <url>   start a firmware update on every device
  extend <minutes>         extend the run timer
  remaining                minutes left on the run timer
  stop                     shut down now
  help                     this text"""


class ControlConsole:
    """Line commands for the orchestrator and run timer."""

    def __init__(
        self,
        orchestrator: FleetOrchestrator,
        request_stop: Callable[[str], None],
        timer: Optional[RunTimer] = None,
        output: Optional[TextIO] = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._request_stop = request_stop
        self._timer = timer
        self._output = output or sys.stdout
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stream: Optional[TextIO] = None

    def handle_line(self, line: str) -> str:
        parts: List[str] = line.split()
        if not parts:
            return ""
        command, args = parts[0].lower(), parts[1:]

        if command == "help":
            return HELP_TEXT
        if command == "stats":
            stats = self._orchestrator.log_stats()
            return (
                f"{stats.connected_count}/{stats.requested_count} connected, "
                f"telemetry {stats.total_telemetry}, errors {stats.total_errors}"
            )
        if command == "device":
            if len(args) != 1:
                return "usage: device <id>"
            agent = self._orchestrator.get_device(args[0])
            if agent is None:
                return f"Unknown device {args[0]}"
            return json.dumps(agent.device_info(), indent=2)
        if command == "update":
            if len(args) != 2:
                return "usage: update <version> <url>"
            results = self._orchestrator.trigger_firmware_update_all(args[0], args[1])
            rejected = {k: v for k, v in results.items() if v is not None}
            summary = f"Update started on {len(results) - len(rejected)}/{len(results)} devices"
            if rejected:
                summary += "\n" + "\n".join(f"  {k}: {v}" for k, v in sorted(rejected.items()))
            return summary
        if command == "extend":
            if self._timer is None:
                return "No run timer active"
            try:
                minutes = float(args[0]) if len(args) == 1 else None
            except ValueError:
                minutes = None
            if minutes is None or minutes <= 0:
                return "usage: extend <minutes>"
            return f"{self._timer.extend_timer(minutes)} minutes remaining"
        if command == "remaining":
            if self._timer is None:
                return "No run timer active"
            return f"{self._timer.remaining_minutes()} minutes remaining"
        if command == "stop":
            if self._timer is not None:
                self._timer.stop_timer()
            else:
                self._request_stop("stopped by operator")
            return "Stopping"
        return f"Unknown command '{command}', type 'help'"

    def attach(self, stream: Optional[TextIO] = None) -> None:
        """Read commands from ``stream`` (stdin) on the running loop."""
        self._loop = asyncio.get_running_loop()
        self._stream = stream or sys.stdin
        self._loop.add_reader(self._stream.fileno(), self._on_readable)
        _LOGGER.info("Control console ready, type 'help' for commands")

    def detach(self) -> None:
        if self._loop is not None and self._stream is not None:
            self._loop.remove_reader(self._stream.fileno())
        self._loop = None
        self._stream = None

    def _on_readable(self) -> None:
        assert self._stream is not None
        line = self._stream.readline()
        if not line:
            self.detach()
            return
        response = self.handle_line(line)
        if response:
            self._output.write(response + "\n")
            self._output.flush()
