"""Pytest configuration and fixtures for fleet simulator tests."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from fleet_simulator.config import SimulatorSettings
from fleet_simulator.core.transport import HubTransport
from fleet_simulator.models.device_stats import DeviceCounters
from fleet_simulator.models.messages import HubMessage

# base64("0" * 32)
GROUP_KEY = "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA="
ASSIGNED_HUB = "test-hub.azure-devices.net"


class FakeContent:
    """Stand-in for ``aiohttp.StreamReader``."""

    def __init__(self, chunks: List[bytes], error: Optional[Exception] = None) -> None:
        self._chunks = chunks
        self._error = error

    async def iter_chunked(self, size: int):
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error


class FakeResponse:
    """Async context manager mimicking an aiohttp response."""

    def __init__(
        self,
        status: int = 200,
        body: Any = None,
        *,
        chunks: Optional[List[bytes]] = None,
        stream_error: Optional[Exception] = None,
        raises: Optional[Exception] = None,
    ) -> None:
        self.status = status
        self._body = body
        self._raises = raises
        self.content = FakeContent(chunks or [], stream_error)

    async def __aenter__(self) -> "FakeResponse":
        if self._raises is not None:
            raise self._raises
        return self

    async def __aexit__(self, *exc_info) -> bool:
        return False

    async def text(self) -> str:
        if self._body is None:
            return ""
        return self._body if isinstance(self._body, str) else json.dumps(self._body)

    async def json(self, content_type: Optional[str] = "application/json") -> Any:
        if isinstance(self._body, str):
            return json.loads(self._body)
        return self._body


class FakeSession:
    """Replays queued responses and records every request made."""

    def __init__(self, responses: Optional[List[FakeResponse]] = None) -> None:
        self.responses: List[FakeResponse] = list(responses or [])
        self.requests: List[Dict[str, Any]] = []
        self.closed = False

    def queue(self, *responses: FakeResponse) -> None:
        self.responses.extend(responses)

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.requests.append({"method": method, "url": url, **kwargs})
        if not self.responses:
            raise AssertionError(f"Unexpected request {method} {url}")
        return self.responses.pop(0)

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        return self.request("POST", url, **kwargs)

    async def close(self) -> None:
        self.closed = True


class FakeTransport(HubTransport):
    """In-memory transport recording everything sent to the hub."""

    name = "fake"

    def __init__(self, *, push: bool = True, commands: bool = True, twin: Optional[Dict[str, Any]] = None) -> None:
        super().__init__()
        self.supports_push = push
        self.supports_commands = commands
        self.twin = twin if twin is not None else {"desired": {}, "reported": {}}
        self.sent: List[HubMessage] = []
        self.reported: List[Dict[str, Any]] = []
        self.method_responses: List[tuple] = []
        self.send_error: Optional[Exception] = None
        self.open_error: Optional[Exception] = None
        self.opened_with: Optional[tuple] = None
        self.close_calls = 0

    async def open(self, hub_host, device_id, tokens) -> None:
        if self.open_error is not None:
            raise self.open_error
        self.opened_with = (hub_host, device_id, tokens)
        if self._listener is not None:
            self._listener.on_transport_connected()

    async def close(self) -> None:
        self.close_calls += 1
        if self._listener is not None:
            self._listener.on_transport_disconnected("closed")

    async def send(self, message: HubMessage) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(message)

    async def get_twin(self) -> Dict[str, Any]:
        return self.twin

    async def update_reported(self, patch: Dict[str, Any]) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.reported.append(patch)

    async def respond_method(self, request_id: str, status: int, payload: Any) -> None:
        self.method_responses.append((request_id, status, payload))

    def statuses(self) -> List[str]:
        """Firmware statuses in the order they reached the hub."""
        found = [patch["firmwareStatus"]["status"] for patch in self.reported]
        found += [m.body["status"] for m in self.sent if m.message_type == "firmwareStatus"]
        return found


def dps_responses(device_id: str, assigning_polls: int = 0) -> List[FakeResponse]:
    """Registration accepted, optional ``assigning`` polls, then assigned."""
    responses = [FakeResponse(202, {"operationId": f"op-{device_id}", "status": "assigning"})]
    responses += [FakeResponse(200, {"status": "assigning"}) for _ in range(assigning_polls)]
    responses.append(
        FakeResponse(
            200,
            {"status": "assigned", "registrationState": {"assignedHub": ASSIGNED_HUB, "deviceId": device_id}},
        )
    )
    return responses


@pytest.fixture
def group_key() -> str:
    return GROUP_KEY


@pytest.fixture
def settings(tmp_path) -> SimulatorSettings:
    """Settings with every delay shortened for tests."""
    return SimulatorSettings(
        id_scope="0ne00000000",
        group_key=GROUP_KEY,
        poll_interval=0,
        max_poll_attempts=20,
        number_of_devices=3,
        telemetry_interval=3600,
        batch_size=10,
        batch_delay=0,
        stagger_delay=0,
        stats_interval=3600,
        shutdown_timeout=0.5,
        install_delay=0,
        download_dir=str(tmp_path),
        run_duration_minutes=0,
        telemetry_log_frequency=0,
    )


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def counters() -> DeviceCounters:
    return DeviceCounters()


@pytest.fixture
def mock_reporter() -> MagicMock:
    """Reporter that records the statuses it is given."""
    reporter = MagicMock()
    reporter.statuses = []

    async def _report(current_version, status, target_version=None, error=None):
        reporter.statuses.append(status)
        return True

    reporter.report_firmware_status = MagicMock(side_effect=_report)
    return reporter
