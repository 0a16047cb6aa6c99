"""Tests for the provisioning registration and polling state machine."""

from __future__ import annotations

import asyncio

import aiohttp
import pytest

from conftest import ASSIGNED_HUB, FakeResponse, FakeSession, dps_responses
from fleet_simulator.core.exceptions import ProvisioningTimeout, RegistrationError
from fleet_simulator.core.key_derivation import derive_device_key
from fleet_simulator.core.provisioning_client import ProvisioningClient
from fleet_simulator.models.registration import RegistrationState

SCOPE = "0ne00000000"


@pytest.fixture
def device_key(group_key):
    return derive_device_key(group_key, "dev-001")


def make_client(session: FakeSession, device_key: str, **kwargs) -> ProvisioningClient:
    kwargs.setdefault("poll_interval", 0)
    return ProvisioningClient(session, SCOPE, "dev-001", device_key, **kwargs)


@pytest.mark.asyncio
async def test_register_moves_to_assigning(device_key):
    session = FakeSession([FakeResponse(202, {"operationId": "op-1"})])
    client = make_client(session, device_key)

    reg = await client.register()

    assert reg.state is RegistrationState.ASSIGNING
    assert reg.operation_id == "op-1"
    request = session.requests[0]
    assert request["method"] == "PUT"
    assert request["url"].endswith(f"/{SCOPE}/registrations/dev-001/register")
    assert request["json"] == {"registrationId": "dev-001"}
    assert request["params"] == {"api-version": "2019-03-31"}
    assert request["headers"]["Authorization"].startswith("SharedAccessSignature sr=")


@pytest.mark.asyncio
async def test_register_rejected_fails(device_key):
    session = FakeSession([FakeResponse(401, {"message": "Unauthorized"})])
    client = make_client(session, device_key)

    with pytest.raises(RegistrationError):
        await client.register()
    assert client.state is RegistrationState.FAILED
    assert "401" in client.registration.error


@pytest.mark.asyncio
async def test_register_transport_error_fails(device_key):
    session = FakeSession([FakeResponse(raises=aiohttp.ClientConnectionError("refused"))])
    client = make_client(session, device_key)

    with pytest.raises(RegistrationError):
        await client.register()
    assert client.state is RegistrationState.FAILED


@pytest.mark.asyncio
async def test_assigned_on_twentieth_poll(device_key):
    """Test 19 assigning polls followed by assigned resolves Assigned."""
    session = FakeSession(dps_responses("dev-001", assigning_polls=19))
    client = make_client(session, device_key)

    reg = await client.provision()

    assert reg.state is RegistrationState.ASSIGNED
    assert reg.poll_attempts == 20
    assert reg.assigned_hub == ASSIGNED_HUB
    assert reg.assigned_device_id == "dev-001"
    assert session.requests[-1]["url"].endswith("/operations/op-dev-001")


@pytest.mark.asyncio
async def test_twenty_assigning_polls_time_out(device_key):
    session = FakeSession([FakeResponse(202, {"operationId": "op-1"})])
    session.queue(*[FakeResponse(200, {"status": "assigning"}) for _ in range(20)])
    client = make_client(session, device_key)

    with pytest.raises(ProvisioningTimeout):
        await client.provision()
    assert client.state is RegistrationState.FAILED
    assert client.registration.poll_attempts == 20
    assert len(session.requests) == 21


@pytest.mark.asyncio
async def test_failed_status_stops_polling(device_key):
    session = FakeSession(
        [
            FakeResponse(202, {"operationId": "op-1"}),
            FakeResponse(200, {"status": "failed", "registrationState": {"errorMessage": "Enrollment disabled"}}),
        ]
    )
    client = make_client(session, device_key)

    with pytest.raises(RegistrationError, match="Enrollment disabled"):
        await client.provision()
    assert client.state is RegistrationState.FAILED
    assert len(session.requests) == 2


@pytest.mark.asyncio
async def test_poll_errors_use_up_attempts(device_key):
    """Test a failed poll request counts as an attempt and polling continues."""
    session = FakeSession(
        [
            FakeResponse(202, {"operationId": "op-1"}),
            FakeResponse(503, "Service Unavailable"),
            FakeResponse(raises=asyncio.TimeoutError()),
            FakeResponse(200, {"status": "assigned", "registrationState": {"assignedHub": ASSIGNED_HUB}}),
        ]
    )
    client = make_client(session, device_key)

    reg = await client.provision()

    assert reg.state is RegistrationState.ASSIGNED
    assert reg.poll_attempts == 3
    assert reg.assigned_device_id == "dev-001"


@pytest.mark.asyncio
async def test_client_is_single_use(device_key):
    session = FakeSession(dps_responses("dev-001"))
    client = make_client(session, device_key)
    await client.provision()

    with pytest.raises(RegistrationError, match="create a new client"):
        await client.register()
    assert client.state is RegistrationState.ASSIGNED


@pytest.mark.asyncio
async def test_failed_client_cannot_register_again(device_key):
    session = FakeSession([FakeResponse(401, {"message": "Unauthorized"})])
    client = make_client(session, device_key)
    with pytest.raises(RegistrationError):
        await client.register()

    with pytest.raises(RegistrationError, match="already Failed"):
        await client.register()
    assert len(session.requests) == 1


@pytest.mark.parametrize(
    "state, terminal",
    [
        (RegistrationState.UNREGISTERED, False),
        (RegistrationState.REGISTERING, False),
        (RegistrationState.ASSIGNING, False),
        (RegistrationState.ASSIGNED, True),
        (RegistrationState.FAILED, True),
    ],
)
def test_registration_terminal_states(state, terminal):
    assert state.is_terminal is terminal


@pytest.mark.asyncio
async def test_poll_interval_is_waited_before_each_poll(device_key, monkeypatch):
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    monkeypatch.setattr("fleet_simulator.core.provisioning_client.asyncio.sleep", fake_sleep)
    session = FakeSession(dps_responses("dev-001", assigning_polls=2))
    client = make_client(session, device_key, poll_interval=3.0)

    await client.provision()

    assert sleeps == [3.0, 3.0, 3.0]
