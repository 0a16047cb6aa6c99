"""Tests for the device connection and command dispatch."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from conftest import FakeTransport
from fleet_simulator.core.device_connection import (
    SIGNAL_CONNECTED,
    SIGNAL_DISCONNECTED,
    DeviceConnection,
)
from fleet_simulator.core.exceptions import DeviceConnectionError, TransmissionError
from fleet_simulator.core.key_derivation import derive_device_key
from fleet_simulator.models.messages import HubMessage
from fleet_simulator.services.commands import CommandResult, CommandTable, DesiredPropertyTable


@pytest.fixture
def connection(group_key, fake_transport, counters) -> DeviceConnection:
    key = derive_device_key(group_key, "dev-001")
    return DeviceConnection("dev-001", "hub.example.net", key, fake_transport, counters)


@pytest.mark.asyncio
async def test_open_connects_and_signals(connection, fake_transport):
    connected = MagicMock()
    connection.add_listener(SIGNAL_CONNECTED, connected)

    await connection.open()

    assert connection.is_connected
    connected.assert_called_once_with()
    hub, device_id, tokens = fake_transport.opened_with
    assert (hub, device_id) == ("hub.example.net", "dev-001")
    assert tokens.resource_uri == "hub.example.net/devices/dev-001"


@pytest.mark.asyncio
async def test_open_failure_propagates(connection, fake_transport):
    fake_transport.open_error = DeviceConnectionError("refused")
    with pytest.raises(DeviceConnectionError):
        await connection.open()
    assert not connection.is_connected


@pytest.mark.asyncio
async def test_send_while_disconnected_counts_error(connection, fake_transport, counters):
    """Test sends are no-ops that count an error when not connected."""
    result = await connection.send_telemetry({"temperature": 31.0}, "1.0.0")

    assert result is None
    assert counters.error_count == 1
    assert counters.telemetry_count == 0
    assert fake_transport.sent == []


@pytest.mark.asyncio
async def test_send_telemetry_counts_success(connection, fake_transport, counters):
    await connection.open()

    message = await connection.send_telemetry({"temperature": 31.0}, "1.0.0")

    assert counters.telemetry_count == 1
    assert fake_transport.sent == [message]
    assert message.body["deviceId"] == "dev-001"
    assert message.properties["enrollmentType"] == "group"


@pytest.mark.asyncio
async def test_transmission_error_is_counted_not_raised(connection, fake_transport, counters):
    await connection.open()
    fake_transport.send_error = TransmissionError("rejected")

    assert await connection.send_message(HubMessage({"a": 1}, {"messageType": "telemetry"})) is False
    assert counters.error_count == 1
    assert connection.is_connected


@pytest.mark.asyncio
async def test_firmware_status_uses_reported_properties_on_push(connection, fake_transport):
    await connection.open()

    assert await connection.report_firmware_status("1.0.0", "downloading", "2.0.0")

    assert fake_transport.sent == []
    status = fake_transport.reported[0]["firmwareStatus"]
    assert status["status"] == "downloading"
    assert status["targetVersion"] == "2.0.0"
    assert "error" not in status


@pytest.mark.asyncio
async def test_firmware_status_falls_back_to_message(group_key, counters):
    transport = FakeTransport(push=False, commands=False)
    connection = DeviceConnection(
        "dev-001", "hub.example.net", derive_device_key(group_key, "dev-001"), transport, counters
    )
    await connection.open()

    assert await connection.report_firmware_status("1.0.0", "failed", "2.0.0", "boom")

    assert transport.reported == []
    message = transport.sent[0]
    assert message.message_type == "firmwareStatus"
    assert message.body["error"] == "boom"
    with pytest.raises(TransmissionError):
        await connection.get_twin()


@pytest.mark.asyncio
async def test_method_request_dispatched_and_answered(connection, fake_transport):
    await connection.open()
    connection.commands.register("ping", lambda payload: CommandResult(200, {"pong": payload}))

    connection.on_method_request("ping", "7", {"n": 1})
    connection.on_method_request("selfDestruct", "8", None)
    await asyncio.sleep(0)

    assert fake_transport.method_responses == [
        ("7", 200, {"pong": {"n": 1}}),
        ("8", 404, {"error": "Method 'selfDestruct' not handled"}),
    ]


@pytest.mark.asyncio
async def test_close_is_idempotent(connection, fake_transport):
    disconnected = MagicMock()
    connection.add_listener(SIGNAL_DISCONNECTED, disconnected)
    await connection.open()

    await connection.close()
    await connection.close()

    assert fake_transport.close_calls == 1
    assert not connection.is_connected
    disconnected.assert_called_once_with("closed")
    with pytest.raises(DeviceConnectionError):
        await connection.open()


def test_command_handler_exception_returns_500():
    table = CommandTable("dev-001")

    def broken(payload):
        raise RuntimeError("kaput")

    table.register("broken", broken)
    result = table.dispatch("broken", {})
    assert result.status == 500
    assert result.payload == {"error": "kaput"}


def test_desired_table_skips_metadata_and_unknown_keys():
    table = DesiredPropertyTable("dev-001")
    handler = MagicMock()
    table.register("firmwareUpdate", handler)

    handled = table.dispatch({"$version": 4, "firmwareUpdate": {"version": "2.0.0"}, "colour": "red"})

    assert handled == ["firmwareUpdate"]
    handler.assert_called_once_with({"version": "2.0.0"})
