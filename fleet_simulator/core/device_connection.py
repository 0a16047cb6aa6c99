"""Logical session between one simulated device and its assigned hub."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from ..const import DEFAULT_DEVICE_MODEL
from ..models.device_stats import DeviceCounters
from ..models.messages import (
    HubMessage,
    firmware_status_body,
    firmware_status_message,
    telemetry_message,
)
from ..services.commands import CommandTable, DesiredPropertyTable
from .exceptions import CredentialError, DeviceConnectionError, TransmissionError
from .sas_token import SasTokenManager
from .transport import HubTransport

_LOGGER = logging.getLogger(__name__)

SIGNAL_CONNECTED = "connected"
SIGNAL_DISCONNECTED = "disconnected"
SIGNAL_ERROR = "error"


class DeviceConnection:
    """Opens, sends over and closes one device's hub session.

    Sends are gated on ``is_connected``: while disconnected they return
    False and count an error instead of raising. Inbound method calls and
    desired-property patches are routed through ``commands`` and
    ``desired``.
    """

    __slots__ = (
        "_device_id",
        "_hub_host",
        "_transport",
        "_counters",
        "_device_model",
        "_tokens",
        "_is_connected",
        "_closed",
        "_signals",
        "_response_tasks",
        "commands",
        "desired",
    )

    def __init__(
        self,
        device_id: str,
        hub_host: str,
        device_key: str,
        transport: HubTransport,
        counters: DeviceCounters,
        *,
        device_model: str = DEFAULT_DEVICE_MODEL,
        tokens: Optional[SasTokenManager] = None,
    ) -> None:
        self._device_id = device_id
        self._hub_host = hub_host
        self._transport = transport
        self._counters = counters
        self._device_model = device_model
        self._tokens = tokens or SasTokenManager.for_hub(hub_host, device_id, device_key)
        self._is_connected = False
        self._closed = False
        self._signals: Dict[str, List[Callable[..., None]]] = {
            SIGNAL_CONNECTED: [],
            SIGNAL_DISCONNECTED: [],
            SIGNAL_ERROR: [],
        }
        self._response_tasks: Set[asyncio.Task] = set()
        self.commands = CommandTable(device_id)
        self.desired = DesiredPropertyTable(device_id)

    @property
    def device_id(self) -> str:
        return self._device_id

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def transport_name(self) -> str:
        return self._transport.name

    @property
    def supports_push(self) -> bool:
        return self._transport.supports_push

    @property
    def supports_commands(self) -> bool:
        return self._transport.supports_commands

    @property
    def tokens(self) -> SasTokenManager:
        return self._tokens

    def add_listener(self, signal: str, callback: Callable[..., None]) -> Callable[[], None]:
        """Subscribe to a connection signal; returns an unsubscribe callable."""
        if signal not in self._signals:
            raise ValueError(f"Unknown signal '{signal}'")
        self._signals[signal].append(callback)

        def _remove() -> None:
            if callback in self._signals[signal]:
                self._signals[signal].remove(callback)

        return _remove

    def _emit(self, signal: str, *args: Any) -> None:
        for callback in list(self._signals[signal]):
            try:
                callback(*args)
            except Exception as exc:
                _LOGGER.exception(f"[{self._device_id}] '{signal}' listener failed: {exc}")

    async def open(self) -> None:
        """Open the hub session.

        Raises:
            DeviceConnectionError: If the session cannot be established
        """
        if self._closed:
            raise DeviceConnectionError("Connection already closed")
        self._transport.bind(self)
        await self._transport.open(self._hub_host, self._device_id, self._tokens)
        self._is_connected = True

    async def send_message(self, message: HubMessage) -> bool:
        """Send one message; returns False (and counts an error) on failure."""
        if not self._is_connected:
            self._counters.error_count += 1
            if _LOGGER.isEnabledFor(logging.DEBUG):
                _LOGGER.debug("[%s] Not connected, dropping %s message", self._device_id, message.message_type)
            return False
        try:
            await self._transport.send(message)
        except CredentialError as exc:
            self._counters.error_count += 1
            _LOGGER.warning(f"[{self._device_id}] Credential refresh failed, send aborted: {exc}")
            return False
        except TransmissionError as exc:
            self._counters.error_count += 1
            _LOGGER.error(f"[{self._device_id}] Failed to send {message.message_type}: {exc}")
            return False
        return True

    async def send_telemetry(self, readings: Dict[str, Any], firmware_version: str) -> Optional[HubMessage]:
        """Send a telemetry reading; returns the message when the hub accepted it."""
        message = telemetry_message(readings, self._device_id, firmware_version, self._device_model)
        if not await self.send_message(message):
            return None
        self._counters.telemetry_count += 1
        return message

    async def report_firmware_status(
        self,
        current_version: str,
        status: str,
        target_version: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        """Report OTA progress through reported properties, or a status message."""
        if not self._transport.supports_push:
            return await self.send_message(
                firmware_status_message(
                    self._device_id, self._device_model, current_version, status, target_version, error
                )
            )

        if not self._is_connected:
            self._counters.error_count += 1
            return False
        patch = {"firmwareStatus": firmware_status_body(current_version, status, target_version, error)}
        try:
            await self._transport.update_reported(patch)
        except (CredentialError, TransmissionError) as exc:
            self._counters.error_count += 1
            _LOGGER.error(f"[{self._device_id}] Failed to report firmware status '{status}': {exc}")
            return False
        if _LOGGER.isEnabledFor(logging.DEBUG):
            _LOGGER.debug("[%s] Reported firmware status: %s", self._device_id, status)
        return True

    async def get_twin(self) -> Dict[str, Any]:
        """Fetch the device state document.

        Raises:
            TransmissionError: If the request fails or the transport has no twin
        """
        if not self._transport.supports_push:
            raise TransmissionError(f"{self._transport.name} transport has no device state document")
        return await self._transport.get_twin()

    # --- transport listener ---

    def on_transport_connected(self) -> None:
        was_connected = self._is_connected
        self._is_connected = True
        if not was_connected:
            _LOGGER.info(f"[{self._device_id}] Connected to hub")
        self._emit(SIGNAL_CONNECTED)

    def on_transport_disconnected(self, reason: str) -> None:
        self._is_connected = False
        if not self._closed:
            _LOGGER.warning(f"[{self._device_id}] Disconnected from hub ({reason})")
        self._emit(SIGNAL_DISCONNECTED, reason)

    def on_transport_error(self, error: Exception) -> None:
        self._counters.error_count += 1
        _LOGGER.error(f"[{self._device_id}] Connection error: {error}")
        self._emit(SIGNAL_ERROR, error)

    def on_method_request(self, name: str, request_id: str, payload: Any) -> None:
        result = self.commands.dispatch(name, payload)
        task = asyncio.ensure_future(self._respond(request_id, result.status, result.payload))
        self._response_tasks.add(task)
        task.add_done_callback(self._response_tasks.discard)

    async def _respond(self, request_id: str, status: int, payload: Any) -> None:
        try:
            await self._transport.respond_method(request_id, status, payload)
        except TransmissionError as exc:
            self._counters.error_count += 1
            _LOGGER.error(f"[{self._device_id}] Failed to answer method request {request_id}: {exc}")

    def on_desired_properties(self, patch: Dict[str, Any]) -> None:
        if _LOGGER.isEnabledFor(logging.DEBUG):
            _LOGGER.debug("[%s] Desired properties update: %s", self._device_id, patch)
        self.desired.dispatch(patch)

    async def close(self) -> None:
        """Close the session. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        for task in list(self._response_tasks):
            task.cancel()
        try:
            await self._transport.close()
        finally:
            self._is_connected = False
            _LOGGER.info(f"[{self._device_id}] Connection closed")
