"""One simulated device: credential, provisioning, session, telemetry and OTA."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Callable, Dict, Optional, Set

import aiohttp

from ..config import SimulatorSettings
from ..const import (
    DESIRED_FIRMWARE_UPDATE,
    FW_STATUS_CURRENT,
    METHOD_FIRMWARE_UPDATE,
    METHOD_GET_DEVICE_INFO,
    METHOD_REBOOT,
    REBOOT_DELAY,
    TRANSPORT_HTTP,
)
from ..core.device_connection import DeviceConnection
from ..core.exceptions import InvalidUpdateRequest, JobInProgress, OTAError, TransmissionError
from ..core.http_transport import HttpTransport
from ..core.key_derivation import derive_device_key
from ..core.mqtt_transport import MqttTransport
from ..core.provisioning_client import ProvisioningClient
from ..core.transport import HubTransport
from ..models.device_info import DeviceIdentity, DeviceInfo, utc_now_iso
from ..models.device_stats import DeviceCounters, DeviceStatsSnapshot
from ..models.firmware_job import FirmwareUpdateJob
from ..models.messages import device_info_body, device_info_message
from ..models.registration import ProvisioningRegistration
from ..services.commands import (
    STATUS_BAD_REQUEST,
    STATUS_CONFLICT,
    STATUS_OK,
    CommandResult,
)
from ..services.firmware_check import FirmwareUpdateChecker
from ..services.firmware_update import FirmwareInstaller, FirmwareUpdateManager, SimulatedInstaller
from ..services.telemetry import sample_readings

_LOGGER = logging.getLogger(__name__)


class DeviceAgent:
    """Owns every piece of one device's state; nothing is shared across agents."""

    def __init__(
        self,
        index: int,
        settings: SimulatorSettings,
        session: aiohttp.ClientSession,
        *,
        transport_factory: Optional[Callable[[], HubTransport]] = None,
        installer: Optional[FirmwareInstaller] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        """Initialize the agent.

        Args:
            index: 1-based position in the fleet
            settings: Validated simulator settings
            session: Shared aiohttp session for provisioning, downloads and HTTP sends
            transport_factory: Builds the hub transport, chosen from settings when omitted
            installer: Firmware install step, simulated when omitted
            rng: Random source for readings and log sampling
        """
        self.index = index
        self._settings = settings
        self._session = session
        self._transport_factory = transport_factory or self._default_transport
        self._installer = installer or SimulatedInstaller(settings.install_delay)
        self._rng = rng or random.Random()
        self.device_id = settings.device_id(index)
        self.counters = DeviceCounters()
        self.info = DeviceInfo(
            device_id=self.device_id,
            hardware_version=settings.hardware_version,
            device_model=settings.device_model,
            transport=settings.transport,
        )
        self.identity: Optional[DeviceIdentity] = None
        self.registration: Optional[ProvisioningRegistration] = None
        self.connection: Optional[DeviceConnection] = None
        self.firmware: Optional[FirmwareUpdateManager] = None
        self._checker: Optional[FirmwareUpdateChecker] = None
        self._telemetry_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._closed = False

    def _default_transport(self) -> HubTransport:
        if self._settings.transport == TRANSPORT_HTTP:
            return HttpTransport(self._session)
        return MqttTransport()

    @property
    def is_connected(self) -> bool:
        return self.connection is not None and self.connection.is_connected

    @property
    def firmware_version(self) -> str:
        if self.firmware is None:
            return self._settings.firmware_version
        return self.firmware.current_version

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def start(self, telemetry_delay: float = 0.0) -> None:
        """Bring the device up; exceptions leave the agent unusable.

        Raises:
            ConfigurationError: If the group key cannot be used
            RegistrationError: If provisioning fails or times out
            DeviceConnectionError: If the hub session cannot be opened
        """
        settings = self._settings
        self.identity = DeviceIdentity(self.device_id, derive_device_key(settings.group_key, self.device_id))

        client = ProvisioningClient(
            self._session,
            settings.id_scope,
            self.device_id,
            self.identity.derived_key,
            endpoint=settings.provisioning_endpoint,
            poll_interval=settings.poll_interval,
            max_poll_attempts=settings.max_poll_attempts,
        )
        self.registration = client.registration
        await client.provision()

        connection = DeviceConnection(
            self.registration.assigned_device_id or self.device_id,
            self.registration.assigned_hub,
            self.identity.derived_key,
            self._transport_factory(),
            self.counters,
            device_model=settings.device_model,
        )
        self.connection = connection
        self.firmware = FirmwareUpdateManager(
            self.device_id,
            settings.firmware_version,
            connection,
            self._session,
            installer=self._installer,
            download_dir=settings.download_dir,
            require_tls=settings.require_tls,
        )
        self._register_handlers(connection)
        await connection.open()

        await connection.send_message(device_info_message(self.info, self.firmware_version))
        if connection.supports_push:
            await self._sync_twin()

        self._telemetry_task = asyncio.ensure_future(self._telemetry_loop(telemetry_delay))
        if settings.firmware_check_url:
            self._checker = FirmwareUpdateChecker(
                self.device_id,
                self._session,
                settings.firmware_check_url,
                settings.firmware_check_interval,
                self._on_update_offer,
                self.counters,
            )
            self._checker.start()
        _LOGGER.info(f"[{self.device_id}] Device started ({connection.transport_name})")

    def _register_handlers(self, connection: DeviceConnection) -> None:
        connection.commands.register(METHOD_FIRMWARE_UPDATE, self._handle_firmware_update)
        connection.commands.register(METHOD_REBOOT, self._handle_reboot)
        connection.commands.register(METHOD_GET_DEVICE_INFO, self._handle_get_device_info)
        connection.desired.register(DESIRED_FIRMWARE_UPDATE, self._on_desired_firmware)

    async def _sync_twin(self) -> None:
        """Apply a pending desired update from the twin, else report the running version."""
        assert self.connection is not None and self.firmware is not None
        started = False
        try:
            twin = await self.connection.get_twin()
        except TransmissionError as exc:
            self.counters.error_count += 1
            _LOGGER.warning(f"[{self.device_id}] Could not read device twin: {exc}")
        else:
            desired = twin.get("desired") or {}
            if DESIRED_FIRMWARE_UPDATE in desired:
                started = self._on_desired_firmware(desired[DESIRED_FIRMWARE_UPDATE])
        if not started:
            version = self.firmware.current_version
            await self.connection.report_firmware_status(version, FW_STATUS_CURRENT, version)

    def _start_update(self, version: Optional[str], url: Optional[str], source: str) -> bool:
        if self.firmware is None:
            return False
        try:
            self.firmware.start_update(version, url)
        except (JobInProgress, InvalidUpdateRequest) as exc:
            _LOGGER.warning(f"[{self.device_id}] Ignoring {source} firmware update: {exc}")
            return False
        return True

    def _on_desired_firmware(self, value: Any) -> bool:
        if not isinstance(value, dict):
            _LOGGER.warning(f"[{self.device_id}] Malformed desired firmwareUpdate: {value!r}")
            return False
        _LOGGER.info(f"[{self.device_id}] Firmware update requested via desired properties")
        return self._start_update(value.get("version"), value.get("url"), "desired")

    def _on_update_offer(self, version: str, url: str) -> None:
        self._start_update(version, url, "polled")

    # --- remote methods ---

    def _handle_firmware_update(self, payload: Any) -> CommandResult:
        payload = payload if isinstance(payload, dict) else {}
        if self.firmware is None:
            return CommandResult(STATUS_CONFLICT, {"error": "Device not ready"})
        try:
            self.firmware.start_update(payload.get("version"), payload.get("url"))
        except InvalidUpdateRequest as exc:
            return CommandResult(STATUS_BAD_REQUEST, {"error": str(exc)})
        except JobInProgress as exc:
            return CommandResult(STATUS_CONFLICT, {"error": str(exc)})
        return CommandResult(STATUS_OK, {"message": "Firmware update initiated"})

    def _handle_reboot(self, payload: Any) -> CommandResult:
        _LOGGER.info(f"[{self.device_id}] Rebooting...")
        self._spawn(self._reboot())
        return CommandResult(STATUS_OK, {"message": "Reboot initiated"})

    async def _reboot(self) -> None:
        await asyncio.sleep(REBOOT_DELAY)
        self.info.last_boot = utc_now_iso()
        _LOGGER.info(f"[{self.device_id}] Device rebooted")
        await self.send_telemetry()

    def _handle_get_device_info(self, payload: Any) -> CommandResult:
        return CommandResult(STATUS_OK, self.device_info())

    def device_info(self) -> Dict[str, Any]:
        info = device_info_body(self.info, self.firmware_version)
        info.update(
            {
                "telemetryCount": self.counters.telemetry_count,
                "errorCount": self.counters.error_count,
                "isConnected": self.is_connected,
            }
        )
        return info

    # --- telemetry ---

    async def send_telemetry(self) -> bool:
        if self.connection is None:
            return False
        message = await self.connection.send_telemetry(sample_readings(self._rng), self.firmware_version)
        if message is None:
            return False
        if self._rng.random() < self._settings.telemetry_log_frequency:
            body = message.body
            _LOGGER.info(
                f"[{self.device_id}] Telemetry #{self.counters.telemetry_count}: "
                f"temp={body['temperature']} uv={body['uvIndex']} humidity={body['humidity']}"
            )
        return True

    async def _telemetry_loop(self, initial_delay: float) -> None:
        await asyncio.sleep(initial_delay)
        while True:
            await self.send_telemetry()
            await asyncio.sleep(self._settings.telemetry_interval)

    # --- operator ---

    async def request_firmware_update(self, version: str, url: str) -> FirmwareUpdateJob:
        """Run an update job to completion.

        Raises:
            OTAError: If the device has not finished starting
            InvalidUpdateRequest: If version or url is unusable
            JobInProgress: If a job is already running
        """
        if self.firmware is None:
            raise OTAError(f"{self.device_id} is not started")
        return await self.firmware.request_update(version, url)

    def start_firmware_update(self, version: str, url: str) -> asyncio.Task:
        """Start an update job in the background; raises like request_firmware_update."""
        if self.firmware is None:
            raise OTAError(f"{self.device_id} is not started")
        return self.firmware.start_update(version, url)

    def get_stats(self) -> DeviceStatsSnapshot:
        return DeviceStatsSnapshot(
            device_id=self.device_id,
            telemetry_count=self.counters.telemetry_count,
            error_count=self.counters.error_count,
            firmware_version=self.firmware_version,
            is_connected=self.is_connected,
            transport=self._settings.transport,
        )

    async def close(self) -> None:
        """Stop timers, let a running OTA job finish, then close the session."""
        if self._closed:
            return
        self._closed = True

        if self._telemetry_task is not None:
            self._telemetry_task.cancel()
        for task in list(self._background):
            task.cancel()
        if self._checker is not None:
            await self._checker.stop()

        job_task = self.firmware.active_task if self.firmware is not None else None
        if job_task is not None:
            _LOGGER.info(f"[{self.device_id}] Waiting for firmware job to finish before closing")
            try:
                await job_task
            except Exception as exc:
                _LOGGER.error(f"[{self.device_id}] Firmware job ended with error: {exc}")

        if self.connection is not None:
            await self.connection.close()
