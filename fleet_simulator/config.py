"""Configuration loading and validation for the fleet simulator."""

from __future__ import annotations

import dataclasses
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

import voluptuous as vol

from .const import (
    DEFAULT_BATCH_DELAY_MS,
    DEFAULT_BATCH_SIZE,
    DEFAULT_DEVICE_ID_PREFIX,
    DEFAULT_DEVICE_MODEL,
    DEFAULT_FIRMWARE_CHECK_INTERVAL_MS,
    DEFAULT_FIRMWARE_VERSION,
    DEFAULT_HARDWARE_VERSION,
    DEFAULT_INSTALL_DELAY,
    DEFAULT_NUMBER_OF_DEVICES,
    DEFAULT_RUN_DURATION_MINUTES,
    DEFAULT_SHUTDOWN_TIMEOUT,
    DEFAULT_STAGGER_DELAY_MS,
    DEFAULT_STATS_INTERVAL_MS,
    DEFAULT_TELEMETRY_INTERVAL_MS,
    DEFAULT_TELEMETRY_LOG_FREQUENCY,
    DPS_GLOBAL_ENDPOINT,
    DPS_MAX_POLL_ATTEMPTS,
    DPS_POLL_INTERVAL,
    TRANSPORT_HTTP,
    TRANSPORT_MQTT,
)
from .core.exceptions import ConfigurationError

_LOGGER = logging.getLogger(__name__)

_MS = vol.All(vol.Coerce(int), vol.Range(min=0))
_POSITIVE_MS = vol.All(vol.Coerce(int), vol.Range(min=1))

SIMULATION_SCHEMA = vol.Schema(
    {
        vol.Optional("numberOfDevices", default=DEFAULT_NUMBER_OF_DEVICES): vol.All(
            vol.Coerce(int), vol.Range(min=1)
        ),
        vol.Optional("telemetryInterval", default=DEFAULT_TELEMETRY_INTERVAL_MS): _POSITIVE_MS,
        vol.Optional("firmwareCheckInterval", default=DEFAULT_FIRMWARE_CHECK_INTERVAL_MS): _POSITIVE_MS,
        vol.Optional("batchSize", default=DEFAULT_BATCH_SIZE): vol.All(vol.Coerce(int), vol.Range(min=1)),
        vol.Optional("batchDelay", default=DEFAULT_BATCH_DELAY_MS): _MS,
        vol.Optional("deviceStaggerDelay", default=DEFAULT_STAGGER_DELAY_MS): _MS,
        vol.Optional("runDurationMinutes", default=DEFAULT_RUN_DURATION_MINUTES): vol.All(
            vol.Coerce(float), vol.Range(min=0)
        ),
        vol.Optional("autoShutdown", default=True): bool,
        vol.Optional("shutdownTimeout", default=DEFAULT_SHUTDOWN_TIMEOUT): vol.All(
            vol.Coerce(float), vol.Range(min=0)
        ),
    },
    extra=vol.ALLOW_EXTRA,
)

DEVICE_SCHEMA = vol.Schema(
    {
        vol.Optional("firmwareVersion", default=DEFAULT_FIRMWARE_VERSION): str,
        vol.Optional("hardwareVersion", default=DEFAULT_HARDWARE_VERSION): str,
        vol.Optional("deviceModel", default=DEFAULT_DEVICE_MODEL): str,
        vol.Optional("deviceIdPrefix", default=DEFAULT_DEVICE_ID_PREFIX): vol.All(str, vol.Length(min=1)),
    },
    extra=vol.ALLOW_EXTRA,
)

DPS_SCHEMA = vol.Schema(
    {
        vol.Required("idScope"): vol.All(str, vol.Length(min=1)),
        vol.Required("groupEnrollmentKey"): vol.All(str, vol.Length(min=1)),
        vol.Optional("provisioningEndpoint", default=DPS_GLOBAL_ENDPOINT): vol.All(str, vol.Length(min=1)),
        vol.Optional("pollInterval", default=int(DPS_POLL_INTERVAL * 1000)): _MS,
        vol.Optional("maxPollAttempts", default=DPS_MAX_POLL_ATTEMPTS): vol.All(
            vol.Coerce(int), vol.Range(min=1)
        ),
    },
    extra=vol.ALLOW_EXTRA,
)

HUB_SCHEMA = vol.Schema(
    {
        vol.Optional("transport", default=TRANSPORT_MQTT): vol.All(
            str, vol.Lower, vol.In([TRANSPORT_MQTT, TRANSPORT_HTTP])
        ),
    },
    extra=vol.ALLOW_EXTRA,
)

LOGGING_SCHEMA = vol.Schema(
    {
        vol.Optional("statsInterval", default=DEFAULT_STATS_INTERVAL_MS): _POSITIVE_MS,
        vol.Optional("telemetryLogFrequency", default=DEFAULT_TELEMETRY_LOG_FREQUENCY): vol.All(
            vol.Coerce(float), vol.Range(min=0, max=1)
        ),
        vol.Optional("enableDetailedLogging", default=False): bool,
        vol.Optional("showShutdownCountdown", default=True): bool,
    },
    extra=vol.ALLOW_EXTRA,
)

FIRMWARE_SCHEMA = vol.Schema(
    {
        vol.Optional("checkUrl", default=None): vol.Any(None, vol.Url()),
        vol.Optional("installDelay", default=int(DEFAULT_INSTALL_DELAY * 1000)): _MS,
        vol.Optional("downloadDir", default=None): vol.Any(None, str),
        vol.Optional("requireTls", default=True): bool,
    },
    extra=vol.ALLOW_EXTRA,
)

CONFIG_SCHEMA = vol.Schema(
    {
        vol.Optional("simulation", default={}): SIMULATION_SCHEMA,
        vol.Optional("device", default={}): DEVICE_SCHEMA,
        vol.Required("dps"): DPS_SCHEMA,
        vol.Optional("hub", default={}): HUB_SCHEMA,
        vol.Optional("logging", default={}): LOGGING_SCHEMA,
        vol.Optional("firmware", default={}): FIRMWARE_SCHEMA,
    },
    extra=vol.ALLOW_EXTRA,
)


@dataclass(frozen=True)
class SimulatorSettings:
    """Validated settings. Durations are in seconds."""

    id_scope: str
    group_key: str
    provisioning_endpoint: str = DPS_GLOBAL_ENDPOINT
    poll_interval: float = DPS_POLL_INTERVAL
    max_poll_attempts: int = DPS_MAX_POLL_ATTEMPTS
    number_of_devices: int = DEFAULT_NUMBER_OF_DEVICES
    telemetry_interval: float = DEFAULT_TELEMETRY_INTERVAL_MS / 1000
    firmware_check_interval: float = DEFAULT_FIRMWARE_CHECK_INTERVAL_MS / 1000
    batch_size: int = DEFAULT_BATCH_SIZE
    batch_delay: float = DEFAULT_BATCH_DELAY_MS / 1000
    stagger_delay: float = DEFAULT_STAGGER_DELAY_MS / 1000
    run_duration_minutes: float = DEFAULT_RUN_DURATION_MINUTES
    auto_shutdown: bool = True
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    firmware_version: str = DEFAULT_FIRMWARE_VERSION
    hardware_version: str = DEFAULT_HARDWARE_VERSION
    device_model: str = DEFAULT_DEVICE_MODEL
    device_id_prefix: str = DEFAULT_DEVICE_ID_PREFIX
    transport: str = TRANSPORT_MQTT
    stats_interval: float = DEFAULT_STATS_INTERVAL_MS / 1000
    telemetry_log_frequency: float = DEFAULT_TELEMETRY_LOG_FREQUENCY
    detailed_logging: bool = False
    show_countdown: bool = True
    firmware_check_url: Optional[str] = None
    install_delay: float = DEFAULT_INSTALL_DELAY
    download_dir: Optional[str] = None
    require_tls: bool = True

    @property
    def timer_enabled(self) -> bool:
        return self.auto_shutdown and self.run_duration_minutes > 0

    def device_id(self, index: int) -> str:
        """Device id for a 1-based fleet index, e.g. ``SimulatedESP32-007``."""
        return f"{self.device_id_prefix}-{index:03d}"

    def with_overrides(self, **changes: Any) -> "SimulatorSettings":
        """Copy with command line overrides applied; None values are ignored."""
        return dataclasses.replace(self, **{k: v for k, v in changes.items() if v is not None})


def parse_config(data: Dict[str, Any]) -> SimulatorSettings:
    """Validate a raw configuration document.

    Raises:
        ConfigurationError: If the document does not match the schema
    """
    try:
        conf = CONFIG_SCHEMA(data)
    except vol.Invalid as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc

    sim, dev, dps = conf["simulation"], conf["device"], conf["dps"]
    hub, log, fw = conf["hub"], conf["logging"], conf["firmware"]
    return SimulatorSettings(
        id_scope=dps["idScope"],
        group_key=dps["groupEnrollmentKey"],
        provisioning_endpoint=dps["provisioningEndpoint"],
        poll_interval=dps["pollInterval"] / 1000,
        max_poll_attempts=dps["maxPollAttempts"],
        number_of_devices=sim["numberOfDevices"],
        telemetry_interval=sim["telemetryInterval"] / 1000,
        firmware_check_interval=sim["firmwareCheckInterval"] / 1000,
        batch_size=sim["batchSize"],
        batch_delay=sim["batchDelay"] / 1000,
        stagger_delay=sim["deviceStaggerDelay"] / 1000,
        run_duration_minutes=sim["runDurationMinutes"],
        auto_shutdown=sim["autoShutdown"],
        shutdown_timeout=sim["shutdownTimeout"],
        firmware_version=dev["firmwareVersion"],
        hardware_version=dev["hardwareVersion"],
        device_model=dev["deviceModel"],
        device_id_prefix=dev["deviceIdPrefix"],
        transport=hub["transport"],
        stats_interval=log["statsInterval"] / 1000,
        telemetry_log_frequency=log["telemetryLogFrequency"],
        detailed_logging=log["enableDetailedLogging"],
        show_countdown=log["showShutdownCountdown"],
        firmware_check_url=fw["checkUrl"],
        install_delay=fw["installDelay"] / 1000,
        download_dir=fw["downloadDir"],
        require_tls=fw["requireTls"],
    )


def load_config(path: Union[str, Path]) -> SimulatorSettings:
    """Read and validate a JSON configuration file.

    Raises:
        ConfigurationError: If the file is missing, not JSON, or invalid
    """
    path = Path(path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Configuration file not found: {path}") from exc
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"Cannot read configuration {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Configuration {path} must be a JSON object")
    settings = parse_config(raw)
    _LOGGER.info(
        f"Loaded configuration from {path}: {settings.number_of_devices} devices over {settings.transport}"
    )
    return settings
