# fleet_simulator/const.py
# Protocol constants and simulator defaults

import logging
from typing import Final

DOMAIN: Final = "fleet_simulator"
_LOGGER = logging.getLogger(__package__)

# --- Device Provisioning Service ---
DPS_GLOBAL_ENDPOINT: Final = "global.azure-devices-provisioning.net"
DPS_API_VERSION: Final = "2019-03-31"
DPS_REGISTER_PATH_FORMAT: Final = "/{scope}/registrations/{registration_id}/register"
DPS_OPERATION_PATH_FORMAT: Final = "/{scope}/registrations/{registration_id}/operations/{operation_id}"
DPS_POLL_INTERVAL: Final = 3.0          # seconds between assignment polls
DPS_MAX_POLL_ATTEMPTS: Final = 20
DPS_REQUEST_TIMEOUT: Final = 30

DPS_STATUS_ASSIGNING: Final = "assigning"
DPS_STATUS_ASSIGNED: Final = "assigned"
DPS_STATUS_FAILED: Final = "failed"

# --- SAS tokens ---
SAS_TOKEN_TTL: Final = 3600             # seconds
SAS_REFRESH_MARGIN: Final = 300         # refresh 5 minutes before expiry
SAS_DPS_KEY_NAME: Final = "registration"

# --- Hub (MQTT) ---
HUB_MQTT_PORT: Final = 8883
HUB_MQTT_KEEPALIVE: Final = 60
HUB_MQTT_API_VERSION: Final = "2021-04-12"
HUB_CONNECT_TIMEOUT: Final = 20
TOPIC_TELEMETRY_FORMAT: Final = "devices/{device_id}/messages/events/{properties}"
TOPIC_TWIN_RESPONSE: Final = "$iothub/twin/res/#"
TOPIC_TWIN_RESPONSE_PREFIX: Final = "$iothub/twin/res/"
TOPIC_TWIN_GET_FORMAT: Final = "$iothub/twin/GET/?$rid={rid}"
TOPIC_TWIN_DESIRED: Final = "$iothub/twin/PATCH/properties/desired/#"
TOPIC_TWIN_DESIRED_PREFIX: Final = "$iothub/twin/PATCH/properties/desired/"
TOPIC_TWIN_REPORTED_FORMAT: Final = "$iothub/twin/PATCH/properties/reported/?$rid={rid}"
TOPIC_METHODS: Final = "$iothub/methods/POST/#"
TOPIC_METHODS_PREFIX: Final = "$iothub/methods/POST/"
TOPIC_METHOD_RESPONSE_FORMAT: Final = "$iothub/methods/res/{status}/?$rid={rid}"

# --- Hub (HTTP) ---
HUB_HTTP_API_VERSION: Final = "2020-03-13"
HUB_HTTP_EVENTS_URL_FORMAT: Final = "https://{hub}/devices/{device_id}/messages/events"
HUB_HTTP_PROPERTY_HEADER_PREFIX: Final = "iothub-app-"
HUB_HTTP_TIMEOUT: Final = 30

TRANSPORT_MQTT: Final = "mqtt"
TRANSPORT_HTTP: Final = "http"

# --- Device defaults ---
DEFAULT_FIRMWARE_VERSION: Final = "1.0.0"
DEFAULT_HARDWARE_VERSION: Final = "ESP32-v1.2"
DEFAULT_DEVICE_MODEL: Final = "SimulatedESP32"
DEFAULT_DEVICE_ID_PREFIX: Final = "SimulatedESP32"
ENROLLMENT_TYPE: Final = "group"

# --- Message types ---
MSG_TELEMETRY: Final = "telemetry"
MSG_DEVICE_INFO: Final = "deviceInfo"
MSG_FIRMWARE_STATUS: Final = "firmwareStatus"

# --- Firmware status values ---
FW_STATUS_CURRENT: Final = "current"
FW_STATUS_DOWNLOADING: Final = "downloading"
FW_STATUS_INSTALLING: Final = "installing"
FW_STATUS_COMPLETED: Final = "completed"
FW_STATUS_FAILED: Final = "failed"

FIRMWARE_DOWNLOAD_CHUNK: Final = 64 * 1024
FIRMWARE_DOWNLOAD_TIMEOUT: Final = 300
DEFAULT_INSTALL_DELAY: Final = 5.0      # simulated flashing time, seconds

# --- Remote commands / desired properties ---
METHOD_FIRMWARE_UPDATE: Final = "firmwareUpdate"
METHOD_REBOOT: Final = "reboot"
METHOD_GET_DEVICE_INFO: Final = "getDeviceInfo"
DESIRED_FIRMWARE_UPDATE: Final = "firmwareUpdate"
REBOOT_DELAY: Final = 2.0

# --- Simulation defaults (milliseconds where the config file uses ms) ---
DEFAULT_NUMBER_OF_DEVICES: Final = 10
DEFAULT_TELEMETRY_INTERVAL_MS: Final = 10000
DEFAULT_FIRMWARE_CHECK_INTERVAL_MS: Final = 5 * 60 * 1000
DEFAULT_BATCH_SIZE: Final = 10
DEFAULT_BATCH_DELAY_MS: Final = 2000
DEFAULT_STAGGER_DELAY_MS: Final = 100
DEFAULT_RUN_DURATION_MINUTES: Final = 12
DEFAULT_STATS_INTERVAL_MS: Final = 30000
DEFAULT_TELEMETRY_LOG_FREQUENCY: Final = 0.1
DEFAULT_SHUTDOWN_TIMEOUT: Final = 10.0
COUNTDOWN_INTERVAL: Final = 60.0
