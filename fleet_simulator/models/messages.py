"""Payload builders for messages sent to the hub."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..const import (
    ENROLLMENT_TYPE,
    MSG_DEVICE_INFO,
    MSG_FIRMWARE_STATUS,
    MSG_TELEMETRY,
)
from .device_info import DeviceInfo, utc_now_iso


@dataclass
class HubMessage:
    """JSON body plus routing properties."""

    body: Dict[str, Any]
    properties: Dict[str, str] = field(default_factory=dict)

    @property
    def message_type(self) -> str:
        return self.properties.get("messageType", "")


def telemetry_message(
    readings: Dict[str, Any], device_id: str, firmware_version: str, device_model: str
) -> HubMessage:
    body: Dict[str, Any] = {"messageType": MSG_TELEMETRY}
    body.update(readings)
    body["deviceId"] = device_id
    body["firmwareVersion"] = firmware_version
    body["timestamp"] = utc_now_iso()
    return HubMessage(
        body=body,
        properties={
            "messageType": MSG_TELEMETRY,
            "deviceType": device_model,
            "enrollmentType": ENROLLMENT_TYPE,
            "firmwareVersion": firmware_version,
        },
    )


def device_info_body(info: DeviceInfo, firmware_version: str) -> Dict[str, Any]:
    return {
        "deviceId": info.device_id,
        "firmwareVersion": firmware_version,
        "hardwareVersion": info.hardware_version,
        "deviceModel": info.device_model,
        "lastBoot": info.last_boot,
        "transport": info.transport.upper(),
    }


def device_info_message(info: DeviceInfo, firmware_version: str) -> HubMessage:
    body: Dict[str, Any] = {"messageType": MSG_DEVICE_INFO}
    body.update(device_info_body(info, firmware_version))
    return HubMessage(
        body=body,
        properties={"messageType": MSG_DEVICE_INFO, "deviceType": info.device_model},
    )


def firmware_status_body(
    current_version: str,
    status: str,
    target_version: Optional[str] = None,
    error: Optional[str] = None,
) -> Dict[str, Any]:
    """Firmware status document shared by reported properties and messages."""
    body: Dict[str, Any] = {
        "currentVersion": current_version,
        "status": status,
        "timestamp": utc_now_iso(),
    }
    if target_version:
        body["targetVersion"] = target_version
    if error:
        body["error"] = error
    return body


def firmware_status_message(
    device_id: str,
    device_model: str,
    current_version: str,
    status: str,
    target_version: Optional[str] = None,
    error: Optional[str] = None,
) -> HubMessage:
    body: Dict[str, Any] = {"messageType": MSG_FIRMWARE_STATUS, "deviceId": device_id}
    body.update(firmware_status_body(current_version, status, target_version, error))
    return HubMessage(
        body=body,
        properties={"messageType": MSG_FIRMWARE_STATUS, "deviceType": device_model},
    )
