"""Data models for the fleet simulator.

This package contains the dataclasses shared by the device agents.
"""

from .device_info import DeviceIdentity, DeviceInfo
from .device_stats import DeviceCounters, DeviceStatsSnapshot, FleetStats
from .firmware_job import FirmwareJobState, FirmwareUpdateJob
from .messages import HubMessage
from .registration import ProvisioningRegistration, RegistrationState

__all__ = [
    "DeviceIdentity",
    "DeviceInfo",
    "DeviceCounters",
    "DeviceStatsSnapshot",
    "FleetStats",
    "FirmwareJobState",
    "FirmwareUpdateJob",
    "HubMessage",
    "ProvisioningRegistration",
    "RegistrationState",
]
