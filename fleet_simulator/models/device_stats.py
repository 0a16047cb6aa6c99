"""Per-device counters and fleet statistics snapshots."""

from dataclasses import dataclass, field
from typing import List


@dataclass
class DeviceCounters:
    """Counters owned by one device agent."""

    telemetry_count: int = 0
    error_count: int = 0


@dataclass(frozen=True)
class DeviceStatsSnapshot:
    """Read-only view of one device for reporting."""

    device_id: str
    telemetry_count: int
    error_count: int
    firmware_version: str
    is_connected: bool
    transport: str


@dataclass(frozen=True)
class FleetStats:
    """Aggregated view of the running fleet."""

    requested_count: int
    connected_count: int
    total_telemetry: int
    total_errors: int
    transport: str
    devices: List[DeviceStatsSnapshot] = field(default_factory=list)

    @property
    def running_count(self) -> int:
        return len(self.devices)

    @property
    def average_telemetry(self) -> float:
        if not self.requested_count:
            return 0.0
        return self.total_telemetry / self.requested_count
