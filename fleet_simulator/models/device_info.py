"""Device identity and descriptive information."""

from dataclasses import dataclass, field
from datetime import datetime, timezone


def utc_now_iso() -> str:
    """ISO-8601 UTC timestamp with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class DeviceIdentity:
    """Per-device credential derived once at startup."""

    device_id: str
    derived_key: str = field(repr=False)


@dataclass
class DeviceInfo:
    """Static hardware description reported by a simulated device."""

    device_id: str
    hardware_version: str
    device_model: str
    transport: str
    last_boot: str = field(default_factory=utc_now_iso)
