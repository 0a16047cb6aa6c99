"""Firmware update job models."""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class FirmwareJobState(str, Enum):
    """OTA job state."""

    IDLE = "Idle"
    DOWNLOADING = "Downloading"
    INSTALLING = "Installing"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_active(self) -> bool:
        return self in (FirmwareJobState.DOWNLOADING, FirmwareJobState.INSTALLING)


@dataclass
class FirmwareUpdateJob:
    """One firmware update request and its progress."""

    current_version: str
    target_version: str
    source_url: str
    state: FirmwareJobState = FirmwareJobState.IDLE
    last_error: Optional[str] = None
    reported: List[str] = field(default_factory=list)
