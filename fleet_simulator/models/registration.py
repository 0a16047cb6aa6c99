"""Provisioning registration models."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class RegistrationState(str, Enum):
    """Provisioning registration state."""

    UNREGISTERED = "Unregistered"
    REGISTERING = "Registering"
    ASSIGNING = "Assigning"
    ASSIGNED = "Assigned"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RegistrationState.ASSIGNED, RegistrationState.FAILED)


@dataclass
class ProvisioningRegistration:
    """Registration record of one device against the provisioning service."""

    registration_id: str
    state: RegistrationState = RegistrationState.UNREGISTERED
    operation_id: Optional[str] = None
    assigned_hub: Optional[str] = None
    assigned_device_id: Optional[str] = None
    poll_attempts: int = 0
    error: Optional[str] = None
