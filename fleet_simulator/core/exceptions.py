"""Custom exceptions for the fleet simulator."""


class SimulatorException(Exception):
    """Base exception for the fleet simulator."""

    pass


class ConfigurationError(SimulatorException):
    """Exception for malformed configuration or key material."""

    pass


class RegistrationError(SimulatorException):
    """Exception for a rejected or failed provisioning registration."""

    pass


class ProvisioningTimeout(RegistrationError):
    """Exception for an assignment that did not resolve within the poll bound."""

    pass


class CredentialError(SimulatorException):
    """Exception for SAS token generation failures."""

    pass


class DeviceConnectionError(SimulatorException):
    """Exception for hub connection failures."""

    pass


class TransmissionError(SimulatorException):
    """Exception for a message the hub did not accept."""

    pass


class OTAError(SimulatorException):
    """Exception for firmware download or install failures."""

    pass


class InvalidUpdateRequest(OTAError):
    """Exception for an update request missing its version or URL."""

    pass


class JobInProgress(SimulatorException):
    """Exception for an update request while another job is active."""

    pass


class ShutdownTimeout(SimulatorException):
    """Exception for device connections that did not close in time."""

    pass
