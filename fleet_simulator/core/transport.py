"""Hub transport capability set shared by the MQTT and HTTP transports."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Protocol

from ..models.messages import HubMessage
from .sas_token import SasTokenManager


class TransportListener(Protocol):
    """Inbound events a transport delivers, always on the event loop thread."""

    def on_transport_connected(self) -> None: ...

    def on_transport_disconnected(self, reason: str) -> None: ...

    def on_transport_error(self, error: Exception) -> None: ...

    def on_method_request(self, name: str, request_id: str, payload: Any) -> None: ...

    def on_desired_properties(self, patch: Dict[str, Any]) -> None: ...


class HubTransport(ABC):
    """Open, close and send against an assigned hub.

    ``supports_push`` transports carry a device state document (desired and
    reported properties); ``supports_commands`` transports deliver remote
    method invocations.
    """

    name: str = "base"
    supports_push: bool = False
    supports_commands: bool = False

    def __init__(self) -> None:
        self._listener: Optional[TransportListener] = None

    def bind(self, listener: TransportListener) -> None:
        self._listener = listener

    @abstractmethod
    async def open(self, hub_host: str, device_id: str, tokens: SasTokenManager) -> None:
        """Open the session.

        Raises:
            DeviceConnectionError: If the hub cannot be reached or rejects the device
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the session. Safe to call more than once."""

    @abstractmethod
    async def send(self, message: HubMessage) -> None:
        """Send one device-to-cloud message.

        Raises:
            TransmissionError: If the hub does not accept the message
        """

    async def get_twin(self) -> Dict[str, Any]:
        raise NotImplementedError(f"{self.name} transport has no device state document")

    async def update_reported(self, patch: Dict[str, Any]) -> None:
        raise NotImplementedError(f"{self.name} transport has no device state document")

    async def respond_method(self, request_id: str, status: int, payload: Any) -> None:
        raise NotImplementedError(f"{self.name} transport has no remote methods")
