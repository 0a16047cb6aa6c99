"""HTTP transport: stateless device-to-cloud messages, no push and no commands."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Dict, Optional

import aiohttp
from aiohttp.client import ClientTimeout

from ..const import (
    HUB_HTTP_API_VERSION,
    HUB_HTTP_EVENTS_URL_FORMAT,
    HUB_HTTP_PROPERTY_HEADER_PREFIX,
    HUB_HTTP_TIMEOUT,
    TRANSPORT_HTTP,
)
from ..models.messages import HubMessage
from .exceptions import CredentialError, DeviceConnectionError, TransmissionError
from .sas_token import SasTokenManager
from .transport import HubTransport

_LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT = ClientTimeout(total=HUB_HTTP_TIMEOUT)
ACCEPTED_STATUSES = (200, 204)


class HttpTransport(HubTransport):
    """Posts each message to the hub events endpoint with a fresh credential."""

    name = TRANSPORT_HTTP

    __slots__ = ("_session", "_url", "_device_id", "_tokens", "_is_open")

    def __init__(self, session: aiohttp.ClientSession) -> None:
        super().__init__()
        self._session = session
        self._url: Optional[str] = None
        self._device_id: Optional[str] = None
        self._tokens: Optional[SasTokenManager] = None
        self._is_open = False

    async def open(self, hub_host: str, device_id: str, tokens: SasTokenManager) -> None:
        # No session to establish; validating the credential is the whole handshake.
        try:
            tokens.ensure_valid()
        except CredentialError as exc:
            raise DeviceConnectionError(f"Cannot build hub credential: {exc}") from exc
        self._url = HUB_HTTP_EVENTS_URL_FORMAT.format(hub=hub_host, device_id=device_id)
        self._device_id = device_id
        self._tokens = tokens
        self._is_open = True
        _LOGGER.info(f"[{device_id}] HTTP transport ready: {self._url}")
        if self._listener is not None:
            self._listener.on_transport_connected()

    async def close(self) -> None:
        if not self._is_open:
            return
        self._is_open = False
        if self._listener is not None:
            self._listener.on_transport_disconnected("closed")

    def _headers(self, message: HubMessage) -> Dict[str, str]:
        assert self._tokens is not None
        headers = {
            "Authorization": self._tokens.ensure_valid(),
            "Content-Type": "application/json",
        }
        for name, value in message.properties.items():
            headers[f"{HUB_HTTP_PROPERTY_HEADER_PREFIX}{name}"] = str(value)
        return headers

    async def send(self, message: HubMessage) -> None:
        """POST one message.

        Raises:
            CredentialError: If the token cannot be refreshed
            TransmissionError: If the hub rejects the message or is unreachable
        """
        if not self._is_open or self._url is None:
            raise TransmissionError("HTTP transport not open")

        headers = self._headers(message)
        try:
            async with self._session.post(
                self._url,
                params={"api-version": HUB_HTTP_API_VERSION},
                headers=headers,
                data=json.dumps(message.body),
                timeout=DEFAULT_TIMEOUT,
            ) as response:
                if response.status not in ACCEPTED_STATUSES:
                    text = await response.text()
                    raise TransmissionError(f"HTTP {response.status}: {text[:200]}")
                if _LOGGER.isEnabledFor(logging.DEBUG):
                    _LOGGER.debug("[%s] HTTP send accepted (%s)", self._device_id, response.status)
        except asyncio.TimeoutError as exc:
            raise TransmissionError("Timeout sending message") from exc
        except aiohttp.ClientError as exc:
            raise TransmissionError(f"HTTP client error: {exc}") from exc
