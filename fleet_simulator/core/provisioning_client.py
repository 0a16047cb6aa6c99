"""HTTP client for the Device Provisioning Service registration flow."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

import aiohttp
from aiohttp.client import ClientTimeout

from ..const import (
    DPS_API_VERSION,
    DPS_GLOBAL_ENDPOINT,
    DPS_MAX_POLL_ATTEMPTS,
    DPS_OPERATION_PATH_FORMAT,
    DPS_POLL_INTERVAL,
    DPS_REGISTER_PATH_FORMAT,
    DPS_REQUEST_TIMEOUT,
    DPS_STATUS_ASSIGNED,
    DPS_STATUS_ASSIGNING,
    DPS_STATUS_FAILED,
)
from ..models.registration import ProvisioningRegistration, RegistrationState
from .exceptions import CredentialError, ProvisioningTimeout, RegistrationError
from .sas_token import SasTokenManager

_LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT = ClientTimeout(total=DPS_REQUEST_TIMEOUT)
HTTP_ACCEPTED = 202
HTTP_OK = 200


class ProvisioningClient:
    """Registers one device identity and polls until it is assigned to a hub.

    An instance is single use: once the registration reaches ``Assigned`` or
    ``Failed`` a new client is needed for another attempt.
    """

    __slots__ = (
        "_session",
        "_id_scope",
        "_endpoint",
        "_tokens",
        "_poll_interval",
        "_max_poll_attempts",
        "_registration",
    )

    def __init__(
        self,
        session: aiohttp.ClientSession,
        id_scope: str,
        registration_id: str,
        device_key: str,
        *,
        endpoint: str = DPS_GLOBAL_ENDPOINT,
        poll_interval: float = DPS_POLL_INTERVAL,
        max_poll_attempts: int = DPS_MAX_POLL_ATTEMPTS,
        tokens: Optional[SasTokenManager] = None,
    ) -> None:
        """Initialize the provisioning client.

        Args:
            session: aiohttp client session for HTTP requests
            id_scope: Provisioning service ID scope
            registration_id: Registration id, the device id for group enrollments
            device_key: Derived device key used to sign the provisioning token
            endpoint: Provisioning service host name
            poll_interval: Seconds between assignment polls
            max_poll_attempts: Polls allowed before giving up
            tokens: Token manager override, built from the key when omitted
        """
        self._session = session
        self._id_scope = id_scope
        self._endpoint = endpoint
        self._tokens = tokens or SasTokenManager.for_provisioning(id_scope, registration_id, device_key)
        self._poll_interval = poll_interval
        self._max_poll_attempts = max_poll_attempts
        self._registration = ProvisioningRegistration(registration_id=registration_id)

    @property
    def registration(self) -> ProvisioningRegistration:
        return self._registration

    @property
    def state(self) -> RegistrationState:
        return self._registration.state

    def _url(self, path: str) -> str:
        return f"https://{self._endpoint}{path}"

    def _fail(self, message: str, error_cls: type = RegistrationError) -> RegistrationError:
        self._registration.state = RegistrationState.FAILED
        self._registration.error = message
        _LOGGER.error(f"[{self._registration.registration_id}] {message}")
        return error_cls(message)

    async def _request(
        self, method: str, path: str, json: Optional[Dict[str, Any]] = None
    ) -> Tuple[int, Any]:
        """Make an authenticated request against the provisioning service.

        Returns:
            HTTP status and decoded JSON body (raw text when not JSON)

        Raises:
            CredentialError: If the provisioning token cannot be regenerated
            aiohttp.ClientError: On transport failures
            asyncio.TimeoutError: If the request times out
        """
        headers = {
            "Authorization": self._tokens.ensure_valid(),
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        url = self._url(path)
        if _LOGGER.isEnabledFor(logging.DEBUG):
            _LOGGER.debug("HTTP %s %s", method, url)
        async with self._session.request(
            method,
            url,
            headers=headers,
            params={"api-version": DPS_API_VERSION},
            json=json,
            timeout=DEFAULT_TIMEOUT,
        ) as response:
            resp_text = await response.text()
            try:
                body: Any = await response.json(content_type=None)
            except (aiohttp.ContentTypeError, ValueError):
                body = resp_text
            if _LOGGER.isEnabledFor(logging.DEBUG):
                _LOGGER.debug("HTTP %s response: %s %s", url, response.status, resp_text[:300])
            return response.status, body

    async def register(self) -> ProvisioningRegistration:
        """Submit the registration request.

        Returns:
            The registration, now in ``Assigning`` with its operation id

        Raises:
            RegistrationError: If the service rejects the request or is unreachable
        """
        reg = self._registration
        if reg.state.is_terminal:
            raise RegistrationError(
                f"Registration for {reg.registration_id} already {reg.state.value}, create a new client"
            )
        if reg.state is not RegistrationState.UNREGISTERED:
            raise RegistrationError(f"Registration for {reg.registration_id} already in progress")

        reg.state = RegistrationState.REGISTERING
        path = DPS_REGISTER_PATH_FORMAT.format(scope=self._id_scope, registration_id=reg.registration_id)
        _LOGGER.info(f"[{reg.registration_id}] Registering device with group enrollment...")

        try:
            status, body = await self._request("PUT", path, json={"registrationId": reg.registration_id})
        except CredentialError as exc:
            raise self._fail(f"Registration failed: {exc}") from exc
        except (asyncio.TimeoutError, aiohttp.ClientError) as exc:
            raise self._fail(f"Registration failed: {type(exc).__name__}: {exc}") from exc

        if status != HTTP_ACCEPTED:
            raise self._fail(f"Registration failed with code {status}: {str(body)[:300]}")

        operation_id = body.get("operationId") if isinstance(body, dict) else None
        if not operation_id:
            raise self._fail("Registration response carried no operationId")

        reg.operation_id = operation_id
        reg.state = RegistrationState.ASSIGNING
        _LOGGER.info(f"[{reg.registration_id}] Registration initiated, operation ID: {operation_id}")
        return reg

    async def poll_assignment(self) -> ProvisioningRegistration:
        """Poll the operation status until assigned, failed, or out of attempts.

        Polls run at a fixed interval with no backoff. A poll that errors or
        returns a non-200 status still uses up an attempt.

        Raises:
            RegistrationError: If the service reports the registration failed
            ProvisioningTimeout: If the attempt bound is exhausted
        """
        reg = self._registration
        if reg.state is not RegistrationState.ASSIGNING:
            raise RegistrationError(f"Cannot poll registration in state {reg.state.value}")

        path = DPS_OPERATION_PATH_FORMAT.format(
            scope=self._id_scope,
            registration_id=reg.registration_id,
            operation_id=reg.operation_id,
        )

        for attempt in range(1, self._max_poll_attempts + 1):
            await asyncio.sleep(self._poll_interval)
            reg.poll_attempts = attempt

            try:
                status, body = await self._request("GET", path)
            except CredentialError as exc:
                raise self._fail(f"Assignment polling aborted: {exc}") from exc
            except (asyncio.TimeoutError, aiohttp.ClientError) as exc:
                _LOGGER.warning(
                    f"[{reg.registration_id}] Poll {attempt}/{self._max_poll_attempts} failed: "
                    f"{type(exc).__name__}: {exc}"
                )
                continue

            if status != HTTP_OK or not isinstance(body, dict):
                _LOGGER.warning(
                    f"[{reg.registration_id}] Poll {attempt}/{self._max_poll_attempts} returned {status}"
                )
                continue

            dps_status = body.get("status")
            if _LOGGER.isEnabledFor(logging.DEBUG):
                _LOGGER.debug("[%s] DPS status: %s", reg.registration_id, dps_status)

            if dps_status == DPS_STATUS_ASSIGNED:
                state = body.get("registrationState") or {}
                assigned_hub = state.get("assignedHub")
                if not assigned_hub:
                    raise self._fail("Assignment reported without an assignedHub")
                reg.assigned_hub = assigned_hub
                reg.assigned_device_id = state.get("deviceId") or reg.registration_id
                reg.state = RegistrationState.ASSIGNED
                _LOGGER.info(
                    f"[{reg.registration_id}] Registration succeeded - Hub: {reg.assigned_hub} "
                    f"(attempt {attempt})"
                )
                return reg

            if dps_status == DPS_STATUS_FAILED:
                state = body.get("registrationState") or {}
                detail = state.get("errorMessage") or body.get("errorMessage") or "no details"
                raise self._fail(f"Provisioning failed: {detail}")

            if dps_status != DPS_STATUS_ASSIGNING:
                _LOGGER.warning(f"[{reg.registration_id}] Unexpected DPS status '{dps_status}', still polling")

        raise self._fail(
            f"Provisioning timed out after {self._max_poll_attempts} polls", ProvisioningTimeout
        )

    async def provision(self) -> ProvisioningRegistration:
        """Register and wait for the hub assignment."""
        await self.register()
        return await self.poll_assignment()
