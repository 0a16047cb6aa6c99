"""Shared access signature tokens for provisioning and hub resources."""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional
from urllib.parse import quote

from ..const import SAS_DPS_KEY_NAME, SAS_REFRESH_MARGIN, SAS_TOKEN_TTL
from .exceptions import ConfigurationError, CredentialError
from .key_derivation import decode_key

_LOGGER = logging.getLogger(__name__)


class ResourceKind(str, Enum):
    """Resource a token is scoped to."""

    PROVISIONING = "provisioning"
    HUB = "hub"


@dataclass(frozen=True)
class SasToken:
    """One signed credential bound to a resource and an expiry."""

    resource_kind: ResourceKind
    resource_uri: str
    expiry: int
    signature: str
    token: str

    def __str__(self) -> str:
        return self.token


def _encode(value: str) -> str:
    return quote(value, safe="")


class SasTokenManager:
    """Builds SAS tokens for one resource and tracks when they need refreshing.

    The token is treated as expired ``refresh_margin`` seconds before its
    literal expiry so that callers refresh ahead of the service rejecting it.
    """

    __slots__ = ("_kind", "_resource_uri", "_key", "_key_name", "_ttl", "_refresh_margin", "_clock", "_token")

    def __init__(
        self,
        kind: ResourceKind,
        resource_uri: str,
        symmetric_key: str,
        *,
        key_name: Optional[str] = None,
        ttl: int = SAS_TOKEN_TTL,
        refresh_margin: int = SAS_REFRESH_MARGIN,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._kind = kind
        self._resource_uri = resource_uri
        self._key = symmetric_key
        self._key_name = key_name
        self._ttl = ttl
        self._refresh_margin = refresh_margin
        self._clock = clock
        self._token: Optional[SasToken] = None

    @classmethod
    def for_provisioning(
        cls, id_scope: str, registration_id: str, device_key: str, **kwargs
    ) -> "SasTokenManager":
        """Token manager for the provisioning registration resource."""
        resource_uri = f"{id_scope}/registrations/{registration_id}"
        kwargs.setdefault("key_name", SAS_DPS_KEY_NAME)
        return cls(ResourceKind.PROVISIONING, resource_uri, device_key, **kwargs)

    @classmethod
    def for_hub(cls, hub_host: str, device_id: str, device_key: str, **kwargs) -> "SasTokenManager":
        """Token manager for a device resource on the assigned hub."""
        resource_uri = f"{hub_host}/devices/{device_id}"
        return cls(ResourceKind.HUB, resource_uri, device_key, **kwargs)

    @property
    def kind(self) -> ResourceKind:
        return self._kind

    @property
    def resource_uri(self) -> str:
        return self._resource_uri

    @property
    def current(self) -> Optional[SasToken]:
        return self._token

    def _sign(self, expiry: int) -> str:
        string_to_sign = f"{_encode(self._resource_uri)}\n{expiry}"
        try:
            key = decode_key(self._key)
        except ConfigurationError as exc:
            raise CredentialError(f"Cannot sign {self._kind.value} token: {exc}") from exc
        digest = hmac.new(key, string_to_sign.encode("utf-8"), hashlib.sha256).digest()
        return base64.b64encode(digest).decode("ascii")

    def generate(self, expiry: Optional[int] = None) -> SasToken:
        """Sign a new token and make it the live one.

        Args:
            expiry: Absolute expiry in epoch seconds, defaults to now + ttl

        Returns:
            The new token

        Raises:
            CredentialError: If the key material cannot be used for signing
        """
        if expiry is None:
            expiry = int(self._clock()) + self._ttl
        signature = self._sign(expiry)
        token = (
            f"SharedAccessSignature sr={_encode(self._resource_uri)}"
            f"&sig={_encode(signature)}&se={expiry}"
        )
        if self._key_name:
            token += f"&skn={self._key_name}"
        self._token = SasToken(
            resource_kind=self._kind,
            resource_uri=self._resource_uri,
            expiry=expiry,
            signature=signature,
            token=token,
        )
        if _LOGGER.isEnabledFor(logging.DEBUG):
            _LOGGER.debug("Generated %s SAS token for %s (se=%s)", self._kind.value, self._resource_uri, expiry)
        return self._token

    def is_expired(self) -> bool:
        """Return True once the token is within the refresh margin of expiry."""
        if self._token is None:
            return True
        return self._clock() >= self._token.expiry - self._refresh_margin

    def ensure_valid(self) -> str:
        """Return a usable token string, regenerating it first if needed.

        Raises:
            CredentialError: If regeneration fails
        """
        if self.is_expired():
            if self._token is not None:
                _LOGGER.info(f"{self._kind.value} SAS token for {self._resource_uri} expiring, refreshing")
            self.generate()
        assert self._token is not None
        return self._token.token
