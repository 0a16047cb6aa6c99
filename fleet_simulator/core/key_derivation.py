"""Per-device key derivation from an enrollment group key."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging

from .exceptions import ConfigurationError

_LOGGER = logging.getLogger(__name__)

MIN_GROUP_KEY_BYTES = 16
MAX_GROUP_KEY_BYTES = 64


def decode_key(key: str) -> bytes:
    """Decode a base64 symmetric key.

    Args:
        key: Base64 encoded key material

    Returns:
        Raw key bytes

    Raises:
        ConfigurationError: If the key is not valid base64 or has an implausible length
    """
    if not key:
        raise ConfigurationError("Symmetric key is empty")
    try:
        raw = base64.b64decode(key, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ConfigurationError(f"Symmetric key is not valid base64: {exc}") from exc
    if not MIN_GROUP_KEY_BYTES <= len(raw) <= MAX_GROUP_KEY_BYTES:
        raise ConfigurationError(
            f"Symmetric key decodes to {len(raw)} bytes, "
            f"expected {MIN_GROUP_KEY_BYTES}-{MAX_GROUP_KEY_BYTES}"
        )
    return raw


def derive_device_key(group_key: str, device_id: str) -> str:
    """Derive the individual device key for a group enrollment.

    The device key is HMAC-SHA256 over the UTF-8 device id, keyed with the
    decoded group key, returned base64 encoded.
    """
    signing_key = decode_key(group_key)
    digest = hmac.new(signing_key, device_id.encode("utf-8"), hashlib.sha256).digest()
    if _LOGGER.isEnabledFor(logging.DEBUG):
        _LOGGER.debug("[%s] Device key derived from enrollment group key", device_id)
    return base64.b64encode(digest).decode("ascii")
