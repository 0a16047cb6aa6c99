"""Tests for per-device key derivation."""

from __future__ import annotations

import base64

import pytest

from fleet_simulator.core.exceptions import ConfigurationError
from fleet_simulator.core.key_derivation import decode_key, derive_device_key

DEV_001_KEY = "mTuQGZGQQEQgbmxqnM7DM4ZOjshkGBWi8NNcxDEq31I="
DEV_002_KEY = "eufv4eEjAVblsTnzzBJC95jgWpNyK+mxYqJxqwu7TtM="


def test_derive_matches_golden_value(group_key):
    """Test the derived key for a fixed group key and device id."""
    assert derive_device_key(group_key, "dev-001") == DEV_001_KEY


def test_derive_is_deterministic(group_key):
    assert derive_device_key(group_key, "dev-001") == derive_device_key(group_key, "dev-001")


def test_derive_differs_per_device(group_key):
    key_1 = derive_device_key(group_key, "dev-001")
    key_2 = derive_device_key(group_key, "dev-002")
    assert key_2 == DEV_002_KEY
    assert key_1 != key_2


def test_derived_key_is_32_byte_digest(group_key):
    assert len(base64.b64decode(derive_device_key(group_key, "SimulatedESP32-001"))) == 32


@pytest.mark.parametrize(
    "bad_key",
    [
        "",
        "not base64!!",
        base64.b64encode(b"short").decode(),
        base64.b64encode(b"x" * 65).decode(),
    ],
)
def test_invalid_group_key_rejected(bad_key):
    """Test malformed or implausibly sized keys raise ConfigurationError."""
    with pytest.raises(ConfigurationError):
        derive_device_key(bad_key, "dev-001")


def test_decode_key_returns_raw_bytes(group_key):
    assert decode_key(group_key) == b"0" * 32
