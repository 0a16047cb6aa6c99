"""Polled firmware update source for transports without push."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Tuple

import aiohttp
from aiohttp.client import ClientTimeout

from ..const import DPS_REQUEST_TIMEOUT
from ..models.device_stats import DeviceCounters

_LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT = ClientTimeout(total=DPS_REQUEST_TIMEOUT)


class FirmwareUpdateChecker:
    """Asks an update service whether a new image is available for the device."""

    __slots__ = ("_device_id", "_session", "_check_url", "_interval", "_on_update", "_counters", "_task")

    def __init__(
        self,
        device_id: str,
        session: aiohttp.ClientSession,
        check_url: str,
        interval: float,
        on_update: Callable[[str, str], None],
        counters: DeviceCounters,
    ) -> None:
        self._device_id = device_id
        self._session = session
        self._check_url = check_url
        self._interval = interval
        self._on_update = on_update
        self._counters = counters
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def check_once(self) -> Optional[Tuple[str, str]]:
        """Return ``(version, url)`` when the service offers an update."""
        try:
            async with self._session.get(
                self._check_url, params={"deviceId": self._device_id}, timeout=DEFAULT_TIMEOUT
            ) as response:
                if response.status != 200:
                    self._counters.error_count += 1
                    _LOGGER.warning(f"[{self._device_id}] Update check returned {response.status}")
                    return None
                body = await response.json(content_type=None)
        except (asyncio.TimeoutError, aiohttp.ClientError, ValueError) as exc:
            self._counters.error_count += 1
            _LOGGER.warning(f"[{self._device_id}] Update check failed: {type(exc).__name__}: {exc}")
            return None

        if not isinstance(body, dict) or not body.get("updateAvailable"):
            if _LOGGER.isEnabledFor(logging.DEBUG):
                _LOGGER.debug("[%s] No firmware update available", self._device_id)
            return None
        version, url = body.get("version"), body.get("url")
        if not version or not url:
            _LOGGER.warning(f"[{self._device_id}] Update offer without version or url: {body}")
            return None
        return str(version), str(url)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            offer = await self.check_once()
            if offer is not None:
                _LOGGER.info(f"[{self._device_id}] Firmware update offered: {offer[0]}")
                self._on_update(*offer)

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.ensure_future(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
