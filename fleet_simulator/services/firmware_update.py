"""Over-the-air firmware update job for one simulated device."""

from __future__ import annotations

import asyncio
import logging
import tempfile
from pathlib import Path
from typing import Optional, Protocol, Union
from urllib.parse import urlparse

import aiohttp
from aiohttp.client import ClientTimeout

from ..const import (
    DEFAULT_INSTALL_DELAY,
    FIRMWARE_DOWNLOAD_CHUNK,
    FIRMWARE_DOWNLOAD_TIMEOUT,
    FW_STATUS_COMPLETED,
    FW_STATUS_CURRENT,
    FW_STATUS_DOWNLOADING,
    FW_STATUS_FAILED,
    FW_STATUS_INSTALLING,
)
from ..core.exceptions import InvalidUpdateRequest, JobInProgress, OTAError
from ..models.firmware_job import FirmwareJobState, FirmwareUpdateJob

_LOGGER = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT = ClientTimeout(total=FIRMWARE_DOWNLOAD_TIMEOUT)


class StatusReporter(Protocol):
    """Anything that can deliver a firmware status report to the hub."""

    async def report_firmware_status(
        self,
        current_version: str,
        status: str,
        target_version: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool: ...


class FirmwareInstaller(Protocol):
    """Installs a downloaded image; raise OTAError to fail the job."""

    async def install(self, device_id: str, artifact: Path, target_version: str) -> None: ...


class SimulatedInstaller:
    """Waits a fixed delay to model flashing time. Performs no integrity check."""

    __slots__ = ("_delay",)

    def __init__(self, delay: float = DEFAULT_INSTALL_DELAY) -> None:
        self._delay = delay

    async def install(self, device_id: str, artifact: Path, target_version: str) -> None:
        if _LOGGER.isEnabledFor(logging.DEBUG):
            _LOGGER.debug("[%s] Simulating install of %s for %.1fs", device_id, artifact.name, self._delay)
        await asyncio.sleep(self._delay)


class FirmwareUpdateManager:
    """Runs download, install and report for one device, one job at a time.

    Phase reports for a job are strictly ordered: ``downloading`` then
    either ``failed`` or ``installing`` then ``completed``/``failed``. A
    request for the version already running reports ``current`` and does
    nothing else.
    """

    __slots__ = (
        "_device_id",
        "_current_version",
        "_reporter",
        "_session",
        "_installer",
        "_download_dir",
        "_require_tls",
        "_job",
        "_task",
    )

    def __init__(
        self,
        device_id: str,
        current_version: str,
        reporter: StatusReporter,
        session: aiohttp.ClientSession,
        *,
        installer: Optional[FirmwareInstaller] = None,
        download_dir: Optional[Union[str, Path]] = None,
        require_tls: bool = True,
    ) -> None:
        """Initialize the update manager.

        Args:
            device_id: Device the jobs run for, used in logs and file names
            current_version: Firmware version the device boots with
            reporter: Status report channel, normally the DeviceConnection
            session: aiohttp session used for downloads
            installer: Install step, defaults to SimulatedInstaller
            download_dir: Where images are staged, defaults to the temp dir
            require_tls: Reject source URLs that are not https
        """
        self._device_id = device_id
        self._current_version = current_version
        self._reporter = reporter
        self._session = session
        self._installer: FirmwareInstaller = installer or SimulatedInstaller()
        self._download_dir = Path(download_dir) if download_dir else Path(tempfile.gettempdir())
        self._require_tls = require_tls
        self._job: Optional[FirmwareUpdateJob] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def current_version(self) -> str:
        return self._current_version

    @property
    def job(self) -> Optional[FirmwareUpdateJob]:
        """The most recent job, if any."""
        return self._job

    @property
    def active_task(self) -> Optional[asyncio.Task]:
        """Task of the running job, None once it has finished."""
        if self._task is not None and not self._task.done():
            return self._task
        return None

    @property
    def is_busy(self) -> bool:
        return self.active_task is not None

    def artifact_path(self, target_version: str) -> Path:
        return self._download_dir / f"firmware_{self._device_id}_{target_version}.bin"

    def _new_job(self, target_version: Optional[str], source_url: Optional[str]) -> FirmwareUpdateJob:
        if self.is_busy:
            assert self._job is not None
            raise JobInProgress(
                f"Update to {self._job.target_version} already {self._job.state.value.lower()}"
            )
        if not target_version:
            raise InvalidUpdateRequest("Missing version or url")
        # a request for the running version only reports "current", so its url is never fetched
        if target_version != self._current_version:
            if not source_url:
                raise InvalidUpdateRequest("Missing version or url")
            if self._require_tls and urlparse(source_url).scheme != "https":
                raise InvalidUpdateRequest(f"Firmware URL must use https: {source_url}")
        return FirmwareUpdateJob(
            current_version=self._current_version,
            target_version=target_version,
            source_url=source_url or "",
        )

    def start_update(self, target_version: Optional[str], source_url: Optional[str]) -> asyncio.Task:
        """Validate a request and run the job in the background.

        Returns:
            Task resolving to the finished FirmwareUpdateJob

        Raises:
            JobInProgress: If a job is already running
            InvalidUpdateRequest: If version or url is missing or unusable
        """
        job = self._new_job(target_version, source_url)
        self._job = job
        self._task = asyncio.ensure_future(self._run(job))
        return self._task

    async def request_update(
        self, target_version: Optional[str], source_url: Optional[str]
    ) -> FirmwareUpdateJob:
        """Validate a request and run the job to completion."""
        return await self.start_update(target_version, source_url)

    async def _report(
        self, job: FirmwareUpdateJob, status: str, target: Optional[str] = None, error: Optional[str] = None
    ) -> None:
        job.reported.append(status)
        await self._reporter.report_firmware_status(self._current_version, status, target, error)

    async def _fail(self, job: FirmwareUpdateJob, error: str) -> FirmwareUpdateJob:
        job.state = FirmwareJobState.FAILED
        job.last_error = error
        _LOGGER.error(f"[{self._device_id}] Firmware update to {job.target_version} failed: {error}")
        await self._report(job, FW_STATUS_FAILED, job.target_version, error)
        return job

    async def _run(self, job: FirmwareUpdateJob) -> FirmwareUpdateJob:
        if job.target_version == job.current_version:
            _LOGGER.info(f"[{self._device_id}] Already running firmware {job.current_version}")
            await self._report(job, FW_STATUS_CURRENT, job.target_version)
            return job

        _LOGGER.info(
            f"[{self._device_id}] Starting firmware update {job.current_version} -> {job.target_version}"
        )
        artifact = self.artifact_path(job.target_version)

        job.state = FirmwareJobState.DOWNLOADING
        await self._report(job, FW_STATUS_DOWNLOADING, job.target_version)
        try:
            size = await self._download(job.source_url, artifact)
        except OTAError as exc:
            self._remove_artifact(artifact)
            return await self._fail(job, str(exc))
        _LOGGER.info(f"[{self._device_id}] Firmware downloaded ({size} bytes)")

        job.state = FirmwareJobState.INSTALLING
        await self._report(job, FW_STATUS_INSTALLING, job.target_version)
        try:
            await self._installer.install(self._device_id, artifact, job.target_version)
        except Exception as exc:
            self._remove_artifact(artifact)
            return await self._fail(job, f"Install failed: {exc}")

        self._current_version = job.target_version
        self._remove_artifact(artifact)
        job.state = FirmwareJobState.COMPLETED
        _LOGGER.info(f"[{self._device_id}] Firmware updated to {self._current_version}")
        await self._report(job, FW_STATUS_COMPLETED, job.target_version)
        return job

    async def _download(self, url: str, dest: Path) -> int:
        """Stream ``url`` into ``dest``.

        Returns:
            Number of bytes written

        Raises:
            OTAError: On a non-200 response, stream error, or write error
        """
        size = 0
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            async with self._session.get(url, timeout=DOWNLOAD_TIMEOUT) as response:
                if response.status != 200:
                    raise OTAError(f"Download failed with status {response.status}")
                with open(dest, "wb") as fh:
                    async for chunk in response.content.iter_chunked(FIRMWARE_DOWNLOAD_CHUNK):
                        fh.write(chunk)
                        size += len(chunk)
        except asyncio.TimeoutError as exc:
            raise OTAError("Download timed out") from exc
        except aiohttp.ClientError as exc:
            raise OTAError(f"Download error: {exc}") from exc
        except OSError as exc:
            raise OTAError(f"Cannot write firmware image: {exc}") from exc
        return size

    def _remove_artifact(self, artifact: Path) -> None:
        try:
            artifact.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            _LOGGER.warning(f"[{self._device_id}] Could not delete {artifact}: {exc}")
