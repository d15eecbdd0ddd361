"""Delivery pipeline: validate -> persist -> upload -> clean up one capture."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, replace
from enum import Enum, auto
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import httpx

from core.device import DeviceEndpoint
from core.errors import ValidationError
from core.health_client import DeviceHealthClient
from core.http_client import get_shared_client

if TYPE_CHECKING:
    from core.app_config import AppConfig

logger = logging.getLogger(__name__)

UPLOAD_FIELD = "audio"
UPLOAD_FILENAME = "audio.wav"
UPLOAD_CONTENT_TYPE = "audio/wav"


class DeliveryOutcome(Enum):
    PENDING = auto()
    UPLOADED = auto()
    FAILED = auto()
    SKIPPED_TOO_SMALL = auto()
    SKIPPED_TOO_SHORT = auto()


_SKIP_OUTCOMES = {
    "too_small": DeliveryOutcome.SKIPPED_TOO_SMALL,
    "too_short": DeliveryOutcome.SKIPPED_TOO_SHORT,
}


@dataclass(frozen=True)
class DeliveryJob:
    source_file: Optional[Path]
    size_bytes: int = 0  # whole file on disk, 44-byte WAV header included
    duration_ms: int = 0
    outcome: DeliveryOutcome = DeliveryOutcome.PENDING
    detail: str = ""
    status_code: Optional[int] = None
    persisted_path: Optional[Path] = None

    @classmethod
    def for_artifact(cls, path, duration_ms: int) -> "DeliveryJob":
        artifact = Path(path) if path else None
        size = artifact.stat().st_size if artifact is not None and artifact.is_file() else 0
        return cls(source_file=artifact, size_bytes=size, duration_ms=int(duration_ms))

    @property
    def finished(self) -> bool:
        return self.outcome is not DeliveryOutcome.PENDING


class DeliveryPipeline:
    """Delivers one completed capture to the device.

    Each step is a hard gate; a failed gate short-circuits the rest. The
    transient artifact is always removed, the persisted copy never is. There
    is no automatic retry: the operator records again.
    """

    def __init__(
        self,
        config: "AppConfig",
        health_client: DeviceHealthClient | None = None,
        client: httpx.Client | None = None,
    ):
        self.config = config
        self._client = client
        self._health_client = health_client or DeviceHealthClient(config, client=client)

    @property
    def client(self) -> httpx.Client:
        return self._client if self._client is not None else get_shared_client()

    def upload_url(self, address: str) -> str:
        return f"http://{address}:{self.config.device_port}{self.config.upload_path}"

    def deliver(self, job: DeliveryJob, endpoint: DeviceEndpoint) -> DeliveryJob:
        if job.finished:
            logger.debug("Job for %s already finished (%s)", job.source_file, job.outcome.name)
            return job
        try:
            return self._run(job, endpoint)
        finally:
            self._remove_transient(job.source_file)

    def _run(self, job: DeliveryJob, endpoint: DeviceEndpoint) -> DeliveryJob:
        artifact = job.source_file
        if artifact is None or not artifact.is_file():
            logger.error("No recorded artifact found at %s", artifact)
            return replace(job, outcome=DeliveryOutcome.FAILED, detail="no artifact")

        job = replace(job, size_bytes=artifact.stat().st_size)
        logger.info("Artifact %s: %d bytes (%.1fs)", artifact.name, job.size_bytes, job.duration_ms / 1000.0)
        try:
            self.validate(job)
        except ValidationError as e:
            logger.warning("%s, skipping upload", e)
            return replace(job, outcome=_SKIP_OUTCOMES[e.kind], detail=str(e))

        if self.config.save_recordings:
            job = replace(job, persisted_path=self._persist(artifact))

        snapshot = endpoint.snapshot()
        if not snapshot.healthy:
            logger.info("Device %s was marked unreachable; re-checking before upload", snapshot.address)
            check = self._health_client.check_health(endpoint)
            if not check.reachable:
                return replace(
                    job,
                    outcome=DeliveryOutcome.FAILED,
                    detail=f"device unreachable: {check.error}",
                )
            snapshot = endpoint.snapshot()

        return self._upload(job, artifact, endpoint, snapshot.address)

    def validate(self, job: DeliveryJob):
        """Raise ValidationError if the artifact is too small or too short to send."""
        if job.size_bytes < self.config.min_file_bytes:
            raise ValidationError(
                f"Recording file too small ({job.size_bytes} bytes, minimum {self.config.min_file_bytes})",
                kind="too_small",
            )
        if job.duration_ms < self.config.min_duration_ms:
            raise ValidationError(
                f"Recording too short ({job.duration_ms}ms, minimum {self.config.min_duration_ms}ms)",
                kind="too_short",
            )

    def _upload(self, job: DeliveryJob, artifact: Path, endpoint: DeviceEndpoint, address: str) -> DeliveryJob:
        url = self.upload_url(address)
        logger.info("Uploading %s to %s", artifact.name, url)
        try:
            with open(artifact, "rb") as f:
                files = {UPLOAD_FIELD: (UPLOAD_FILENAME, f, UPLOAD_CONTENT_TYPE)}
                resp = self.client.post(url, files=files, timeout=self.config.network_timeout)
        except httpx.ConnectError as e:
            logger.error("Upload failed, device refused connection: %s", e)
            endpoint.mark(False)
            return replace(job, outcome=DeliveryOutcome.FAILED, detail=f"connection refused: {e}")
        except httpx.HTTPError as e:
            logger.error("Upload failed: %s", e)
            return replace(job, outcome=DeliveryOutcome.FAILED, detail=str(e) or type(e).__name__)

        if not resp.is_success:
            logger.warning("Upload completed with status %d", resp.status_code)
            return replace(
                job,
                outcome=DeliveryOutcome.FAILED,
                status_code=resp.status_code,
                detail=f"device answered HTTP {resp.status_code}",
            )
        logger.debug("Upload response: %s", resp.text[:200])
        return replace(job, outcome=DeliveryOutcome.UPLOADED, status_code=resp.status_code)

    def _persist(self, artifact: Path) -> Optional[Path]:
        recordings = Path(self.config.recordings_dir)
        try:
            recordings.mkdir(parents=True, exist_ok=True)
            saved = recordings / artifact.name
            shutil.copy2(artifact, saved)
        except (OSError, shutil.Error) as e:
            logger.error("Failed to save a copy of %s: %s", artifact.name, e)
            return None
        logger.info("Saved: %s", saved)
        self._prune_recordings(recordings)
        return saved

    def _prune_recordings(self, recordings: Path):
        keep = int(self.config.max_files)
        if keep <= 0:
            return
        saved = sorted(
            recordings.glob("recording_*.wav"),
            key=lambda p: (p.stat().st_mtime, p.name),
            reverse=True,
        )
        for old in saved[keep:]:
            try:
                old.unlink()
                logger.debug("Pruned old recording %s", old)
            except OSError as e:
                logger.warning("Could not prune %s: %s", old, e)

    @staticmethod
    def _remove_transient(artifact: Optional[Path]):
        if artifact is None:
            return
        try:
            artifact.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove transient artifact %s: %s", artifact, e)
