"""Device controller: the explicit context shared by all operator commands.

Pure Python, no console I/O. Driven from the CLI layer via callbacks for
status lines, errors and finished delivery jobs.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import TYPE_CHECKING, Callable, Optional

from core.delivery import DeliveryJob, DeliveryOutcome, DeliveryPipeline
from core.device import DeviceEndpoint, HealthStatus, parse_device_address
from core.discovery import DiscoveryScanner
from core.errors import ConfigurationError
from core.health_client import DeviceHealthClient
from core.http_client import close_shared_client
from core.recording_session import CaptureSession, RecordingSession

if TYPE_CHECKING:
    import httpx

    from core.app_config import AppConfig

logger = logging.getLogger(__name__)


class DeviceController:
    """Owns the endpoint, the recording session and the delivery pipeline."""

    def __init__(
        self,
        config: "AppConfig",
        on_status: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        on_job_finished: Optional[Callable[[DeliveryJob], None]] = None,
        on_level: Optional[Callable[[float], None]] = None,
        client: "httpx.Client | None" = None,
        scanner: DiscoveryScanner | None = None,
        session_factory: Optional[Callable[..., RecordingSession]] = None,
    ):
        self.config = config
        self._on_status = on_status
        self._on_error = on_error
        self._on_job_finished = on_job_finished
        self.health_client = DeviceHealthClient(config, client=client)
        self.scanner = scanner or DiscoveryScanner(config, health_client=self.health_client)
        self.pipeline = DeliveryPipeline(config, health_client=self.health_client, client=client)
        factory = session_factory or RecordingSession
        self.session = factory(
            config,
            on_completed=self._deliver,
            on_rejected=self._on_rejected,
            on_level=on_level,
        )
        self.endpoint: Optional[DeviceEndpoint] = None
        self.debug = False
        self.last_job: Optional[DeliveryJob] = None
        self._delivery_lock = threading.Lock()
        self._cycles_done = threading.Condition()
        self._cycles_finished = 0

    def _status(self, message: str):
        if self._on_status:
            self._on_status(message)

    def _error(self, message: str):
        if self._on_error:
            self._on_error(message)

    # -- Startup --

    def connect(self, manual_address: str | None = None, remembered_address: str | None = None) -> DeviceEndpoint:
        """Select the device: manual address, then remembered one, then a subnet scan.

        Raises ConfigurationError if no device could be found.
        """
        if manual_address:
            endpoint = DeviceEndpoint(address=parse_device_address(manual_address))
            self.endpoint = endpoint
            return endpoint

        if remembered_address:
            try:
                address = parse_device_address(remembered_address)
            except ConfigurationError as e:
                logger.warning("Ignoring remembered device address: %s", e)
            else:
                if self.health_client.probe(address).found:
                    self._status(f"Found device at remembered address {address}")
                    self.endpoint = DeviceEndpoint(address=address)
                    self.endpoint.mark(True)
                    return self.endpoint
                logger.info("Remembered device %s did not answer; scanning", address)

        self._status("Searching for device...")
        endpoint = self.scanner.discover()
        if endpoint is None:
            raise ConfigurationError("Auto-discovery failed: no device answered on the local subnet")
        self._status(f"Found device at: {endpoint.address}")
        self.endpoint = endpoint
        return endpoint

    def _require_endpoint(self) -> Optional[DeviceEndpoint]:
        if self.endpoint is None:
            self._error("No device address configured")
        return self.endpoint

    # -- Operator commands --

    def trigger_record(self) -> bool:
        """Record one standard window (auto-stops after the configured duration)."""
        return self._start(auto_stop=True)

    def toggle_record(self) -> bool:
        """Manual start/stop; only the safety ceiling stops it automatically."""
        if self.session.is_active:
            self.stop_record()
            return False
        return self._start(auto_stop=False)

    def _start(self, auto_stop: bool) -> bool:
        if self.session.is_active:
            self._error("Already recording! Please wait...")
            return False
        try:
            started = self.session.start(auto_stop=auto_stop)
        except Exception as e:
            self._error(f"Failed to start recording: {e}")
            return False
        if started and auto_stop:
            self._status(f"Recording for {self.config.standard_duration_ms / 1000:.0f} seconds... Please speak now!")
        elif started:
            self._status("Recording... stop it with the stop command.")
        else:
            self._error("Already recording! Please wait...")
        return started

    def stop_record(self) -> Optional[CaptureSession]:
        session = self.session.stop()
        if session is None:
            self._status("Not recording")
        return session

    def test_connection(self) -> bool:
        endpoint = self._require_endpoint()
        if endpoint is None:
            return False
        result = self.health_client.check_health(endpoint)
        if result.reachable:
            self._status("Connection successful!")
        else:
            self._error(f"Connection failed: {result.error}")
        return result.reachable

    def show_status(self) -> Optional[HealthStatus]:
        endpoint = self._require_endpoint()
        if endpoint is None:
            return None
        result = self.health_client.check_health(endpoint)
        if not result.reachable:
            self._error(f"Failed to get status: {result.error}")
            return None
        return result.payload

    def toggle_debug(self) -> bool:
        self.debug = not self.debug
        level = logging.DEBUG if self.debug else getattr(logging, self.config.log_level, logging.INFO)
        logging.getLogger().setLevel(level)
        self._status(f"Debug mode: {'ON' if self.debug else 'OFF'}")
        return self.debug

    def shutdown(self):
        """Quit: abort an active capture without delivering it, release HTTP resources."""
        if self.session.abort() is not None:
            self._status("Recording interrupted; nothing was uploaded")
        close_shared_client()

    # -- Delivery --

    def deliver_file(self, job: DeliveryJob) -> DeliveryJob:
        """Run the delivery pipeline for an explicit artifact (synchronously)."""
        endpoint = self._require_endpoint()
        if endpoint is None:
            return job
        with self._delivery_lock:
            return self._finish_job(self.pipeline.deliver(job, endpoint))

    def _deliver(self, job: DeliveryJob):
        """Settle-timer callback: one delivery at a time."""
        endpoint = self._require_endpoint()
        with self._delivery_lock:
            if endpoint is None:
                DeliveryPipeline._remove_transient(job.source_file)
                self._finish_job(replace(job, outcome=DeliveryOutcome.FAILED, detail="no device"))
                return
            self._status("Processing recording...")
            try:
                result = self.pipeline.deliver(job, endpoint)
            except Exception as e:
                logger.exception("Delivery crashed")
                self._error(f"Delivery failed: {e}")
                self._mark_cycle_finished()
                return
            self._finish_job(result)

    def _finish_job(self, job: DeliveryJob) -> DeliveryJob:
        self.last_job = job
        self._mark_cycle_finished()
        if job.outcome is DeliveryOutcome.UPLOADED:
            self._status("Upload successful! The device is processing your voice...")
        elif job.outcome is DeliveryOutcome.FAILED:
            self._error(f"Upload failed: {job.detail}")
            if self.endpoint is not None and not self.endpoint.snapshot().healthy:
                self._error("Check that the device is powered on and connected to WiFi")
        elif job.outcome in (DeliveryOutcome.SKIPPED_TOO_SMALL, DeliveryOutcome.SKIPPED_TOO_SHORT):
            self._error(job.detail)
        if self._on_job_finished:
            self._on_job_finished(job)
        return job

    def _mark_cycle_finished(self):
        with self._cycles_done:
            self._cycles_finished += 1
            self._cycles_done.notify_all()

    def wait_for_cycle(self, after: int, timeout: float) -> bool:
        """Block until more than ``after`` capture cycles have been delivered or discarded."""
        with self._cycles_done:
            return self._cycles_done.wait_for(lambda: self._cycles_finished > after, timeout=timeout)

    @property
    def cycles_finished(self) -> int:
        return self._cycles_finished

    def _on_rejected(self, session: CaptureSession):
        self._mark_cycle_finished()
        if session.reject_reason == "too short":
            self._error(
                f"Recording too short ({session.duration_ms}ms). Minimum: {self.config.min_duration_ms}ms"
            )
        elif session.reject_reason != "interrupted":
            self._error(f"Recording discarded: {session.reject_reason}")
