"""Status/connectivity probes against the device's ``/status`` endpoint."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, Optional

import httpx

from core.device import DeviceEndpoint, HealthStatus
from core.errors import ProtocolError, TransportError
from core.http_client import get_shared_client

if TYPE_CHECKING:
    from core.app_config import AppConfig

logger = logging.getLogger(__name__)


class ProbeStatus(Enum):
    FOUND = auto()
    TIMEOUT = auto()
    REFUSED = auto()
    MALFORMED = auto()
    ERROR = auto()


@dataclass(frozen=True)
class ProbeOutcome:
    address: str
    status: ProbeStatus
    detail: str = ""

    @property
    def found(self) -> bool:
        return self.status is ProbeStatus.FOUND


@dataclass(frozen=True)
class HealthCheckResult:
    reachable: bool
    payload: Optional[HealthStatus] = None
    error: str = ""


class DeviceHealthClient:
    """Issues bounded GET ``/status`` requests and parses the health payload.

    Nothing raised by the transport or the payload parser escapes this class;
    callers get a boolean/outcome plus an optional detail string.
    """

    def __init__(self, config: "AppConfig", client: httpx.Client | None = None):
        self.config = config
        self._client = client

    @property
    def client(self) -> httpx.Client:
        return self._client if self._client is not None else get_shared_client()

    def status_url(self, address: str) -> str:
        return f"http://{address}:{self.config.device_port}{self.config.status_path}"

    def fetch_status(self, address: str, timeout: float) -> HealthStatus:
        """Fetch and parse the status payload, raising TransportError/ProtocolError."""
        url = self.status_url(address)
        try:
            resp = self.client.get(url, timeout=timeout)
        except httpx.TimeoutException as e:
            raise TransportError(f"Timed out after {timeout}s contacting {address}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Could not reach {address}: {e}") from e
        if resp.status_code != 200:
            raise ProtocolError(f"Status request to {address} returned HTTP {resp.status_code}")
        try:
            payload = resp.json()
        except ValueError as e:
            raise ProtocolError(f"Status response from {address} is not valid JSON") from e
        return HealthStatus.from_payload(payload)

    def check_health(self, endpoint: DeviceEndpoint, timeout: float | None = None) -> HealthCheckResult:
        """Check the endpoint and record the outcome on it."""
        timeout = self.config.network_timeout if timeout is None else timeout
        try:
            status = self.fetch_status(endpoint.address, timeout)
        except (TransportError, ProtocolError) as e:
            logger.warning("Health check for %s failed: %s", endpoint.address, e)
            endpoint.mark(False)
            return HealthCheckResult(reachable=False, error=str(e))
        endpoint.mark(True)
        logger.debug("Health check for %s ok: %s", endpoint.address, status)
        return HealthCheckResult(reachable=True, payload=status)

    def probe(self, address: str, timeout: float | None = None) -> ProbeOutcome:
        """Single discovery probe. Succeeds only on a well-formed health payload."""
        timeout = self.config.probe_timeout if timeout is None else timeout
        try:
            resp = self.client.get(self.status_url(address), timeout=timeout)
        except httpx.TimeoutException as e:
            return ProbeOutcome(address, ProbeStatus.TIMEOUT, str(e))
        except httpx.ConnectError as e:
            return ProbeOutcome(address, ProbeStatus.REFUSED, str(e))
        except httpx.HTTPError as e:
            return ProbeOutcome(address, ProbeStatus.ERROR, str(e))
        if resp.status_code != 200:
            return ProbeOutcome(address, ProbeStatus.MALFORMED, f"HTTP {resp.status_code}")
        try:
            HealthStatus.from_payload(resp.json())
        except (ValueError, ProtocolError) as e:
            return ProbeOutcome(address, ProbeStatus.MALFORMED, str(e))
        return ProbeOutcome(address, ProbeStatus.FOUND)
