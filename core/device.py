"""Device endpoint record and health payload model."""

from __future__ import annotations

import ipaddress
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from core.errors import ConfigurationError, ProtocolError

CONNECTIVITY_FIELD = "wifi_connected"


def parse_device_address(value: str) -> str:
    """Validate a manually entered IPv4 address and return it normalized."""
    text = str(value or "").strip()
    try:
        return str(ipaddress.IPv4Address(text))
    except ValueError as e:
        raise ConfigurationError(f"Invalid device address '{text}'") from e


@dataclass(frozen=True)
class EndpointSnapshot:
    address: str
    healthy: bool
    last_checked_at: Optional[datetime]


@dataclass
class DeviceEndpoint:
    """The discovered device plus its last known health.

    Health is only mutated through ``mark`` and read through ``snapshot`` so a
    health-check-then-use sequence always sees one consistent record.
    """

    address: str
    healthy: bool = True
    last_checked_at: Optional[datetime] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def mark(self, healthy: bool, checked_at: Optional[datetime] = None) -> EndpointSnapshot:
        with self._lock:
            self.healthy = bool(healthy)
            self.last_checked_at = checked_at or datetime.now(timezone.utc)
            return EndpointSnapshot(self.address, self.healthy, self.last_checked_at)

    def snapshot(self) -> EndpointSnapshot:
        with self._lock:
            return EndpointSnapshot(self.address, self.healthy, self.last_checked_at)


def _coerce_int(value, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return int(default)


@dataclass(frozen=True)
class HealthStatus:
    """Parsed ``/status`` payload reported by the device."""

    wifi_connected: bool
    sd_initialized: bool = False
    recording_active: bool = False
    ip_address: str = ""
    free_heap: int = 0
    uptime_ms: int = 0
    conversation_history_count: int = 0
    raw: dict = field(default_factory=dict, repr=False, compare=False)

    @property
    def uptime_seconds(self) -> float:
        return self.uptime_ms / 1000.0

    @classmethod
    def from_payload(cls, payload: Any) -> "HealthStatus":
        if not isinstance(payload, dict):
            raise ProtocolError(f"Status payload must be a JSON object, got {type(payload).__name__}")
        if CONNECTIVITY_FIELD not in payload:
            raise ProtocolError(f"Status payload is missing '{CONNECTIVITY_FIELD}'")
        return cls(
            wifi_connected=bool(payload.get(CONNECTIVITY_FIELD)),
            sd_initialized=bool(payload.get("sd_initialized", False)),
            recording_active=bool(payload.get("recording_active", False)),
            ip_address=str(payload.get("ip_address") or ""),
            free_heap=_coerce_int(payload.get("free_heap")),
            uptime_ms=_coerce_int(payload.get("uptime")),
            conversation_history_count=_coerce_int(payload.get("conversation_history_count")),
            raw=dict(payload),
        )
