"""Public core APIs for composition roots and external integrations."""

from core.app_config import AppConfig
from core.controller import DeviceController
from core.delivery import DeliveryJob, DeliveryOutcome, DeliveryPipeline
from core.device import DeviceEndpoint, HealthStatus
from core.discovery import DiscoveryScanner
from core.health_client import DeviceHealthClient
from core.http_client import close_shared_client, configure_shared_client, get_shared_client
from core.level_meter import compute_level
from core.recording_session import CaptureState, RecordingSession

__all__ = [
    "AppConfig",
    "CaptureState",
    "DeliveryJob",
    "DeliveryOutcome",
    "DeliveryPipeline",
    "DeviceController",
    "DeviceEndpoint",
    "DeviceHealthClient",
    "DiscoveryScanner",
    "HealthStatus",
    "RecordingSession",
    "compute_level",
    "get_shared_client",
    "close_shared_client",
    "configure_shared_client",
]
