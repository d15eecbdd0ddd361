"""Application configuration as an injectable dataclass."""

import os
from dataclasses import dataclass

from dotenv import load_dotenv


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class AppConfig:
    """Application configuration loaded from environment variables."""

    # Device / network
    device_address: str = ""
    device_port: int = 80
    status_path: str = "/status"
    upload_path: str = "/upload-audio"
    network_timeout: float = 30.0
    probe_timeout: float = 2.0

    # Discovery
    discovery_timeout: float = 20.0
    discovery_concurrency: int = 64
    subnet_prefix: int = 24

    # Audio
    sample_rate: int = 16000
    channels: int = 1

    # Recording window (milliseconds)
    standard_duration_ms: int = 5000
    max_duration_ms: int = 10000
    min_duration_ms: int = 500
    settle_delay_ms: int = 500
    silence_threshold: float = 0.01

    # Files
    min_file_bytes: int = 1000
    save_recordings: bool = True
    recordings_dir: str = "./recordings"
    temp_dir: str = "./temp"
    max_files: int = 50

    # Logging
    log_level: str = "INFO"
    log_file: str = ""

    @staticmethod
    def from_env() -> "AppConfig":
        """Load config from .env file and environment variables."""
        load_dotenv()
        return AppConfig(
            device_address=os.getenv("DEVICE_ADDRESS", "").strip(),
            device_port=int(os.getenv("DEVICE_PORT", "80")),
            network_timeout=float(os.getenv("NETWORK_TIMEOUT", "30")),
            probe_timeout=float(os.getenv("PROBE_TIMEOUT", "2")),
            discovery_timeout=float(os.getenv("DISCOVERY_TIMEOUT", "20")),
            discovery_concurrency=int(os.getenv("DISCOVERY_CONCURRENCY", "64")),
            subnet_prefix=int(os.getenv("SUBNET_PREFIX", "24")),
            sample_rate=int(os.getenv("SAMPLE_RATE", "16000")),
            standard_duration_ms=int(os.getenv("RECORD_STANDARD_MS", "5000")),
            max_duration_ms=int(os.getenv("RECORD_MAX_MS", "10000")),
            min_duration_ms=int(os.getenv("RECORD_MIN_MS", "500")),
            settle_delay_ms=int(os.getenv("SETTLE_DELAY_MS", "500")),
            silence_threshold=float(os.getenv("SILENCE_THRESHOLD", "0.01")),
            min_file_bytes=int(os.getenv("MIN_FILE_BYTES", "1000")),
            save_recordings=_env_bool("SAVE_RECORDINGS", True),
            recordings_dir=os.getenv("RECORDINGS_DIR", "./recordings"),
            temp_dir=os.getenv("TEMP_DIR", "./temp"),
            max_files=int(os.getenv("MAX_FILES", "50")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("LOG_FILE", "").strip(),
        )
