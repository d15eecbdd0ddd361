"""Headless CLI runtime wiring for MicRelay."""

import argparse
import logging
import shutil
import sys
import time
import wave
from collections.abc import Sequence
from datetime import datetime, timezone
from pathlib import Path

from config import load_app_settings, save_app_settings
from core.app_config import AppConfig
from core.controller import DeviceController
from core.delivery import DeliveryJob, DeliveryOutcome
from core.device import HealthStatus
from core.discovery import DiscoveryScanner
from core.errors import ConfigurationError
from core.http_client import close_shared_client, configure_shared_client
from core.recording_session import artifact_name

logger = logging.getLogger(__name__)

LEVEL_BAR_WIDTH = 30
_LEVEL_REFRESH_SECONDS = 0.1

_INTERACTIVE_COMMANDS = {
    "": "record",
    "space": "record",
    "r": "toggle",
    "x": "stop",
    "s": "status",
    "t": "test",
    "d": "debug",
    "h": "help",
    "q": "quit",
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="MicRelay: record audio and send it to the device")
    parser.add_argument("--log-level", default=None, help="Logging level (default: LOG_LEVEL or INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("discover", help="Scan the local subnet for the device")

    p_status = sub.add_parser("status", help="Show device status")
    p_status.add_argument("--device", help="Device IP address (skips discovery)")

    p_record = sub.add_parser("record", help="Record one standard window and upload it")
    p_record.add_argument("--device", help="Device IP address (skips discovery)")

    p_upload = sub.add_parser("upload", help="Upload an existing WAV file")
    p_upload.add_argument("file", help="Path to WAV file")
    p_upload.add_argument("--device", help="Device IP address (skips discovery)")

    p_interactive = sub.add_parser("interactive", help="Keyboard-driven record/upload loop")
    p_interactive.add_argument("--device", help="Device IP address (skips discovery)")
    p_interactive.add_argument("--hotkeys", action="store_true", help="Also register global hotkeys")
    return parser


def _configure_logging(level_name: str, log_file: str = ""):
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, str(level_name or "").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        handlers=handlers,
    )


def format_health_status(status: HealthStatus) -> str:
    lines = [
        "DEVICE STATUS:",
        "===================",
        f"WiFi:          {'Connected' if status.wifi_connected else 'Disconnected'}",
        f"SD Card:       {'Ready' if status.sd_initialized else 'Error'}",
        f"Recording:     {'Active' if status.recording_active else 'Idle'}",
        f"IP Address:    {status.ip_address or '-'}",
        f"Free Heap:     {status.free_heap} bytes",
        f"Uptime:        {status.uptime_seconds:.1f} seconds",
        f"Conversations: {status.conversation_history_count}",
    ]
    return "\n".join(lines)


def render_level_bar(level: float, width: int = LEVEL_BAR_WIDTH) -> str:
    filled = int(round(max(0.0, min(1.0, level)) * width))
    return "[" + "#" * filled + "-" * (width - filled) + f"] {level * 100:5.1f}%"


def _print_status(message: str):
    print(message)
    sys.stdout.flush()


def _print_error(message: str):
    print(f"[ERROR] {message}", file=sys.stderr)


def _connect(controller: DeviceController, manual_address: str | None, interactive: bool = False) -> bool:
    """Select and verify the device; remember it for the next run."""
    settings = load_app_settings()
    manual = manual_address or controller.config.device_address
    try:
        endpoint = controller.connect(manual, remembered_address=settings["last_device_address"])
    except ConfigurationError as e:
        _print_error(str(e))
        if not interactive:
            return False
        answer = input("Enter device IP address: ")
        try:
            endpoint = controller.connect(manual_address=answer)
        except ConfigurationError as manual_error:
            _print_error(str(manual_error))
            return False

    if not controller.test_connection():
        _print_error(f"Failed to connect to device at {endpoint.address}")
        return False
    save_app_settings({"last_device_address": endpoint.address})
    return True


def cmd_discover(config: AppConfig) -> int:
    """Scan the subnet and print the device address."""
    scanner = DiscoveryScanner(config)
    try:
        endpoint = scanner.discover()
    except ConfigurationError as e:
        _print_error(str(e))
        return 1
    if endpoint is None:
        _print_error("No device found on the local subnet")
        return 1
    print(endpoint.address)
    return 0


def cmd_status(controller: DeviceController, device: str | None) -> int:
    if not _connect(controller, device):
        return 1
    status = controller.show_status()
    if status is None:
        return 1
    print(format_health_status(status))
    return 0


def cmd_record(controller: DeviceController, device: str | None) -> int:
    """Record one standard window, then wait for its delivery."""
    if not _connect(controller, device):
        return 1
    config = controller.config
    before = controller.cycles_finished
    if not controller.trigger_record():
        return 1
    wait_seconds = (config.max_duration_ms + config.settle_delay_ms) / 1000.0 + config.network_timeout + 5.0
    try:
        if not controller.wait_for_cycle(before, timeout=wait_seconds):
            _print_error("Recording did not finish in time")
            return 1
    except KeyboardInterrupt:
        controller.shutdown()
        return 130
    job = controller.last_job
    return 0 if job is not None and job.outcome is DeliveryOutcome.UPLOADED else 1


def _wav_duration_ms(path: Path) -> int:
    try:
        with wave.open(str(path), "rb") as wf:
            return int(wf.getnframes() * 1000 / max(wf.getframerate(), 1))
    except (wave.Error, EOFError) as e:
        logger.warning("Could not read WAV header of %s: %s", path, e)
        return 0


def cmd_upload(controller: DeviceController, device: str | None, file_path: str) -> int:
    """Upload an existing WAV file through the delivery pipeline."""
    source = Path(file_path)
    if not source.is_file():
        _print_error(f"File not found: {file_path}")
        return 1
    if not _connect(controller, device):
        return 1
    # The pipeline removes its input, so hand it a transient copy.
    temp_dir = Path(controller.config.temp_dir)
    temp_dir.mkdir(parents=True, exist_ok=True)
    transient = temp_dir / artifact_name(datetime.now(timezone.utc))
    shutil.copy2(source, transient)
    job = DeliveryJob.for_artifact(transient, _wav_duration_ms(source))
    result = controller.deliver_file(job)
    return 0 if result.outcome is DeliveryOutcome.UPLOADED else 1


def _print_controls(config: AppConfig, hotkeys=None):
    seconds = config.standard_duration_ms / 1000
    print("CONTROLS (type a key, then Enter):")
    print(f"   Enter/space  Record {seconds:.0f} seconds of audio")
    print("   r            Manual record toggle")
    print("   x            Stop recording")
    print("   s            Show device status")
    print("   t            Test connection")
    print("   d            Toggle debug mode")
    print("   q            Quit")
    if hotkeys is not None:
        print("GLOBAL HOTKEYS:")
        for name, hotkey in hotkeys.get_hotkeys().items():
            print(f"   {hotkey:<12} {name}")
    print()


def cmd_interactive(controller: DeviceController, device: str | None, use_hotkeys: bool = False) -> int:
    """Console command loop mapping keys 1:1 to controller operations."""
    if not _connect(controller, device, interactive=True):
        return 1
    settings = load_app_settings()
    if settings["debug_mode"] and not controller.debug:
        controller.toggle_debug()

    hotkeys = None
    if use_hotkeys:
        from hotkeys import HotkeyManager
        hotkeys = HotkeyManager(
            on_record=controller.trigger_record,
            on_toggle=controller.toggle_record,
            on_status=lambda: _show_status(controller),
            record_hotkey=settings["hotkey_record"],
            toggle_hotkey=settings["hotkey_toggle"],
            status_hotkey=settings["hotkey_status"],
        )
        hotkeys.start()
    _print_controls(controller.config, hotkeys)

    try:
        while True:
            try:
                line = input()
            except EOFError:
                break
            command = _INTERACTIVE_COMMANDS.get(line.strip().lower())
            if command is None:
                _print_error(f"Unknown command '{line.strip()}' (h for help)")
            elif command == "quit":
                break
            elif command == "record":
                controller.trigger_record()
            elif command == "toggle":
                controller.toggle_record()
            elif command == "stop":
                controller.stop_record()
            elif command == "status":
                _show_status(controller)
            elif command == "test":
                controller.test_connection()
            elif command == "debug":
                save_app_settings({"debug_mode": controller.toggle_debug()})
            elif command == "help":
                _print_controls(controller.config, hotkeys)
    except KeyboardInterrupt:
        print("\nReceived interrupt", file=sys.stderr)
    finally:
        if hotkeys:
            hotkeys.stop()
        print("Shutting down...", file=sys.stderr)
        controller.shutdown()
    return 0


def _show_status(controller: DeviceController):
    status = controller.show_status()
    if status is not None:
        print(format_health_status(status))


class _LevelPrinter:
    """Throttled live level bar on stderr."""

    def __init__(self):
        self._last = 0.0

    def __call__(self, level: float):
        now = time.monotonic()
        if now - self._last < _LEVEL_REFRESH_SECONDS:
            return
        self._last = now
        print("\r" + render_level_bar(level), end="", file=sys.stderr, flush=True)


def run_cli(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    config = AppConfig.from_env()
    _configure_logging(args.log_level or config.log_level, config.log_file)
    configure_shared_client(timeout=config.network_timeout, pool_size=config.discovery_concurrency)

    try:
        if args.command == "discover":
            return cmd_discover(config)
        controller = DeviceController(
            config,
            on_status=_print_status,
            on_error=_print_error,
            on_level=_LevelPrinter() if args.command in ("record", "interactive") else None,
        )
        if args.command == "status":
            return cmd_status(controller, args.device)
        if args.command == "record":
            return cmd_record(controller, args.device)
        if args.command == "upload":
            return cmd_upload(controller, args.device, args.file)
        if args.command == "interactive":
            return cmd_interactive(controller, args.device, args.hotkeys)
        parser.error(f"Unknown command: {args.command}")
        return 2
    finally:
        close_shared_client()
