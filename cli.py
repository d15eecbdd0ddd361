#!/usr/bin/env python3
"""Headless MicRelay.

Usage:
    python cli.py discover                   # Scan the local /24 for the device
    python cli.py status [--device IP]       # Show device health
    python cli.py record [--device IP]       # Record 5 seconds and upload
    python cli.py upload <file.wav>          # Upload an existing recording
    python cli.py interactive [--hotkeys]    # Keyboard-driven loop
"""

import sys
import os

sys.path.insert(0, os.path.dirname(__file__))

from core.cli_runtime import run_cli


def main() -> int:
    return run_cli()


if __name__ == "__main__":
    sys.exit(main())
