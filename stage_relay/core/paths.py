"""Centralized path constants for the relay."""

from __future__ import annotations

import os
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[2]
PACKAGE_ROOT = PROJECT_ROOT / "stage_relay"

# Configuration
CONFIG_PATH = PROJECT_ROOT / "config.txt"

# Logging
_LOG_DIR_ENV = os.environ.get("STAGE_RELAY_LOG_DIR")
LOGS_DIR = Path(_LOG_DIR_ENV).expanduser() if _LOG_DIR_ENV else PROJECT_ROOT / "logs"
RELAY_LOG_FILE = LOGS_DIR / "relay.log"

# Media files that /framerate may read; everything outside is rejected
DEFAULT_MEDIA_ROOT = PROJECT_ROOT


def ensure_directories() -> None:
    """Create necessary directories if they don't exist."""
    LOGS_DIR.mkdir(parents=True, exist_ok=True)


__all__ = [
    "PROJECT_ROOT",
    "PACKAGE_ROOT",
    "CONFIG_PATH",
    "LOGS_DIR",
    "RELAY_LOG_FILE",
    "DEFAULT_MEDIA_ROOT",
    "ensure_directories",
]
