"""Test infrastructure - mocks and byte-level builders.

This package contains test support code, NOT actual tests.
"""

from pathlib import Path

INFRASTRUCTURE_DIR = Path(__file__).parent
MOCKS_DIR = INFRASTRUCTURE_DIR / "mocks"
HELPERS_DIR = INFRASTRUCTURE_DIR / "helpers"
