import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Ensure repository root is on sys.path for package imports
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from ops_safety.config import Settings


class FakeClock:
    """Deterministic clock; advance() moves time forward."""

    def __init__(self, start=None):
        self.now = start or datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds=0.0, milliseconds=0.0):
        self.now = self.now + timedelta(seconds=seconds, milliseconds=milliseconds)
        return self.now


def make_settings(**overrides) -> Settings:
    """Settings isolated from .env and the process environment defaults."""
    return Settings(_env_file=None, **overrides)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    # every component switched on
    return make_settings(
        ENABLE_SAFETY_ENFORCEMENT=True,
        ENABLE_KILL_SWITCHES=True,
        ENABLE_COST_GUARDS=True,
        ENABLE_PRODUCTION_CUTOVER=True,
    )


@pytest.fixture
def bypass_settings():
    return make_settings()
