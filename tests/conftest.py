"""Pytest configuration and shared fixtures."""

import os
import sys
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    """Keep the host environment and cached settings out of tests."""
    from src.settings import get_settings

    for key in list(os.environ):
        if key.startswith("BLUEGREEN_"):
            monkeypatch.delenv(key, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def clock():
    from fakes import FakeClock

    return FakeClock()


@pytest.fixture
def world():
    from fakes import World

    return World()
