"""
Pytest fixtures for mailseal tests.

This module provides common fixtures used across test modules.
"""

import os
import sys

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from mailseal.common.config import (  # noqa: E402
    ComposeSettings,
    GeneralSettings,
    SecuritySettings,
    Settings,
)

from fakes import (  # noqa: E402
    FakeEngine,
    FakeKeyStore,
    FakeLookup,
    FakeSurfaceHost,
    FakeSync,
    RecordingView,
)


@pytest.fixture
def engine():
    """Provide a fake crypto engine."""
    return FakeEngine()


@pytest.fixture
def store():
    """Provide an empty in-memory keyring."""
    return FakeKeyStore()


@pytest.fixture
def lookup():
    return FakeLookup()


@pytest.fixture
def host():
    """Provide a surface host without scripted answers."""
    return FakeSurfaceHost()


@pytest.fixture
def view():
    return RecordingView()


@pytest.fixture
def sync():
    return FakeSync()


@pytest.fixture
def settings():
    """Provide settings independent of the environment."""
    return Settings(
        general=GeneralSettings(auto_add_primary=False, auto_sign_msg=False),
        security=SecuritySettings(password_cache=True, password_timeout=30),
        compose=ComposeSettings(large_message_threshold=400000, attachment_concurrency=2),
    )
