"""
Global pytest configuration and fixtures for all tests.

This file provides fixtures available to all test modules.
"""

import sys
from datetime import UTC, datetime
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Import database fixtures for all tests
from tests.conftest_db import *  # noqa: F401,F403

from src.core.clock import FrozenClock  # noqa: E402
from src.core.config import reset_config  # noqa: E402
from src.services.workflow_settings_service import invalidate_settings_cache  # noqa: E402

# Monday 09:00 UTC, far enough from DST changes that hour arithmetic is exact
DEFAULT_NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


@pytest.fixture(autouse=True, scope="function")
def test_environment(monkeypatch, request):
    """Configure test environment variables without global pollution."""
    monkeypatch.setenv("INVENTORY_TESTING", "true")

    # Unit tests never reach a real database; integration tests bind their own engine
    monkeypatch.delenv("DATABASE_URL", raising=False)

    # Keep Busy retries fast
    monkeypatch.setenv("INVENTORY_BUSY_RETRY_DELAY_SECONDS", "0.01")
    monkeypatch.delenv("INVENTORY_DEGRADE_CONFLICTS_TO_ALERTS", raising=False)
    monkeypatch.delenv("PRODUCTION", raising=False)
    monkeypatch.delenv("FLY_APP_NAME", raising=False)

    reset_config()
    invalidate_settings_cache()

    yield

    reset_config()
    invalidate_settings_cache()


@pytest.fixture
def clock():
    """A frozen clock shared by the services under test."""
    return FrozenClock(DEFAULT_NOW)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: Integration tests that need a database")
    config.addinivalue_line("markers", "requires_db: Tests that need a database engine")
    config.addinivalue_line("markers", "slow: Tests that take a while (concurrency)")


def pytest_collection_modifyitems(config, items):
    """Mark tests under tests/integration automatically."""
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
            item.add_marker(pytest.mark.requires_db)
