"""Fixtures for unit tests, which never touch a database or the network."""

from unittest.mock import MagicMock, patch

import pytest

from src.core.config import reset_config


@pytest.fixture(autouse=True)
def mock_requests_post():
    """Every outbound webhook call in a unit test hits this mock."""
    with patch("requests.post") as post:
        post.return_value.status_code = 200
        post.return_value.raise_for_status.return_value = None
        yield post


@pytest.fixture(autouse=True)
def fresh_config():
    """Settings are re-read from the environment for each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def mock_db_session():
    """Stand-in for ``get_db_session()``; enter it to get the same mock back."""
    session = MagicMock()
    session.__enter__.return_value = session
    session.__exit__.return_value = None
    return session
