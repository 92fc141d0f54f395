"""Shared fixtures."""

import pytest
from unittest.mock import patch


@pytest.fixture(autouse=True)
def no_redis():
    """Run with Redis unavailable unless a test patches its own client in."""
    with patch("quickbook.core.conversation.store.get_redis", return_value=None), patch(
        "quickbook.core.conversation.dedup.get_redis", return_value=None
    ):
        yield
