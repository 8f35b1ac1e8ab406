"""Shared fixtures for rereader tests."""

import pytest

from rereader.core.storage import open_store


@pytest.fixture
def store(tmp_path):
    """File-backed store so the separate reader connection is exercised."""
    s = open_store(str(tmp_path / "data" / "test.db"))
    yield s
    s.close()
