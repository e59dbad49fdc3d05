"""Shared fixtures for replicator unit tests."""

from __future__ import annotations

import pytest

from helpers import SQLiteStore


@pytest.fixture
def sqlite_store():
    store = SQLiteStore()
    yield store
    store.close()
