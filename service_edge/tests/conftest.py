"""
Shared fixtures for edge service tests.
"""

import pytest

from service_edge.app.store import MemoryStore
from shared.test_helpers import FakeClock


@pytest.fixture
def clock():
    """Deterministic clock."""
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    """In-memory store driven by the fake clock."""
    return MemoryStore(clock=clock)
