"""Shared fixtures"""

import pytest

from fakes import FakeClock
from src.storage.document_store import MemoryDocumentStore


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryDocumentStore(clock=clock)
