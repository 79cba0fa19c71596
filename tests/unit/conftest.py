"""
Shared fixtures for the unit tests.

Time is always driven by `FakeClock` so window and refill behavior is
deterministic. The start time sits exactly on a minute boundary.
"""

import pytest

from turnstile.core.cache.memory import MemoryCache
from turnstile.core.service import AdmissionService
from turnstile.core.storage.memory import InMemoryStore

START_MS = 1_699_999_980_000


class FakeClock:
    """Callable returning epoch seconds, advanced by hand."""

    def __init__(self, start_ms: int = START_MS) -> None:
        self.ms = start_ms

    def __call__(self) -> float:
        return self.ms / 1000

    def advance(self, milliseconds: int) -> None:
        self.ms += milliseconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryStore:
    """Create a fresh in-memory store for each test."""
    return InMemoryStore()


@pytest.fixture
def cache() -> MemoryCache:
    return MemoryCache(max_entries=1000)


@pytest.fixture
def service(store: InMemoryStore, cache: MemoryCache, clock: FakeClock) -> AdmissionService:
    return AdmissionService(store=store, cache=cache, clock=clock)
