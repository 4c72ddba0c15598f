"""
Pytest configuration for memory_core tests.

Everything runs against the in-process store with a frozen clock and fake
delegates; no database, Redis or OpenAI access is needed.
"""
from datetime import datetime, timezone

import pytest

from memory_core.config.settings import Settings
from memory_core.core import MemoryCore
from memory_core.repositories import create_memory_store
from memory_core.tests.fakes import FakeClassifier, FakeEmbedder, FrozenClock

pytest_plugins = ('pytest_asyncio',)

START = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def pytest_configure(config):
    """Configure pytest with asyncio marker."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as an async test."
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest.fixture
def store():
    return create_memory_store()


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, openai_api_key="")


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def classifier() -> FakeClassifier:
    return FakeClassifier()


@pytest.fixture
def core(store, settings, clock, embedder, classifier) -> MemoryCore:
    return MemoryCore(store, settings=settings, clock=clock, classifier=classifier, embedder=embedder)
