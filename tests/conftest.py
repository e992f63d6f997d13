"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
"""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from config import Settings, StorageBackend  # noqa: E402
from src.mastery.engine import MasteryEngine  # noqa: E402
from src.mastery.models import QuizModule, ReadingModule  # noqa: E402
from src.mastery.storage import MemoryKeyValueStore, PersistenceWriter  # noqa: E402


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (engine + real backends)")
    config.addinivalue_line("markers", "smoke: Smoke tests for CLI commands")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
        elif "smoke" in str(item.fspath):
            item.add_marker(pytest.mark.smoke)


class FixedClock:
    """Deterministic clock; each call advances one second."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + timedelta(seconds=1)
        return current


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def memory_store():
    return MemoryKeyValueStore()


@pytest.fixture
def writer(memory_store):
    """Inline writer over the memory store."""
    return PersistenceWriter(memory_store, background=False)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        storage_backend=StorageBackend.MEMORY,
        data_dir=tmp_path,
        background_writes=False,
    )


@pytest.fixture
def engine(memory_store, settings, clock):
    engine = MasteryEngine(memory_store, settings=settings, background=False, clock=clock)
    yield engine
    engine.close()


@pytest.fixture
def sample_lesson():
    """Reading, quiz, reading, quiz (threshold 0.7)."""
    return [
        ReadingModule(id="budgeting-101-reading-1"),
        QuizModule(id="budgeting-101-quiz-1"),
        ReadingModule(id="budgeting-101-reading-2"),
        QuizModule(id="budgeting-101-quiz-2", mastery_threshold=0.7),
    ]
