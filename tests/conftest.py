"""
Pytest fixtures and configuration for BlankTrace tests.

=============================================================================
Test Classification
=============================================================================

- @pytest.mark.unit: Single class/function, no network
  - DEFAULT: Tests without marker are auto-classified as unit
- @pytest.mark.integration: Several components wired together, upstream HTTP
  mocked with httpx.MockTransport

=============================================================================
Mock Strategy
=============================================================================

- Database: temp-file SQLite per test (tmp_path)
- User-Agent generation: deterministic counter instead of fake-useragent
- Clock: injectable callable for interval rotation
- Upstream HTTP: httpx.MockTransport
"""

import itertools
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio


def pytest_collection_modifyitems(config, items):
    """Tests without an explicit classification marker are unit tests."""
    for item in items:
        has_classification = any(
            marker.name in ("unit", "integration") for marker in item.iter_markers()
        )
        if not has_classification:
            item.add_marker(pytest.mark.unit)


@pytest.fixture
def temp_db_path(tmp_path: Path) -> Path:
    """Get path for temporary test database."""
    return tmp_path / "test_blanktrace.db"


@pytest_asyncio.fixture
async def test_database(temp_db_path: Path):
    """Create a connected test database with schema."""
    from blanktrace.storage.database import open_database

    db = await open_database(temp_db_path)

    yield db

    await db.close()


@pytest_asyncio.fixture
async def pipeline(test_database):
    """Started event pipeline draining into the test database."""
    from blanktrace.scheduler.pipeline import EventPipeline

    pipe = EventPipeline(test_database, maxsize=64)
    pipe.start()

    yield pipe

    await pipe.stop()


@pytest.fixture
def make_settings(temp_db_path: Path) -> Callable[..., Any]:
    """Factory for validated Settings with per-test overrides."""
    from blanktrace.utils.config import build_settings

    def _make(**overrides: Any):
        data: dict[str, Any] = {"db_path": str(temp_db_path)}
        data.update(overrides)
        return build_settings(data)

    return _make


@pytest.fixture
def user_agent_source() -> Callable[[], str]:
    """Deterministic User-Agent generator: UA-1, UA-2, ..."""
    counter = itertools.count(1)
    return lambda: f"UA-{next(counter)}"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
