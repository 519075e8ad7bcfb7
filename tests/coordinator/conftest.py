"""
Shared fixtures for coordinator tests.
"""

from pathlib import Path

import pytest

from coordinator.pools import LocationPool, EmailPool
from coordinator.queue import TaskQueue
from coordinator.state import StateStore


class FakeClock:
    """Manually advanced replacement for time.time()."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


LOCATIONS_CSV = """city,state,lat,lon,countryCode
Austin,TX,30.2672,-97.7431,US
Denver,CO,39.7392,-104.9903,US
Portland,OR,45.5152,-122.6784,US
"""


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(temp_dir: Path) -> StateStore:
    """A StateStore with no exporters and no background saving."""
    return StateStore(
        data_dir=temp_dir / "data",
        auto_save=False,
        max_backups=3,
    )


@pytest.fixture
def queue(store: StateStore, clock: FakeClock) -> TaskQueue:
    """A TaskQueue driven by a fake clock."""
    return TaskQueue(store, lease_timeout=30.0, cleanup_interval=3600, max_attempts=3, clock=clock)


@pytest.fixture
def locations_csv(temp_dir: Path) -> Path:
    path = temp_dir / "locations.csv"
    path.write_text(LOCATIONS_CSV)
    return path


@pytest.fixture
def emails_txt(temp_dir: Path) -> Path:
    path = temp_dir / "emails.txt"
    path.write_text("alpha@example.com\nBeta@Example.com\n\nnot-an-email\ngamma@example.com\n")
    return path


@pytest.fixture
def location_pool(store: StateStore, locations_csv: Path) -> LocationPool:
    return LocationPool(store, failure_threshold=3, auto_reset=True, seed_file=locations_csv)


@pytest.fixture
def email_pool(store: StateStore, emails_txt: Path) -> EmailPool:
    return EmailPool(store, failure_threshold=3, auto_reset=False, seed_file=emails_txt)


# Pytest configuration for async tests
def pytest_configure(config):
    """Configure pytest for async tests."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as an asyncio test"
    )
