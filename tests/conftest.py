"""Shared fixtures: a temporary store, a controllable clock and a state manager."""

from datetime import datetime, timedelta

import pytest

from timetracker.settings import SettingsManager
from timetracker.state import TrackerState
from timetracker.storage import TrackerStore


def local_time(*args) -> datetime:
    """Aware local datetime, e.g. local_time(2025, 3, 5, 9, 0)."""
    return datetime(*args).astimezone()


class FakeClock:
    """Callable clock returning a fixed time until advanced."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.current = self.current + timedelta(seconds=seconds, **kwargs)
        return self.current

    def set(self, when: datetime) -> datetime:
        self.current = when
        return self.current


@pytest.fixture
def clock():
    # Wednesday
    return FakeClock(local_time(2025, 3, 5, 9, 0))


@pytest.fixture
def store(tmp_path):
    return TrackerStore(tmp_path / "tracker.db", write_retries=1)


@pytest.fixture
def state(store, clock):
    tracker = TrackerState(store, clock=clock)
    tracker.load()
    return tracker


@pytest.fixture
def settings(store):
    return SettingsManager(store)
