from __future__ import annotations

from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Optional

import pytest

from lighttrack.errors import ProbeTransientError, ProbeUnavailableError
from lighttrack.models import Observation
from lighttrack.storage import ActivityStore
from lighttrack.tracker import ActivityTracker

START = datetime(2024, 3, 4, 9, 0, 0)


class FakeClock:
    """Manually advanced wall and monotonic clock."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start
        self._monotonic = 1000.0

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self._monotonic

    def local_date(self, timestamp: datetime) -> date:
        return timestamp.date()

    def advance(self, seconds: float) -> datetime:
        self.current += timedelta(seconds=seconds)
        self._monotonic += seconds
        return self.current

    def set(self, moment: datetime) -> datetime:
        self._monotonic += max(0.0, (moment - self.current).total_seconds())
        self.current = moment
        return self.current


class ScriptedProbe:
    """Returns whatever observation and idle counter the test sets."""

    def __init__(self) -> None:
        self.observation: Optional[Observation] = None
        self.idle_seconds = 0
        self.transient_failures = 0
        self.unavailable = False
        self.calls = 0

    def show(self, app_name: str, window_title: str, url: Optional[str] = None) -> None:
        self.observation = Observation(app_name=app_name, window_title=window_title, url=url)

    def active_window(self) -> Optional[Observation]:
        self.calls += 1
        if self.unavailable:
            raise ProbeUnavailableError("not supported here")
        if self.transient_failures:
            self.transient_failures -= 1
            raise ProbeTransientError("window went away")
        return self.observation

    def system_idle_seconds(self) -> int:
        return self.idle_seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def probe() -> ScriptedProbe:
    return ScriptedProbe()


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "lighttrack.sqlite3"


@pytest.fixture()
def store(db_path: Path):
    activity_store = ActivityStore(db_path)
    yield activity_store
    activity_store.close()


@pytest.fixture()
def tracker(store: ActivityStore, probe: ScriptedProbe, clock: FakeClock):
    activity_tracker = ActivityTracker(store, probe, clock=clock)
    activity_tracker.start(background=False)
    yield activity_tracker
    activity_tracker.stop()


@pytest.fixture()
def sample(tracker: ActivityTracker, clock: FakeClock):
    """Advance the clock and take ``count`` samples ``every`` seconds apart."""

    def _sample(count: int = 1, every: float = 5.0) -> None:
        for _ in range(count):
            clock.advance(every)
            tracker.sampler.tick()

    return _sample
