from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from lighttrack.focus import FocusTracker, focus_quality
from lighttrack.models import ActivityDescriptor

START = datetime(2024, 3, 4, 9, 0, 0)


def work(project="billing", app="Code"):
    return ActivityDescriptor(app=app, title="work", project=project)


@pytest.fixture()
def focus(store):
    return FocusTracker(store, store.settings)


@pytest.mark.parametrize(
    "duration, distractions, expected",
    [(600, 0, 100), (600, 2, 80), (4000, 0, 110), (4000, 1, 100), (600, 20, 0)],
)
def test_focus_quality(duration, distractions, expected):
    assert focus_quality(duration, distractions) == expected


def test_project_change_saves_session(focus, store):
    focus.update(work(), START)
    focus.update(work(), START + timedelta(seconds=400))
    focus.update(work(project="payroll"), START + timedelta(seconds=405))

    sessions = store.focus_sessions()
    assert len(sessions) == 1
    assert sessions[0].project == "billing"
    assert sessions[0].duration == 400
    assert sessions[0].quality == 100
    assert focus.current()["project"] == "payroll"


def test_distraction_apps_do_not_end_session(focus, store):
    focus.update(work(), START)
    focus.update(work(project="General", app="Slack"), START + timedelta(seconds=60))
    focus.update(work(), START + timedelta(seconds=120))

    current = focus.current()
    assert current["project"] == "billing"
    assert current["distractions"] == 1
    assert current["quality"] == 90
    assert store.focus_sessions() == []


def test_short_sessions_are_discarded(focus, store):
    focus.update(work(), START)
    focus.update(work(project="payroll"), START + timedelta(seconds=100))
    assert store.focus_sessions() == []


def test_close_saves_open_session(focus, store):
    focus.update(work(), START)
    focus.update(work(), START + timedelta(minutes=10))
    saved = focus.close(START + timedelta(minutes=10))
    assert saved is not None
    assert focus.has_session is False
    assert len(store.focus_sessions()) == 1


def test_disabled_tracking_opens_nothing(focus, store):
    store.update_settings({"track_focus_sessions": False})
    focus.update(work(), START)
    assert focus.current() is None


def test_old_sessions_are_pruned(focus, store):
    focus.update(work(), START - timedelta(days=45))
    focus.update(work(), START - timedelta(days=45) + timedelta(minutes=10))
    focus.close(START - timedelta(days=45) + timedelta(minutes=10))

    focus.update(work(), START)
    focus.update(work(), START + timedelta(minutes=10))
    focus.close(START + timedelta(minutes=10))

    sessions = store.focus_sessions()
    assert [session.date for session in sessions] == [START]


def test_stats(focus):
    focus.update(work(), START)
    focus.update(work(), START + timedelta(minutes=10))
    focus.close(START + timedelta(minutes=10))

    stats = focus.stats(START + timedelta(hours=1))
    assert stats["total_sessions"] == 1
    assert stats["today_sessions"] == 1
    assert stats["total_focus_time"] == 600
    assert stats["average_quality"] == 100
