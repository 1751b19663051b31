from __future__ import annotations

from datetime import datetime, timedelta

from lighttrack.events import IdleReturn, IdleWarning, TrackingPaused
from lighttrack.idle import IdleDetector, IdleState

NOW = datetime(2024, 3, 4, 10, 0, 0)


def test_warning_then_pause():
    detector = IdleDetector()
    assert detector.check(0, NOW, 180) == []

    events = detector.check(150, NOW, 180)
    assert events == [IdleWarning(seconds_until_idle=30)]
    assert detector.state is IdleState.WARNED

    events = detector.check(180, NOW + timedelta(seconds=30), 180)
    assert events == [TrackingPaused(reason="idle", idle_start_time=NOW - timedelta(seconds=150))]
    assert detector.is_paused

    assert detector.check(400, NOW + timedelta(seconds=250), 180) == []


def test_jump_straight_past_threshold_emits_warning_and_pause():
    events = IdleDetector().check(900, NOW, 180)
    assert [type(event) for event in events] == [IdleWarning, TrackingPaused]


def test_return_from_long_idle_prompts():
    detector = IdleDetector()
    detector.check(180, NOW, 180)
    events = detector.check(0, NOW + timedelta(minutes=10), 180)

    assert len(events) == 1
    assert isinstance(events[0], IdleReturn)
    period = events[0].idle_period
    assert period.start == NOW - timedelta(seconds=180)
    assert period.duration == 780
    assert detector.state is IdleState.ACTIVE
    assert detector.take_idle_period() == period
    assert detector.take_idle_period() is None


def test_short_idle_does_not_prompt():
    detector = IdleDetector()
    detector.check(60, NOW, 60)
    events = detector.check(1, NOW + timedelta(seconds=30), 60)
    assert events == []
    assert detector.last_idle_period.duration == 90


def test_activity_below_threshold_clears_warning():
    detector = IdleDetector()
    detector.check(160, NOW, 180)
    assert detector.state is IdleState.WARNED
    assert detector.check(2, NOW, 180) == []
    assert detector.state is IdleState.ACTIVE


def test_idle_time_excluded_after_resolution(tracker, probe, clock, sample):
    events = []
    tracker.bus.subscribe(events.append)
    probe.show("Code", "main.rs - demo - Editor")
    sample(120)
    assert tracker.consolidator.snapshot().duration == 600

    probe.idle_seconds = 180
    tracker.check_idle()
    assert tracker.idle.is_paused
    assert tracker.consolidator.snapshot() is None

    clock.advance(420)
    probe.idle_seconds = 0
    tracker.check_idle()
    assert not tracker.idle.is_paused

    kinds = [type(event) for event in events]
    assert IdleWarning in kinds and TrackingPaused in kinds and IdleReturn in kinds

    result = tracker.resolve_idle(False)
    assert result.ok
    record = result.value
    assert record.duration == 600
    assert record.actual_duration == 600
    assert len(record.idle_periods) == 1
    assert record.idle_periods[0].duration == 600
    assert record.idle_periods[0].excluded is True

    stored = tracker.store.find_by_id(record.id)
    assert stored.idle_periods == record.idle_periods


def test_idle_time_counted_as_work(tracker, probe, clock, sample):
    probe.show("Code", "main.rs - demo - Editor")
    sample(24)
    probe.idle_seconds = 180
    tracker.check_idle()
    clock.advance(420)
    probe.idle_seconds = 0
    tracker.check_idle()

    result = tracker.resolve_idle(True)
    assert result.value.duration == 120 + 600
    assert result.value.idle_periods == []


def test_resolve_without_idle_period_is_a_no_op(tracker):
    result = tracker.resolve_idle(False)
    assert result.ok is True
    assert result.value is None
    assert result.reason


def test_sampling_resumes_from_return_time(tracker, probe, clock, sample):
    probe.show("Code", "main.rs - demo - Editor")
    sample(24)
    probe.idle_seconds = 180
    tracker.check_idle()
    clock.advance(420)
    probe.idle_seconds = 0
    tracker.check_idle()

    sample(1)
    live = tracker.consolidator.snapshot()
    assert live.duration == 125


def test_idle_marker_is_saved_even_right_after_a_manual_save(tracker, probe, clock, sample):
    probe.show("Code", "main.rs - demo - Editor")
    sample(120)
    assert tracker.consolidate_now().ok

    probe.idle_seconds = 180
    tracker.check_idle()
    clock.advance(420)
    probe.idle_seconds = 0
    tracker.check_idle()

    result = tracker.resolve_idle(False)
    assert result.value is not None
    assert result.value.idle_periods[0].excluded is True
    assert tracker.store.find_by_id(result.value.id).idle_start_time is not None
