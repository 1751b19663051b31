from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from lighttrack.classifier import Classifier
from lighttrack.consolidator import Consolidator, activity_checksum
from lighttrack.errors import StoreError
from lighttrack.models import ActivityDescriptor, ActivityRecord, IdlePeriod

START = datetime(2024, 3, 4, 9, 0, 0)


@pytest.fixture()
def consolidator(store, clock):
    return Consolidator(
        store,
        Classifier(),
        clock,
        settings=store.settings,
        mapping_tables=store.mapping_tables,
    )


def code(title="main.py - billing - Visual Studio Code", project="billing"):
    return ActivityDescriptor(app="Code", title=title, project=project, tags=["development"])


def browser(title="Dashboard", url="https://example.com", project="General"):
    return ActivityDescriptor(app="Chrome", title=title, project=project, url=url)


def test_checksum_ignores_seconds_below_ten():
    record = ActivityRecord.start(code(), START)
    record.duration = 61
    first = activity_checksum(record)
    record.duration = 69
    assert activity_checksum(record) == first
    record.duration = 70
    assert activity_checksum(record) != first


def test_duplicate_save_is_suppressed(consolidator, store, clock):
    consolidator.record_sample(code(), clock.advance(60), 60)
    assert consolidator.save_current() is True
    assert consolidator.save_current() is False
    assert len(store.list_activities()) == 1


def test_short_records_are_not_saved(consolidator, store, clock):
    consolidator.record_sample(code(), clock.advance(30), 30)
    assert consolidator.save_current() is False
    consolidator.flush()
    assert store.list_activities() == []
    assert consolidator.current is None


def test_first_sample_is_back_dated(consolidator, clock):
    record = consolidator.record_sample(code(), clock.advance(40), 40)
    assert record.start_time == START
    assert record.duration == 40
    assert record.actual_duration == 40


def test_back_dating_stops_at_start_of_day(consolidator, clock):
    clock.set(datetime(2024, 3, 5, 0, 0, 20))
    record = consolidator.record_sample(code(), clock.now(), 300)
    assert record.start_time == datetime(2024, 3, 5, 0, 0, 0)
    assert record.duration == 20


def test_switch_credits_outgoing_record_only(consolidator, store, clock):
    consolidator.record_sample(code(), clock.advance(60), 60)
    new = consolidator.record_sample(browser(), clock.advance(10), 10)

    saved = store.list_activities()
    assert [record.duration for record in saved] == [70]
    assert new.duration == 0
    assert new.start_time == clock.now()


def test_switch_back_resumes_stored_record(consolidator, store, clock):
    first = consolidator.record_sample(code(), clock.advance(60), 60)
    consolidator.record_sample(browser(), clock.advance(5), 5)
    resumed = consolidator.record_sample(code(title="other.py - billing - Visual Studio Code"), clock.advance(5), 5)

    assert resumed.id == first.id
    assert resumed.duration == 65
    assert resumed.title == "other.py - billing - Visual Studio Code"


def test_failed_write_stays_pending_and_is_retried(consolidator, store, clock, monkeypatch):
    def failing_upsert(record):
        raise StoreError("disk full")

    consolidator.record_sample(code(), clock.advance(90), 90)
    monkeypatch.setattr(store, "upsert", failing_upsert)
    assert consolidator.save_current() is False
    assert consolidator.pending_count() == 1

    monkeypatch.undo()
    consolidator.flush()
    assert consolidator.pending_count() == 0
    assert [record.duration for record in store.list_activities()] == [90]


def test_pending_record_is_resumed_while_store_fails(consolidator, store, clock, monkeypatch):
    def failing_upsert(record):
        raise StoreError("disk full")

    first = consolidator.record_sample(code(), clock.advance(90), 90)
    monkeypatch.setattr(store, "upsert", failing_upsert)
    consolidator.flush()
    assert consolidator.current is None

    resumed = consolidator.record_sample(code(), clock.advance(5), 5)
    assert resumed.id == first.id


def test_idle_start_marks_and_closes_live_record(consolidator, store, clock):
    consolidator.record_sample(code(), clock.advance(120), 120)
    idle_start = clock.now() - timedelta(seconds=30)
    consolidator.on_idle_start(idle_start)

    assert consolidator.current is None
    stored = store.list_activities()[0]
    assert stored.is_idle is True
    assert stored.idle_start_time == idle_start


def test_idle_resolution_counts_time_as_work(consolidator, store, clock):
    consolidator.record_sample(code(), clock.advance(120), 120)
    idle_start = clock.now()
    consolidator.on_idle_start(idle_start)

    period = IdlePeriod(start=idle_start, end=idle_start + timedelta(minutes=5), duration=300)
    updated = consolidator.apply_idle_resolution(period, was_working=True)
    assert updated.duration == 420
    assert updated.actual_duration == 420
    assert updated.idle_periods == []


def test_idle_resolution_without_matching_record(consolidator):
    period = IdlePeriod(start=START, end=START + timedelta(minutes=5), duration=300)
    assert consolidator.apply_idle_resolution(period, was_working=False) is None


def test_manual_activity(consolidator, store):
    start = datetime(2024, 3, 1, 14, 0, 0)
    record = consolidator.create_manual(
        ActivityDescriptor(app="Manual", title="Workshop", project=""), start, start + timedelta(minutes=30)
    )
    assert record.is_manual is True
    assert record.duration == 1800
    assert record.project == "General"
    assert store.find_by_id(record.id).date == start.date()


@pytest.mark.parametrize("minutes", [0, -5])
def test_manual_activity_needs_positive_span(consolidator, minutes):
    start = datetime(2024, 3, 1, 14, 0, 0)
    with pytest.raises(ValueError):
        consolidator.create_manual(code(), start, start + timedelta(minutes=minutes))


def test_manual_activity_needs_minimum_duration(consolidator):
    start = datetime(2024, 3, 1, 14, 0, 0)
    with pytest.raises(ValueError):
        consolidator.create_manual(code(), start, start + timedelta(seconds=30))


def test_browser_enrichment_adds_tickets_and_project(consolidator, store, clock):
    store.set_mapping("jira", "ABC", "Alpha")
    consolidator.record_sample(browser(), clock.advance(10), 10)

    assert consolidator.enrich_browser("https://jira.example.com/browse/ABC-9", "ABC-9 Fix login", "Chrome") is True
    live = consolidator.snapshot()
    assert live.tickets == ["ABC-9"]
    assert live.project == "Alpha"


def test_enrichment_keeps_explicit_project(consolidator, store, clock):
    store.set_mapping("jira", "ABC", "Alpha")
    consolidator.record_sample(code(), clock.advance(10), 10)
    consolidator.enrich_browser("https://jira.example.com/browse/ABC-9", "ABC-9 Fix login", "Chrome")
    assert consolidator.snapshot().project == "billing"


def test_enrichment_does_not_create_second_record_for_day(consolidator, store, clock):
    existing = ActivityRecord.start(browser(project="Alpha"), START)
    existing.duration = 300
    store.upsert(existing)
    store.set_mapping("jira", "ABC", "Alpha")

    consolidator.record_sample(browser(), clock.advance(10), 10)
    consolidator.enrich_browser("https://jira.example.com/browse/ABC-9", "ABC-9", "Chrome")
    assert consolidator.snapshot().project == "General"


def test_page_context_enrichment(consolidator, store, clock):
    store.set_mapping("jira", "ABC", "Alpha")
    store.set_mapping("url", "acme/api", "API")
    consolidator.record_sample(browser(), clock.advance(10), 10)

    assert consolidator.enrich_page_context("jira", {"issueKey": "abc-7", "projectKey": "ABC"}) is True
    assert consolidator.snapshot().tickets == ["ABC-7"]
    assert consolidator.snapshot().project == "Alpha"


def test_github_page_context_maps_repository(consolidator, store, clock):
    store.set_mapping("url", "acme/api", "API")
    consolidator.record_sample(browser(), clock.advance(10), 10)
    assert consolidator.enrich_page_context("github", {"repo": "api", "owner": "acme"}) is True
    assert consolidator.snapshot().project == "API"


def test_enrichment_without_live_record(consolidator):
    assert consolidator.enrich_browser("https://a", "A") is False
    assert consolidator.enrich_page_context("jira", {"issueKey": "ABC-1"}) is False
    assert consolidator.enrich_page_context("unknown", {}) is False


def test_replace_and_discard_live(consolidator, clock):
    live = consolidator.record_sample(code(), clock.advance(10), 10)
    edited = consolidator.snapshot()
    edited.project = "payroll"
    consolidator.replace_live(edited)
    assert consolidator.current.project == "payroll"

    consolidator.discard_live(live.id)
    assert consolidator.current is None
