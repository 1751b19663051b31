from __future__ import annotations

import sqlite3
from datetime import date, datetime, timedelta

import pytest
from cryptography.fernet import Fernet

from lighttrack.config import TrackerSettings
from lighttrack.models import ActivityDescriptor, ActivityFilter, ActivityRecord, FocusSession, IdlePeriod
from lighttrack.security import StoreCipher
from lighttrack.storage import ActivityStore


def make_record(app="Code", title="main.py", project="billing", start=datetime(2024, 3, 4, 9, 0), duration=120, **extra):
    record = ActivityRecord.start(ActivityDescriptor(app=app, title=title, project=project), start)
    record.duration = duration
    record.actual_duration = duration
    record.end_time = start + timedelta(seconds=duration)
    for name, value in extra.items():
        setattr(record, name, value)
    return record


def test_defaults_are_seeded(store):
    assert store.settings() == TrackerSettings()
    assert store.get("customTags") == ["development", "meeting", "review", "planning", "research"]
    assert [project["name"] for project in store.get("projects")] == ["General", "Internal IT"]
    assert store.get("version") == "3.0.0"
    assert store.list_activities() == []


def test_key_value_round_trip(store):
    store.set("customTags", ["alpha"])
    assert store.get("customTags") == ["alpha"]
    assert store.delete("customTags") is True
    assert store.get("customTags", "missing") == "missing"


def test_upsert_inserts_newest_first_and_replaces_in_place(store):
    first = store.upsert(make_record(title="first.py"))
    second = store.upsert(make_record(title="second.py", app="Chrome", project="General"))
    assert [record.id for record in store.list_activities()] == [second.id, first.id]
    assert first.created_at is not None

    first.duration = 300
    store.upsert(first)
    assert store.find_by_id(first.id).duration == 300
    assert [record.id for record in store.list_activities()] == [second.id, first.id]


def test_filters(store):
    store.upsert(make_record(title="a", start=datetime(2024, 3, 1, 9, 0), tags=["development"]))
    store.upsert(make_record(title="b", project="payroll", start=datetime(2024, 3, 2, 9, 0)))
    store.upsert(make_record(title="c", app="Chrome", start=datetime(2024, 3, 3, 9, 0), tags=["jira"]))

    def titles(**kwargs):
        return sorted(record.title for record in store.list_activities(ActivityFilter(**kwargs)))

    assert titles(date=date(2024, 3, 2)) == ["b"]
    assert titles(start_date=date(2024, 3, 2)) == ["b", "c"]
    assert titles(end_date=date(2024, 3, 2)) == ["a", "b"]
    assert titles(project="billing") == ["a", "c"]
    assert titles(app="Chrome") == ["c"]
    assert titles(tags=["jira", "development"]) == ["a", "c"]
    assert len(store.list_activities(ActivityFilter(limit=2))) == 2


def test_find_by_app_project_date(store):
    record = store.upsert(make_record())
    assert store.find_by_app_project_date("Code", "billing", date(2024, 3, 4)).id == record.id
    assert store.find_by_app_project_date("Code", "billing", date(2024, 3, 5)) is None


def test_update_activity_patch(store):
    record = store.upsert(make_record())
    updated = store.update_activity(
        record.id, {"project": "payroll", "start_time": "2024-03-02T08:00:00", "actual_duration": 999}
    )
    assert updated.project == "payroll"
    assert updated.date == date(2024, 3, 2)
    assert updated.actual_duration == updated.duration
    assert store.find_by_id(record.id).project == "payroll"
    assert store.update_activity("missing", {"project": "x"}) is None


def test_update_activity_rejects_identity_fields(store):
    record = store.upsert(make_record())
    with pytest.raises(ValueError):
        store.update_activity(record.id, {"id": "other"})


def test_update_activity_idle_periods(store):
    record = store.upsert(make_record())
    period = {"start": "2024-03-04T09:05:00", "end": "2024-03-04T09:15:00", "duration": 600, "excluded": True}
    updated = store.update_activity(record.id, {"idle_periods": [period]})
    assert updated.idle_periods == [IdlePeriod.from_dict(period)]


def test_remove(store):
    record = store.upsert(make_record())
    assert store.remove(record.id) is True
    assert store.remove(record.id) is False
    assert store.list_activities() == []


def test_consolidation_pass(store):
    base = datetime(2024, 3, 4, 9, 0)
    records = [
        make_record(title="report", start=base, duration=60),
        make_record(title="report", start=base + timedelta(seconds=120), duration=60),
        make_record(title="report", start=base + timedelta(hours=2), duration=90),
        make_record(title="manual", start=base, duration=600, is_manual=True),
        make_record(title="manual", start=base + timedelta(seconds=30), duration=600, is_manual=True),
        make_record(title="blip", start=base, duration=10),
    ]
    store.set("activities", [record.to_dict() for record in records])

    assert store.consolidate() == 2
    remaining = store.list_activities()
    assert [(record.title, record.duration) for record in remaining] == [
        ("report", 120),
        ("report", 90),
        ("manual", 600),
        ("manual", 600),
    ]


def test_structural_duplicates_are_removed(store):
    created = datetime(2024, 3, 4, 9, 30)
    first = make_record(title="dup", created_at=created)
    copy = make_record(title="dup", created_at=created, start=datetime(2024, 3, 4, 15, 0))
    store.set("activities", [first.to_dict(), copy.to_dict()])
    assert store.consolidate() == 1
    assert [record.id for record in store.list_activities()] == [first.id]


def test_consolidation_respects_max_activities(store):
    store.update_settings({"max_activities": 2, "consolidate_activities": False})
    records = [make_record(title=f"t{index}", start=datetime(2024, 3, 4, 9 + index, 0)) for index in range(3)]
    store.set("activities", [record.to_dict() for record in records])
    assert store.consolidate() == 1
    assert [record.title for record in store.list_activities()] == ["t0", "t1"]


def test_settings_accept_camel_case_and_ignore_unknown_keys(store):
    settings = store.update_settings({"idleThreshold": 300, "consolidationMode": "bogus", "colour": "blue"})
    assert settings.idle_threshold == 300
    assert settings.consolidation_mode == "smart"
    assert "colour" not in store.get("settings")


def test_mappings(store):
    store.set_mapping("jira", "ABC", "Alpha")
    store.set_mapping("project", "invoice", {"project": "Finance", "sap_code": "S-1"})
    tables = store.mapping_tables()
    assert tables.jira == {"ABC": "Alpha"}
    assert tables.project == {"invoice": {"project": "Finance", "sap_code": "S-1"}}

    assert store.remove_mapping("jira", "ABC") is True
    assert store.remove_mapping("jira", "ABC") is False


@pytest.mark.parametrize(
    "kind, pattern, value",
    [("calendar", "x", "P"), ("url", "  ", "P"), ("url", "github.com", {}), ("url", "github.com", "")],
)
def test_invalid_mappings_are_rejected(store, kind, pattern, value):
    with pytest.raises(ValueError):
        store.set_mapping(kind, pattern, value)


def test_cleanup_only_when_enabled(store):
    now = datetime(2024, 6, 1, 12, 0)
    store.upsert(make_record(title="old", start=now - timedelta(days=120)))
    store.upsert(make_record(title="recent", start=now - timedelta(days=3)))
    assert store.cleanup_expired(now) == 0

    store.update_settings({"autoCleanupEnabled": True, "dataRetentionDays": 30})
    assert store.cleanup_expired(now) == 1
    assert [record.title for record in store.list_activities()] == ["recent"]


def test_activities_survive_reopen(db_path):
    first = ActivityStore(db_path)
    record = first.upsert(make_record())
    first.close()

    second = ActivityStore(db_path)
    try:
        assert second.find_by_id(record.id) == record
    finally:
        second.close()


def test_encrypted_values_are_not_readable_on_disk(db_path):
    key = Fernet.generate_key()
    encrypted = ActivityStore(db_path, cipher=StoreCipher(key))
    record = encrypted.upsert(make_record(title="secret-title"))
    encrypted.close()

    with sqlite3.connect(db_path) as conn:
        raw = conn.execute("SELECT value FROM kv_store WHERE key = 'activities'").fetchone()[0]
    assert b"secret-title" not in bytes(raw)

    reopened = ActivityStore(db_path, cipher=StoreCipher(key))
    try:
        assert reopened.find_by_id(record.id).title == "secret-title"
    finally:
        reopened.close()


def test_undecryptable_file_is_quarantined(db_path):
    first = ActivityStore(db_path, cipher=StoreCipher(Fernet.generate_key()))
    first.upsert(make_record())
    first.close()

    second = ActivityStore(db_path, cipher=StoreCipher(Fernet.generate_key()))
    try:
        assert second.list_activities() == []
        assert second.settings() == TrackerSettings()
        second.upsert(make_record(title="fresh"))
        assert [record.title for record in second.list_activities()] == ["fresh"]
    finally:
        second.close()
    assert list(db_path.parent.glob(f"{db_path.name}.corrupt-*"))


def test_unreadable_database_is_quarantined(db_path):
    db_path.write_bytes(b"this is not an sqlite database" * 200)
    store = ActivityStore(db_path)
    try:
        assert store.list_activities() == []
        assert store.settings() == TrackerSettings()
    finally:
        store.close()
    assert list(db_path.parent.glob(f"{db_path.name}.corrupt-*"))


def test_cache_is_invalidated_by_writes(db_path):
    ticks = iter(range(1000))
    store = ActivityStore(db_path, cache_ttl=60.0, monotonic=lambda: float(next(ticks)))
    try:
        assert store.list_activities() == []
        store.upsert(make_record())
        assert len(store.list_activities()) == 1
    finally:
        store.close()


def test_focus_sessions_round_trip(store):
    session = FocusSession(id="f1", date=datetime(2024, 3, 4, 9), project="billing", duration=600, distractions=1, quality=90)
    store.add_focus_session(session, retention_days=30, now=datetime(2024, 3, 4, 10))
    assert store.focus_sessions() == [session]


def test_custom_tags(store):
    tags = store.add_tag("  Customer-Call ")
    assert "customer-call" in tags["custom"]
    assert tags["system"][0] == "meeting"
    assert tags["all"].count("development") == 1

    store.add_tag("customer-call")
    assert store.tags()["custom"].count("customer-call") == 1
    assert store.remove_tag("CUSTOMER-CALL") is True
    assert store.remove_tag("customer-call") is False
    with pytest.raises(ValueError):
        store.add_tag("   ")


def test_activity_tags_and_tag_queries(store):
    first = store.upsert(make_record(title="a", tags=["jira", "review"]))
    store.upsert(make_record(title="b", app="Chrome", tags=["jira"]))
    store.upsert(make_record(title="c", app="Slack", tags=[]))

    assert store.used_tags() == ["jira", "review"]
    assert sorted(record.title for record in store.activities_by_tags(["jira", "review"])) == ["a", "b"]
    assert [record.title for record in store.activities_by_tags(["jira", "review"], match_all=True)] == ["a"]
    assert len(store.activities_by_tags([])) == 3

    updated = store.update_activity_tags(first.id, ["planning", "planning", " ", "jira"])
    assert updated.tags == ["planning", "jira"]
    assert store.find_by_id(first.id).tags == ["planning", "jira"]
    assert store.update_activity_tags("missing", ["x"]) is None


def test_projects_catalog(store):
    added = store.add_project(" Apollo ", sap_code=" S-9 ")
    assert added["name"] == "Apollo"
    assert added["sap_code"] == "S-9"
    assert added["is_system"] is False
    assert [project["name"] for project in store.projects()["custom"]] == ["Apollo"]
    assert store.project_by_id(added["id"]) == added

    with pytest.raises(ValueError):
        store.add_project("apollo")
    with pytest.raises(ValueError):
        store.add_project("")

    renamed = store.update_project(added["id"], {"name": "Artemis", "wbs_element": "W-1"})
    assert (renamed["name"], renamed["sap_code"], renamed["wbs_element"]) == ("Artemis", "S-9", "W-1")
    assert store.update_project("missing", {"name": "x"}) is None
    with pytest.raises(ValueError):
        store.update_project(added["id"], {"colour": "red"})

    assert store.remove_project(added["id"]) is True
    assert store.remove_project(added["id"]) is False


def test_system_projects_are_protected(store):
    updated = store.update_project("general", {"sap_code": "G-1"})
    assert updated["sap_code"] == "G-1"
    with pytest.raises(ValueError):
        store.update_project("general", {"name": "Other"})
    with pytest.raises(ValueError):
        store.remove_project("general")
    with pytest.raises(ValueError):
        store.update_project("internal-it", {"name": "General"})


def test_activity_types_catalog(store):
    added = store.add_activity_type("Training")
    assert added in store.activity_types()["custom"]
    with pytest.raises(ValueError):
        store.add_activity_type("meeting")
    with pytest.raises(ValueError):
        store.remove_activity_type("meeting")
    assert store.remove_activity_type(added["id"]) is True
    assert store.remove_activity_type(added["id"]) is False


def test_stats_and_export(store):
    today = date(2024, 3, 10)
    store.upsert(make_record(title="today", start=datetime(2024, 3, 10, 9, 0), duration=300))
    store.upsert(make_record(title="this week", app="Chrome", start=datetime(2024, 3, 5, 9, 0), duration=200))
    store.upsert(make_record(title="last month", app="Slack", start=datetime(2024, 2, 1, 9, 0), duration=100))

    assert store.stats(today) == {
        "total_activities": 3,
        "today_activities": 1,
        "week_activities": 2,
        "total_time": 600,
        "today_time": 300,
        "week_time": 500,
    }

    store.set_mapping("jira", "ABC", "Alpha")
    exported = store.export_data(datetime(2024, 3, 10, 12, 0))
    assert len(exported["activities"]) == 3
    assert exported["mappings"]["jira"] == {"ABC": "Alpha"}
    assert exported["stats"]["total_time"] == 600
    assert exported["export_date"] == "2024-03-10T12:00:00"
    assert exported["version"] == "3.0.0"
    assert [project["name"] for project in exported["projects"]] == ["General", "Internal IT"]
