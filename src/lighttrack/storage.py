"""Persistent key/value store and activity queries."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from dataclasses import fields
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional

from .config import ACTIVITY_CACHE_TTL_SECONDS, DATA_VERSION, TrackerSettings
from .db import delete_value, open_database, read_value, write_value
from .errors import StoreCorruptionError, StoreError
from .models import (
    ActivityFilter,
    ActivityRecord,
    FocusSession,
    IdlePeriod,
    MappingTables,
    MappingTarget,
    add_unique,
    new_id,
)
from .security import StoreCipher

logger = logging.getLogger(__name__)

MAPPING_KEYS: dict[str, str] = {
    "project": "projectMappings",
    "url": "urlProjectMappings",
    "jira": "jiraProjectMappings",
    "meeting": "meetingMappings",
}

SYSTEM_TAGS = ("meeting", "development", "feature", "bugfix", "break", "jira", "github")

DEFAULT_VALUES: dict[str, Any] = {
    "activities": [],
    "settings": TrackerSettings().to_mapping(),
    "focusSessions": [],
    "projectMappings": {},
    "urlProjectMappings": {},
    "jiraProjectMappings": {},
    "meetingMappings": {},
    "customTags": ["development", "meeting", "review", "planning", "research"],
    "projects": [
        {"id": "general", "name": "General", "sap_code": "", "cost_center": "", "wbs_element": "", "is_system": True},
        {"id": "internal-it", "name": "Internal IT", "sap_code": "", "cost_center": "", "wbs_element": "", "is_system": True},
    ],
    "activityTypes": [
        {"id": "development", "name": "Development", "is_system": True},
        {"id": "meeting", "name": "Meeting", "is_system": True},
        {"id": "code-review", "name": "Code Review", "is_system": True},
        {"id": "planning", "name": "Planning", "is_system": True},
        {"id": "research", "name": "Research", "is_system": True},
        {"id": "documentation", "name": "Documentation", "is_system": True},
        {"id": "support", "name": "Support", "is_system": True},
        {"id": "break", "name": "Break", "is_system": True},
    ],
    "version": DATA_VERSION,
}

_PATCHABLE_FIELDS = {
    f.name for f in fields(ActivityRecord) if f.name not in {"id", "date", "created_at"}
}
_DATETIME_FIELDS = {"start_time", "end_time", "idle_start_time"}


class ActivityStore:
    """Key/value persistence over a single SQLite file.

    Writes are serialized by an internal lock; each key is written in one
    atomic statement. The activities list is cached for a short TTL and every
    write invalidates the cache.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        cipher: Optional[StoreCipher] = None,
        cache_ttl: float = ACTIVITY_CACHE_TTL_SECONDS,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.db_path = Path(db_path)
        self._cipher = cipher
        self._cache_ttl = cache_ttl
        self._monotonic = monotonic
        self._lock = threading.RLock()
        self._activity_cache: Optional[list[dict[str, Any]]] = None
        self._cache_time = 0.0
        self._conn = self._open()
        self._seed_defaults()

    # -- raw key/value ----------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            try:
                raw = read_value(self._conn, key)
                if raw is None:
                    return default
                return self._decode(raw)
            except StoreCorruptionError:
                self._quarantine()
                return DEFAULT_VALUES.get(key, default)
            except sqlite3.DatabaseError as exc:
                raise StoreError(f"Failed to read {key!r}: {exc}") from exc

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            try:
                write_value(self._conn, key, self._encode(value))
            except sqlite3.DatabaseError as exc:
                raise StoreError(f"Failed to write {key!r}: {exc}") from exc
            finally:
                if key == "activities":
                    self._invalidate_cache()

    def delete(self, key: str) -> bool:
        with self._lock:
            try:
                return delete_value(self._conn, key)
            except sqlite3.DatabaseError as exc:
                raise StoreError(f"Failed to delete {key!r}: {exc}") from exc
            finally:
                if key == "activities":
                    self._invalidate_cache()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # -- activities -------------------------------------------------------

    def list_activities(self, activity_filter: Optional[ActivityFilter] = None) -> list[ActivityRecord]:
        records = [
            record
            for record in self._records(self._activity_dicts())
            if activity_filter is None or activity_filter.matches(record)
        ]
        if activity_filter is not None and activity_filter.limit:
            records = records[: activity_filter.limit]
        return records

    def find_by_id(self, activity_id: str) -> Optional[ActivityRecord]:
        for record in self._records(self._activity_dicts()):
            if record.id == str(activity_id):
                return record
        return None

    def find_by_app_project_date(self, app: str, project: str, day: date) -> Optional[ActivityRecord]:
        for record in self._records(self._activity_dicts()):
            if record.app == app and record.project == project and record.date == day:
                return record
        return None

    def upsert(self, record: ActivityRecord) -> ActivityRecord:
        """Replace the record with the same id, or insert it as the newest."""
        with self._lock:
            items = list(self._activity_dicts())
            for index, item in enumerate(items):
                if str(item.get("id")) == record.id:
                    items[index] = record.to_dict()
                    self.set("activities", items)
                    return record

            if record.created_at is None:
                record.created_at = datetime.now()
            items.insert(0, record.to_dict())
            cleaned, _ = self._consolidate(self._records(items))
            self.set("activities", [item.to_dict() for item in cleaned])
            return record

    def update_activity(self, activity_id: str, patch: Mapping[str, Any]) -> Optional[ActivityRecord]:
        with self._lock:
            items = list(self._activity_dicts())
            for index, item in enumerate(items):
                if str(item.get("id")) != str(activity_id):
                    continue
                record = ActivityRecord.from_dict(item)
                _apply_patch(record, patch)
                items[index] = record.to_dict()
                self.set("activities", items)
                return record
        return None

    def remove(self, activity_id: str) -> bool:
        with self._lock:
            items = self._activity_dicts()
            remaining = [item for item in items if str(item.get("id")) != str(activity_id)]
            if len(remaining) == len(items):
                logger.warning("Activity not found for deletion: %s", activity_id)
                return False
            self.set("activities", remaining)
            return True

    def consolidate(self) -> int:
        """Run the consolidation pass over the stored activities."""
        with self._lock:
            records = self._records(self._activity_dicts())
            cleaned, removed = self._consolidate(records)
            if removed:
                self.set("activities", [record.to_dict() for record in cleaned])
                logger.info("Consolidation removed %d activities", removed)
            return removed

    def cleanup_expired(self, now: datetime) -> int:
        """Drop activities older than the retention period when cleanup is enabled."""
        settings = self.settings()
        if not settings.auto_cleanup_enabled:
            return 0
        cutoff = now - timedelta(days=settings.data_retention_days)
        with self._lock:
            records = self._records(self._activity_dicts())
            kept = [record for record in records if record.start_time > cutoff]
            removed = len(records) - len(kept)
            if removed:
                self.set("activities", [record.to_dict() for record in kept])
                logger.info("Auto-cleanup removed %d activities older than %d days", removed, settings.data_retention_days)
            return removed

    # -- settings, mappings, focus sessions -------------------------------

    def settings(self) -> TrackerSettings:
        return TrackerSettings.from_mapping(self.get("settings", {}))

    def update_settings(self, updates: Mapping[str, Any]) -> TrackerSettings:
        with self._lock:
            current = dict(self.get("settings", {}) or {})
            current.update(updates)
            settings = TrackerSettings.from_mapping(current)
            self.set("settings", settings.to_mapping())
            return settings

    def mapping_tables(self) -> MappingTables:
        return MappingTables(
            project=dict(self.get("projectMappings", {}) or {}),
            url=dict(self.get("urlProjectMappings", {}) or {}),
            jira=dict(self.get("jiraProjectMappings", {}) or {}),
            meeting=dict(self.get("meetingMappings", {}) or {}),
        )

    def set_mapping(self, kind: str, pattern: str, value: Any) -> dict[str, Any]:
        key = _mapping_key(kind)
        if not pattern or not pattern.strip():
            raise ValueError("pattern is required")
        if MappingTarget.from_value(value) is None:
            raise ValueError("mapping value must be a project name or an object with a project")
        with self._lock:
            mappings = dict(self.get(key, {}) or {})
            mappings[pattern] = value
            self.set(key, mappings)
        logger.info("Mapping added: %s %r -> %r", kind, pattern, value)
        return mappings

    def remove_mapping(self, kind: str, pattern: str) -> bool:
        key = _mapping_key(kind)
        with self._lock:
            mappings = dict(self.get(key, {}) or {})
            if pattern not in mappings:
                return False
            del mappings[pattern]
            self.set(key, mappings)
        logger.info("Mapping removed: %s %r", kind, pattern)
        return True

    def focus_sessions(self) -> list[FocusSession]:
        sessions = []
        for raw in self.get("focusSessions", []) or []:
            try:
                sessions.append(FocusSession.from_dict(raw))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed focus session: %r", raw)
        return sessions

    def add_focus_session(self, session: FocusSession, *, retention_days: int, now: datetime) -> None:
        cutoff = now - timedelta(days=retention_days)
        with self._lock:
            sessions = self.focus_sessions()
            sessions.append(session)
            kept = [item for item in sessions if item.date > cutoff]
            self.set("focusSessions", [item.to_dict() for item in kept])

    # -- tags, projects and activity types --------------------------------

    def tags(self) -> dict[str, list[str]]:
        custom = [str(tag) for tag in self.get("customTags", []) or []]
        combined = list(SYSTEM_TAGS)
        add_unique(combined, *custom)
        return {"system": list(SYSTEM_TAGS), "custom": custom, "all": combined}

    def add_tag(self, name: str) -> dict[str, list[str]]:
        tag = name.strip().lower()
        if not tag:
            raise ValueError("tag name is required")
        with self._lock:
            custom = list(self.get("customTags", []) or [])
            if tag not in custom:
                custom.append(tag)
                self.set("customTags", custom)
                logger.info("Custom tag added: %s", tag)
        return self.tags()

    def remove_tag(self, name: str) -> bool:
        tag = name.strip().lower()
        with self._lock:
            custom = list(self.get("customTags", []) or [])
            if tag not in custom:
                return False
            custom.remove(tag)
            self.set("customTags", custom)
        logger.info("Custom tag removed: %s", tag)
        return True

    def used_tags(self) -> list[str]:
        used: set[str] = set()
        for record in self._records(self._activity_dicts()):
            used.update(record.tags)
        return sorted(used)

    def update_activity_tags(self, activity_id: str, tags: Iterable[str]) -> Optional[ActivityRecord]:
        cleaned: list[str] = []
        add_unique(cleaned, *(str(tag).strip() for tag in tags))
        return self.update_activity(activity_id, {"tags": cleaned})

    def activities_by_tags(self, tags: Iterable[str], *, match_all: bool = False) -> list[ActivityRecord]:
        """Activities carrying any (or, with ``match_all``, every) tag; all activities for no tags."""
        return self.list_activities(ActivityFilter(tags=list(tags), match_all_tags=match_all))

    def projects(self) -> dict[str, list[dict[str, Any]]]:
        return _split_system(self.get("projects", []) or [])

    def project_by_id(self, project_id: str) -> Optional[dict[str, Any]]:
        return _find_entry(self.get("projects", []) or [], project_id)

    def add_project(
        self, name: str, *, sap_code: str = "", cost_center: str = "", wbs_element: str = ""
    ) -> dict[str, Any]:
        normalized = _entry_name(name, "project")
        with self._lock:
            projects = list(self.get("projects", []) or [])
            _reject_duplicate_name(projects, normalized, "project")
            project = {
                "id": new_id(),
                "name": normalized,
                "sap_code": sap_code.strip(),
                "cost_center": cost_center.strip(),
                "wbs_element": wbs_element.strip(),
                "is_system": False,
            }
            projects.append(project)
            self.set("projects", projects)
        logger.info("Custom project added: %s", normalized)
        return project

    def update_project(self, project_id: str, updates: Mapping[str, Any]) -> Optional[dict[str, Any]]:
        """Change a project's name or billing fields. System projects keep their name."""
        unknown = set(updates) - {"name", "sap_code", "cost_center", "wbs_element"}
        if unknown:
            raise ValueError(f"Project fields cannot be updated: {sorted(unknown)}")
        with self._lock:
            projects = list(self.get("projects", []) or [])
            project = _find_entry(projects, project_id)
            if project is None:
                return None
            updated = dict(project)
            name = updates.get("name")
            if name and name.strip() != project["name"]:
                if project.get("is_system"):
                    raise ValueError("Cannot rename system projects")
                updated["name"] = _entry_name(name, "project")
                _reject_duplicate_name(
                    [item for item in projects if item.get("id") != project_id], updated["name"], "project"
                )
            for field_name in ("sap_code", "cost_center", "wbs_element"):
                if updates.get(field_name) is not None:
                    updated[field_name] = str(updates[field_name]).strip()
            projects[projects.index(project)] = updated
            self.set("projects", projects)
        logger.info("Project updated: %s", updated["name"])
        return updated

    def remove_project(self, project_id: str) -> bool:
        with self._lock:
            projects = list(self.get("projects", []) or [])
            project = _find_entry(projects, project_id)
            if project is None:
                return False
            if project.get("is_system"):
                raise ValueError("Cannot remove system projects")
            projects.remove(project)
            self.set("projects", projects)
        logger.info("Custom project removed: %s", project["name"])
        return True

    def activity_types(self) -> dict[str, list[dict[str, Any]]]:
        return _split_system(self.get("activityTypes", []) or [])

    def add_activity_type(self, name: str) -> dict[str, Any]:
        normalized = _entry_name(name, "activity type")
        with self._lock:
            types = list(self.get("activityTypes", []) or [])
            _reject_duplicate_name(types, normalized, "activity type")
            activity_type = {"id": new_id(), "name": normalized, "is_system": False}
            types.append(activity_type)
            self.set("activityTypes", types)
        logger.info("Custom activity type added: %s", normalized)
        return activity_type

    def remove_activity_type(self, type_id: str) -> bool:
        with self._lock:
            types = list(self.get("activityTypes", []) or [])
            activity_type = _find_entry(types, type_id)
            if activity_type is None:
                return False
            if activity_type.get("is_system"):
                raise ValueError("Cannot remove system activity types")
            types.remove(activity_type)
            self.set("activityTypes", types)
        logger.info("Custom activity type removed: %s", activity_type["name"])
        return True

    # -- statistics and export --------------------------------------------

    def stats(self, today: date) -> dict[str, int]:
        """Counts and tracked seconds overall, for ``today`` and for the last seven days."""
        records = self._records(self._activity_dicts())
        week_start = today - timedelta(days=7)
        today_records = [record for record in records if record.date == today]
        week_records = [record for record in records if record.date >= week_start]
        return {
            "total_activities": len(records),
            "today_activities": len(today_records),
            "week_activities": len(week_records),
            "total_time": sum(record.duration for record in records),
            "today_time": sum(record.duration for record in today_records),
            "week_time": sum(record.duration for record in week_records),
        }

    def export_data(self, now: datetime) -> dict[str, Any]:
        tables = self.mapping_tables()
        return {
            "activities": [record.to_dict() for record in self.list_activities()],
            "settings": self.settings().to_mapping(),
            "stats": self.stats(now.date()),
            "mappings": {kind: getattr(tables, kind) for kind in MAPPING_KEYS},
            "tags": self.tags(),
            "projects": self.projects()["all"],
            "activity_types": self.activity_types()["all"],
            "export_date": now.isoformat(),
            "version": self.get("version", DATA_VERSION),
        }

    # -- internals --------------------------------------------------------

    def _open(self) -> sqlite3.Connection:
        try:
            conn = open_database(self.db_path, check_same_thread=False)
            conn.execute("SELECT COUNT(*) FROM kv_store").fetchone()
            return conn
        except sqlite3.OperationalError as exc:
            raise StoreError(f"Unable to open data file {self.db_path}: {exc}") from exc
        except sqlite3.DatabaseError:
            logger.error("Data file %s is not readable; quarantining", self.db_path)
            self._move_aside()
            return open_database(self.db_path, check_same_thread=False)

    def _seed_defaults(self) -> None:
        with self._lock:
            for key, value in DEFAULT_VALUES.items():
                if read_value(self._conn, key) is None:
                    self.set(key, value)

    def _quarantine(self) -> None:
        logger.error("Failed to decode data file %s; starting with fresh state", self.db_path)
        self._conn.close()
        self._move_aside()
        self._conn = open_database(self.db_path, check_same_thread=False)
        self._invalidate_cache()
        self._seed_defaults()

    def _move_aside(self) -> None:
        stamp = datetime.now().strftime("%Y%m%d%H%M%S")
        target = self.db_path.with_name(f"{self.db_path.name}.corrupt-{stamp}")
        try:
            self.db_path.replace(target)
        except OSError as exc:
            raise StoreError(f"Unable to quarantine {self.db_path}: {exc}") from exc
        for suffix in ("-wal", "-shm"):
            Path(f"{self.db_path}{suffix}").unlink(missing_ok=True)
        logger.warning("Corrupt data file moved to %s", target)

    def _encode(self, value: Any) -> bytes:
        data = json.dumps(value, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
        return self._cipher.encrypt(data) if self._cipher else data

    def _decode(self, raw: bytes) -> Any:
        data = self._cipher.decrypt(raw) if self._cipher else raw
        try:
            return json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StoreCorruptionError("Stored value is not valid JSON") from exc

    def _activity_dicts(self) -> list[dict[str, Any]]:
        with self._lock:
            now = self._monotonic()
            if self._activity_cache is not None and now - self._cache_time < self._cache_ttl:
                return self._activity_cache
            activities = self.get("activities", [])
            self._activity_cache = activities if isinstance(activities, list) else []
            self._cache_time = now
            return self._activity_cache

    def _invalidate_cache(self) -> None:
        self._activity_cache = None

    @staticmethod
    def _records(items: Iterable[Mapping[str, Any]]) -> list[ActivityRecord]:
        records = []
        for item in items:
            try:
                records.append(ActivityRecord.from_dict(item))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed activity: %r", item.get("id"))
        return records

    def _consolidate(self, records: list[ActivityRecord]) -> tuple[list[ActivityRecord], int]:
        settings = self.settings()
        original = len(records)

        seen: set[tuple[Optional[str], str]] = set()
        unique = []
        for record in records:
            key = (record.created_at.isoformat() if record.created_at else record.id, record.title)
            if key in seen:
                continue
            seen.add(key)
            unique.append(record)

        if settings.consolidate_activities:
            unique = _merge_consecutive(unique, settings.merge_gap_threshold)

        if len(unique) > settings.max_activities:
            unique = unique[: settings.max_activities]

        cleaned = [record for record in unique if record.duration >= settings.min_activity_duration]
        return cleaned, original - len(cleaned)


def _mapping_key(kind: str) -> str:
    try:
        return MAPPING_KEYS[kind]
    except KeyError:
        raise ValueError(f"Unknown mapping kind {kind!r}; expected one of {sorted(MAPPING_KEYS)}") from None


def _split_system(entries: Iterable[Mapping[str, Any]]) -> dict[str, list[dict[str, Any]]]:
    items = [dict(entry) for entry in entries]
    return {
        "system": [item for item in items if item.get("is_system")],
        "custom": [item for item in items if not item.get("is_system")],
        "all": items,
    }


def _find_entry(entries: list[dict[str, Any]], entry_id: str) -> Optional[dict[str, Any]]:
    for entry in entries:
        if entry.get("id") == entry_id:
            return entry
    return None


def _entry_name(name: Any, label: str) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValueError(f"{label} name is required")
    return name.strip()


def _reject_duplicate_name(entries: Iterable[Mapping[str, Any]], name: str, label: str) -> None:
    if any(str(entry.get("name", "")).lower() == name.lower() for entry in entries):
        raise ValueError(f"A {label} named {name!r} already exists")


def _can_merge(first: ActivityRecord, second: ActivityRecord, gap_seconds: int) -> bool:
    if first.is_manual or second.is_manual:
        return False
    if not first.app or first.app != second.app:
        return False
    if (first.title, first.project, first.date) != (second.title, second.project, second.date):
        return False
    return abs((first.start_time - second.start_time).total_seconds()) <= gap_seconds


def _merge_consecutive(records: list[ActivityRecord], gap_seconds: int) -> list[ActivityRecord]:
    if len(records) <= 1:
        return records
    merged: list[ActivityRecord] = []
    current = records[0]
    for following in records[1:]:
        if _can_merge(current, following, gap_seconds):
            current.duration += following.duration
            current.actual_duration += following.actual_duration
            current.start_time = min(current.start_time, following.start_time)
            current.end_time = max(current.end_time, following.end_time)
            current.date = current.start_time.date()
            add_unique(current.tickets, *following.tickets)
            add_unique(current.tags, *following.tags)
            current.idle_periods.extend(following.idle_periods)
        else:
            merged.append(current)
            current = following
    merged.append(current)
    return merged


def _apply_patch(record: ActivityRecord, patch: Mapping[str, Any]) -> None:
    for name, value in patch.items():
        if name not in _PATCHABLE_FIELDS:
            raise ValueError(f"Field {name!r} cannot be updated")
        if name in _DATETIME_FIELDS and isinstance(value, str):
            value = datetime.fromisoformat(value)
        elif name == "idle_periods":
            value = [item if isinstance(item, IdlePeriod) else IdlePeriod.from_dict(item) for item in value]
        elif name in {"duration", "actual_duration"}:
            value = max(0, int(value))
        setattr(record, name, value)
    if "start_time" in patch:
        record.date = record.start_time.date()
    if record.actual_duration > record.duration:
        record.actual_duration = record.duration
