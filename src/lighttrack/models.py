"""Domain models for observed and recorded activity."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Mapping, Optional, Union

MAX_METADATA_ENTRIES = 32


def new_id() -> str:
    return uuid.uuid4().hex


def add_unique(items: list[str], *values: str) -> None:
    """Append values that are not already present, keeping first-seen order."""
    for value in values:
        if value and value not in items:
            items.append(value)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(slots=True)
class Observation:
    """A raw foreground window snapshot."""

    app_name: str
    window_title: str
    url: Optional[str] = None
    captured_at: Optional[datetime] = None


@dataclass(slots=True)
class MappingTarget:
    """Where a mapping rule sends a matching activity."""

    project: str
    activity: Optional[str] = None
    sap_code: Optional[str] = None
    cost_center: Optional[str] = None
    wbs_element: Optional[str] = None

    @classmethod
    def from_value(cls, value: Union[str, Mapping[str, Any]]) -> Optional["MappingTarget"]:
        if isinstance(value, str):
            return cls(project=value) if value.strip() else None
        if not isinstance(value, Mapping) or not value.get("project"):
            return None
        return cls(
            project=str(value["project"]),
            activity=value.get("activity"),
            sap_code=value.get("sap_code") or value.get("sapCode"),
            cost_center=value.get("cost_center") or value.get("costCenter"),
            wbs_element=value.get("wbs_element") or value.get("wbsElement"),
        )


@dataclass(slots=True)
class ActivityDescriptor:
    """A classified view of one observation."""

    app: str
    title: str
    url: Optional[str] = None
    project: Optional[str] = None
    activity_type: Optional[str] = None
    sap_code: Optional[str] = None
    cost_center: Optional[str] = None
    wbs_element: Optional[str] = None
    tickets: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    billable: bool = True
    meeting_subject: Optional[str] = None
    meeting_app: Optional[str] = None
    email_subject: Optional[str] = None
    email_activity: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)

    def set_metadata(self, key: str, value: str) -> None:
        if key in self.metadata or len(self.metadata) < MAX_METADATA_ENTRIES:
            self.metadata[key] = value

    def apply_target(self, target: MappingTarget) -> None:
        self.project = target.project
        if target.activity:
            self.activity_type = target.activity
        if target.sap_code:
            self.sap_code = target.sap_code
        if target.cost_center:
            self.cost_center = target.cost_center
        if target.wbs_element:
            self.wbs_element = target.wbs_element


@dataclass(slots=True)
class IdlePeriod:
    start: datetime
    end: datetime
    duration: int
    excluded: bool = False

    @property
    def minutes(self) -> int:
        return self.duration // 60

    def to_dict(self) -> dict[str, Any]:
        return {
            "start": _format_datetime(self.start),
            "end": _format_datetime(self.end),
            "duration": self.duration,
            "excluded": self.excluded,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "IdlePeriod":
        return cls(
            start=_parse_datetime(raw["start"]),
            end=_parse_datetime(raw["end"]),
            duration=int(raw.get("duration") or 0),
            excluded=bool(raw.get("excluded", False)),
        )


@dataclass(slots=True)
class ActivityRecord:
    """Represents the time spent on one (app, project) pair on one day."""

    id: str
    app: str
    title: str
    project: str
    start_time: datetime
    end_time: datetime
    date: date
    url: Optional[str] = None
    activity_type: Optional[str] = None
    sap_code: Optional[str] = None
    cost_center: Optional[str] = None
    wbs_element: Optional[str] = None
    tickets: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    billable: bool = True
    duration: int = 0
    actual_duration: int = 0
    is_manual: bool = False
    is_idle: bool = False
    idle_start_time: Optional[datetime] = None
    idle_periods: list[IdlePeriod] = field(default_factory=list)
    created_at: Optional[datetime] = None

    @classmethod
    def start(
        cls, descriptor: ActivityDescriptor, start_time: datetime, *, is_manual: bool = False
    ) -> "ActivityRecord":
        return cls(
            id=new_id(),
            app=descriptor.app,
            title=descriptor.title,
            project=descriptor.project or "",
            start_time=start_time,
            end_time=start_time,
            date=start_time.date(),
            url=descriptor.url,
            activity_type=descriptor.activity_type,
            sap_code=descriptor.sap_code,
            cost_center=descriptor.cost_center,
            wbs_element=descriptor.wbs_element,
            tickets=list(descriptor.tickets),
            tags=list(descriptor.tags),
            billable=descriptor.billable,
            is_manual=is_manual,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "app": self.app,
            "title": self.title,
            "project": self.project,
            "url": self.url,
            "activity_type": self.activity_type,
            "sap_code": self.sap_code,
            "cost_center": self.cost_center,
            "wbs_element": self.wbs_element,
            "tickets": list(self.tickets),
            "tags": list(self.tags),
            "billable": self.billable,
            "start_time": _format_datetime(self.start_time),
            "end_time": _format_datetime(self.end_time),
            "duration": self.duration,
            "actual_duration": self.actual_duration,
            "date": self.date.isoformat(),
            "is_manual": self.is_manual,
            "is_idle": self.is_idle,
            "idle_start_time": _format_datetime(self.idle_start_time),
            "idle_periods": [period.to_dict() for period in self.idle_periods],
            "created_at": _format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ActivityRecord":
        start_time = _parse_datetime(raw["start_time"])
        end_time = _parse_datetime(raw.get("end_time")) or start_time
        raw_date = raw.get("date")
        return cls(
            id=str(raw["id"]),
            app=raw.get("app") or "Unknown",
            title=raw.get("title") or "",
            project=raw.get("project") or "",
            start_time=start_time,
            end_time=end_time,
            date=date.fromisoformat(raw_date) if raw_date else start_time.date(),
            url=raw.get("url"),
            activity_type=raw.get("activity_type"),
            sap_code=raw.get("sap_code"),
            cost_center=raw.get("cost_center"),
            wbs_element=raw.get("wbs_element"),
            tickets=list(raw.get("tickets") or []),
            tags=list(raw.get("tags") or []),
            billable=bool(raw.get("billable", True)),
            duration=int(raw.get("duration") or 0),
            actual_duration=int(raw.get("actual_duration") or 0),
            is_manual=bool(raw.get("is_manual", False)),
            is_idle=bool(raw.get("is_idle", False)),
            idle_start_time=_parse_datetime(raw.get("idle_start_time")),
            idle_periods=[IdlePeriod.from_dict(item) for item in raw.get("idle_periods") or []],
            created_at=_parse_datetime(raw.get("created_at")),
        )


@dataclass(slots=True)
class FocusSession:
    id: str
    date: datetime
    project: Optional[str]
    duration: int
    distractions: int
    quality: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "date": _format_datetime(self.date),
            "project": self.project,
            "duration": self.duration,
            "distractions": self.distractions,
            "quality": self.quality,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "FocusSession":
        return cls(
            id=str(raw["id"]),
            date=_parse_datetime(raw["date"]),
            project=raw.get("project"),
            duration=int(raw.get("duration") or 0),
            distractions=int(raw.get("distractions") or 0),
            quality=int(raw.get("quality") or 0),
        )


@dataclass(slots=True)
class MappingTables:
    """Snapshot of the four user mapping tables, keyed by pattern."""

    project: dict[str, Any] = field(default_factory=dict)
    url: dict[str, Any] = field(default_factory=dict)
    jira: dict[str, Any] = field(default_factory=dict)
    meeting: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ActivityFilter:
    """Query parameters for listing stored activities."""

    date: Optional[date] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    project: Optional[str] = None
    app: Optional[str] = None
    tags: Optional[list[str]] = None
    match_all_tags: bool = False
    limit: Optional[int] = None

    def matches(self, record: ActivityRecord) -> bool:
        if self.date is not None and record.date != self.date:
            return False
        if self.start_date is not None and record.date < self.start_date:
            return False
        if self.end_date is not None and record.date > self.end_date:
            return False
        if self.project is not None and record.project != self.project:
            return False
        if self.app is not None and record.app != self.app:
            return False
        if self.tags:
            present = [tag in record.tags for tag in self.tags]
            if not (all(present) if self.match_all_tags else any(present)):
                return False
        return True
