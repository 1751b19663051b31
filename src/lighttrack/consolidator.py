"""Live activity slot: time attribution, rollover and persistence."""

from __future__ import annotations

import copy
import hashlib
import logging
import threading
from collections import OrderedDict
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Mapping, Optional

from .classifier import Classifier, can_continue
from .config import ENRICHMENT_LOCK_TIMEOUT_SECONDS, MAX_CHECKSUM_CACHE_SIZE, TrackerSettings
from .errors import StoreError
from .models import (
    ActivityDescriptor,
    ActivityFilter,
    ActivityRecord,
    IdlePeriod,
    MappingTables,
    MappingTarget,
    Observation,
    add_unique,
)
from .probe import Clock
from .storage import ActivityStore

logger = logging.getLogger(__name__)


def activity_checksum(record: ActivityRecord) -> str:
    """Content checksum over app, project, date and duration rounded down to 10 s."""
    payload = "|".join(
        (record.app, record.project, record.date.isoformat(), str(record.duration // 10 * 10))
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class Consolidator:
    """Owns the current activity record and every mutation of it.

    All state sits behind one re-entrant lock; the idle detector and the
    ingress take the same lock before touching the live record.
    """

    def __init__(
        self,
        store: ActivityStore,
        classifier: Classifier,
        clock: Clock,
        *,
        settings: Callable[[], TrackerSettings],
        mapping_tables: Callable[[], MappingTables],
        checksum_cache_size: int = MAX_CHECKSUM_CACHE_SIZE,
    ) -> None:
        self._store = store
        self._classifier = classifier
        self._clock = clock
        self._settings = settings
        self._mapping_tables = mapping_tables
        self._checksum_cache_size = checksum_cache_size
        self._lock = threading.RLock()
        self._current: Optional[ActivityRecord] = None
        self._checksums: OrderedDict[str, None] = OrderedDict()
        self._pending: dict[str, ActivityRecord] = {}

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @property
    def current(self) -> Optional[ActivityRecord]:
        return self._current

    def snapshot(self) -> Optional[ActivityRecord]:
        with self._lock:
            return copy.deepcopy(self._current)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    # -- time attribution -------------------------------------------------

    def apply_duration(self, seconds: int, end_time: datetime) -> None:
        with self._lock:
            record = self._current
            if record is None or seconds <= 0:
                return
            record.duration += seconds
            record.actual_duration += seconds
            record.end_time = end_time

    def handle_rollover(self, previous_time: datetime, now: datetime, delta: int) -> tuple[int, bool]:
        """Close the live record at midnight if ``previous_time`` and ``now`` straddle one.

        Returns the seconds still to attribute and whether a rollover happened.
        """
        previous_day = self._clock.local_date(previous_time)
        today = self._clock.local_date(now)
        if previous_day == today:
            return delta, False

        with self._lock:
            if self._current is None:
                return delta, False

            first_midnight = datetime.combine(previous_day + timedelta(days=1), time.min)
            last_midnight = datetime.combine(today, time.min)
            credited = max(0, int((first_midnight - previous_time).total_seconds()))
            if credited:
                self.apply_duration(credited, first_midnight)
                self.save_current()
            self._current = None

            if first_midnight < last_midnight:
                discarded = int((last_midnight - first_midnight).total_seconds())
                logger.info("Multi-day gap detected, discarding %d hours of idle time", discarded // 3600)
                remaining = int((now - last_midnight).total_seconds())
            else:
                remaining = max(0, delta - credited)
            logger.info("Midnight rollover: credited %ds to previous day, %ds remain", credited, remaining)
            return remaining, True

    def record_sample(self, descriptor: ActivityDescriptor, now: datetime, delta: int) -> ActivityRecord:
        """Attribute ``delta`` seconds for one classified sample.

        Each second goes to exactly one record: a continuing record, the
        outgoing record on a switch, or the new record when nothing else was
        live to receive it.
        """
        settings = self._settings()
        with self._lock:
            current = self._current
            if current is not None and can_continue(current, descriptor, settings, now):
                self.apply_duration(delta, now)
                return current

            credited_outgoing = False
            if current is not None:
                self.apply_duration(delta, now)
                self.save_current()
                credited_outgoing = True

            record = self._find_or_start(descriptor, now)
            if not credited_outgoing and delta > 0:
                day_start = datetime.combine(self._clock.local_date(now), time.min)
                inferred_start = max(now - timedelta(seconds=delta), day_start)
                if record.start_time > inferred_start:
                    record.start_time = inferred_start
                    record.date = self._clock.local_date(inferred_start)
                self.apply_duration(int((now - inferred_start).total_seconds()), now)
            return record

    def _find_or_start(self, descriptor: ActivityDescriptor, now: datetime) -> ActivityRecord:
        today = self._clock.local_date(now)
        existing = self._find_existing(descriptor.app, descriptor.project or "", today)
        if existing is not None:
            existing.title = descriptor.title
            existing.url = descriptor.url or existing.url
            add_unique(existing.tickets, *descriptor.tickets)
            add_unique(existing.tags, *descriptor.tags)
            logger.debug(
                "Resuming activity %s (%s / %s, %ds)", existing.id, existing.app, existing.project, existing.duration
            )
            self._current = existing
        else:
            self._current = ActivityRecord.start(descriptor, now)
            logger.debug("New activity started: %s / %s", descriptor.app, descriptor.project)
        return self._current

    def _find_existing(self, app: str, project: str, day: date) -> Optional[ActivityRecord]:
        for record in self._pending.values():
            if record.app == app and record.project == project and record.date == day:
                return copy.deepcopy(record)
        try:
            return self._store.find_by_app_project_date(app, project, day)
        except StoreError:
            logger.exception("Activity lookup failed; starting a new record")
            return None

    # -- persistence ------------------------------------------------------

    def save_current(self, *, check_duplicates: bool = True) -> bool:
        """Write the live record if it is long enough and not a recent duplicate.

        Pass ``check_duplicates=False`` when the write carries state the
        checksum does not cover, such as the idle marker.
        """
        settings = self._settings()
        with self._lock:
            record = self._current
            if record is None:
                return False
            self._retry_pending()
            if record.duration < settings.min_activity_duration:
                logger.debug("Activity duration too short (%ss), not saving", record.duration)
                return False
            checksum = activity_checksum(record)
            if check_duplicates and checksum in self._checksums:
                logger.debug("Duplicate save detected, skipping %s", record.app)
                return False
            try:
                self._store.upsert(copy.deepcopy(record))
            except StoreError:
                logger.exception("Failed to save activity %s; keeping it pending", record.id)
                self._pending[record.id] = copy.deepcopy(record)
                return False
            self._pending.pop(record.id, None)
            self._remember(checksum)
            logger.debug("Saved activity %s (%s, %ds)", record.id, record.app, record.duration)
            return True

    def flush(self) -> None:
        """Save and clear the live record."""
        with self._lock:
            self.save_current()
            self._current = None
            self._retry_pending()

    def on_idle_start(self, idle_start: datetime) -> None:
        with self._lock:
            record = self._current
            if record is None:
                return
            record.is_idle = True
            record.idle_start_time = idle_start
            self.save_current(check_duplicates=False)
            self._current = None

    def _remember(self, checksum: str) -> None:
        self._checksums[checksum] = None
        self._checksums.move_to_end(checksum)
        while len(self._checksums) > self._checksum_cache_size:
            self._checksums.popitem(last=False)

    def _retry_pending(self) -> None:
        for activity_id, record in list(self._pending.items()):
            if self._current is not None and self._current.id == activity_id:
                continue
            try:
                self._store.upsert(copy.deepcopy(record))
            except StoreError:
                logger.warning("Store still failing; %d activities pending", len(self._pending))
                return
            del self._pending[activity_id]
            self._remember(activity_checksum(record))

    # -- manual entries and edits -----------------------------------------

    def create_manual(self, descriptor: ActivityDescriptor, start: datetime, end: datetime) -> ActivityRecord:
        settings = self._settings()
        duration = int((end - start).total_seconds())
        if duration <= 0:
            raise ValueError("end must be after start")
        if duration < settings.min_activity_duration:
            raise ValueError(f"duration {duration}s is shorter than the minimum of {settings.min_activity_duration}s")
        if not descriptor.project:
            descriptor.project = settings.default_project
        record = ActivityRecord.start(descriptor, start, is_manual=True)
        record.end_time = end
        record.duration = duration
        record.actual_duration = duration
        record.date = self._clock.local_date(start)
        self._store.upsert(record)
        logger.info("Manual activity created: %s (%ds)", record.project, duration)
        return record

    def replace_live(self, record: ActivityRecord) -> None:
        """Swap in an edited copy when the user changes the live record."""
        with self._lock:
            if self._current is not None and self._current.id == record.id:
                self._current = copy.deepcopy(record)

    def discard_live(self, activity_id: str) -> None:
        with self._lock:
            if self._current is not None and self._current.id == activity_id:
                self._current = None
            self._pending.pop(activity_id, None)

    # -- idle resolution --------------------------------------------------

    def apply_idle_resolution(self, period: IdlePeriod, was_working: bool) -> Optional[ActivityRecord]:
        """Count an idle period as work or record it as excluded time."""
        with self._lock:
            try:
                candidates = [
                    record
                    for record in self._store.list_activities(ActivityFilter())
                    if record.idle_start_time == period.start
                ]
            except StoreError:
                logger.exception("Could not load activities to resolve idle time")
                return None
            if not candidates:
                logger.info("No activity found for idle period starting %s", period.start.isoformat())
                return None
            target = max(candidates, key=lambda record: record.end_time)

            if was_working:
                patch: dict[str, Any] = {
                    "duration": target.duration + period.duration,
                    "actual_duration": target.actual_duration + period.duration,
                }
            else:
                excluded = IdlePeriod(start=period.start, end=period.end, duration=period.duration, excluded=True)
                patch = {"idle_periods": [*target.idle_periods, excluded]}

            try:
                updated = self._store.update_activity(target.id, patch)
            except StoreError:
                logger.exception("Failed to update activity %s with idle decision", target.id)
                return None
            if updated is None:
                return None

            live = self._current
            if live is not None and live.id == updated.id:
                if was_working:
                    live.duration += period.duration
                    live.actual_duration += period.duration
                else:
                    live.idle_periods = copy.deepcopy(updated.idle_periods)
            logger.info(
                "Idle time %s for activity %s", "counted as work" if was_working else "excluded from work", updated.id
            )
            return updated

    # -- enrichment -------------------------------------------------------

    def enrich_browser(self, url: str, title: str, browser: str = "Unknown") -> bool:
        """Add tickets and, when the live project is still the default, a project."""
        if not self._lock.acquire(timeout=ENRICHMENT_LOCK_TIMEOUT_SECONDS):
            logger.warning("Live activity busy; dropping browser enrichment for %s", url)
            return False
        try:
            record = self._current
            if record is None:
                return False
            settings = self._settings()
            parsed = self._classifier.classify(
                Observation(app_name=browser, window_title=title, url=url),
                self._mapping_tables(),
                settings,
            )
            add_unique(record.tickets, *parsed.tickets)
            if parsed.project and parsed.project != settings.default_project:
                self._maybe_set_project(record, parsed.project, settings)
            logger.debug("Browser activity processed for %s", url)
            return True
        finally:
            self._lock.release()

    def enrich_page_context(self, kind: str, data: Mapping[str, Any]) -> bool:
        if not self._lock.acquire(timeout=ENRICHMENT_LOCK_TIMEOUT_SECONDS):
            logger.warning("Live activity busy; dropping %s page context", kind)
            return False
        try:
            record = self._current
            if record is None:
                return False
            settings = self._settings()
            tables = self._mapping_tables()
            target: Optional[MappingTarget] = None

            if kind == "jira":
                issue_key = str(data.get("issueKey") or "").upper()
                if not issue_key:
                    return False
                add_unique(record.tickets, issue_key)
                project_key = str(data.get("projectKey") or issue_key.split("-", 1)[0])
                value = tables.jira.get(project_key.upper()) or tables.jira.get(project_key.lower())
                target = MappingTarget.from_value(value) if value else None
            elif kind == "github":
                repo = str(data.get("repo") or "")
                if not repo:
                    return False
                repo_key = f"{data.get('owner') or ''}/{repo}"
                for pattern, value in tables.url.items():
                    if pattern and (pattern in repo_key or repo in pattern):
                        target = MappingTarget.from_value(value)
                        break
            else:
                return False

            if target is not None:
                self._maybe_set_project(record, target.project, settings)
            logger.debug("Page context processed: %s", kind)
            return True
        finally:
            self._lock.release()

    def _maybe_set_project(self, record: ActivityRecord, project: str, settings: TrackerSettings) -> None:
        if record.project and record.project != settings.default_project:
            return
        if project == record.project:
            return
        try:
            clash = self._store.find_by_app_project_date(record.app, project, record.date)
        except StoreError:
            logger.exception("Could not check for an existing %s record", project)
            return
        if clash is not None and clash.id != record.id:
            logger.debug("Not moving %s to %s: a record already exists for today", record.id, project)
            return
        record.project = project
