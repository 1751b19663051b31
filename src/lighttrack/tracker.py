"""Composition root for the tracking engine and its command surface."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from .classifier import Classifier
from .config import IDLE_CHECK_INTERVAL_SECONDS, IDLE_PAUSE_WAIT_SECONDS, STOP_WAIT_SECONDS, TrackerSettings
from .consolidator import Consolidator
from .errors import ProbeError, StoreError
from .events import EventBus, TrackingPaused, TrackingStatusChanged, TrackingUpdate
from .focus import FocusTracker
from .idle import IdleDetector
from .models import ActivityDescriptor, ActivityFilter, MappingTables
from .probe import Clock, PlatformProbe, SystemClock
from .sampler import Sampler
from .storage import ActivityStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CommandResult:
    ok: bool
    value: Any = None
    reason: Optional[str] = None


class PacedLoop:
    """Call ``step`` on a background thread, waiting the delay it returns before the next call."""

    def __init__(self, name: str, step: Callable[[], float]) -> None:
        self._name = name
        self._step = step
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None

    def start(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            stop_event = threading.Event()
            thread = threading.Thread(target=self._run, args=(stop_event,), name=self._name, daemon=True)
            self._thread = thread
            self._stop_event = stop_event
            thread.start()
            logger.debug("%s thread started.", self._name)

    def stop(self, timeout: float = STOP_WAIT_SECONDS) -> None:
        thread: Optional[threading.Thread] = None
        with self._lock:
            if not self._thread or not self._stop_event:
                return
            self._stop_event.set()
            thread = self._thread
            self._thread = None
            self._stop_event = None
        if thread is not threading.current_thread():
            thread.join(timeout=timeout)
        logger.debug("%s thread stopped.", self._name)

    def is_running(self) -> bool:
        with self._lock:
            return bool(self._thread and self._thread.is_alive())

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                delay = self._step()
            except Exception:
                logger.exception("%s step failed", self._name)
                delay = IDLE_CHECK_INTERVAL_SECONDS
            stop_event.wait(delay)


class ActivityTracker:
    """Wires the probe, classifier, consolidator, idle and focus trackers together."""

    def __init__(
        self,
        store: ActivityStore,
        probe: PlatformProbe,
        *,
        clock: Optional[Clock] = None,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.store = store
        self.probe = probe
        self.clock = clock or SystemClock()
        self.bus = bus or EventBus()
        self.classifier = Classifier()
        self.idle = IdleDetector()
        self.consolidator = Consolidator(
            store,
            self.classifier,
            self.clock,
            settings=self.settings,
            mapping_tables=self.mapping_tables,
        )
        self.focus = FocusTracker(store, self.settings)
        self.sampler = Sampler(
            probe,
            self.classifier,
            self.consolidator,
            self.focus,
            self.clock,
            settings=self.settings,
            mapping_tables=self.mapping_tables,
            is_paused=lambda: self.idle.is_paused,
            stop_requested=lambda: self._pending_stop or not self._tracking,
            on_update=self._publish_update,
        )
        self._state_lock = threading.RLock()
        self._tracking = False
        self._pending_stop = False
        self._session_start: Optional[datetime] = None
        self._sample_loop = PacedLoop("lighttrack-sampler", self._sample_step)
        self._idle_loop = PacedLoop("lighttrack-idle", self._idle_step)

    @property
    def is_tracking(self) -> bool:
        return self._tracking

    def settings(self) -> TrackerSettings:
        try:
            return self.store.settings()
        except StoreError:
            logger.exception("Failed to read settings; using defaults")
            return TrackerSettings()

    def mapping_tables(self) -> MappingTables:
        try:
            return self.store.mapping_tables()
        except StoreError:
            logger.exception("Failed to read mapping tables")
            return MappingTables()

    # -- lifecycle --------------------------------------------------------

    def start(self, *, background: bool = True) -> CommandResult:
        with self._state_lock:
            if self._pending_stop:
                return CommandResult(False, reason="tracker is stopping")
            if self._tracking:
                return CommandResult(True, self.get_status())
            now = self.clock.now()
            self._tracking = True
            self._session_start = now
            self.idle.reset()
            self.sampler.reset(now)
            self.sampler.disabled = False
            try:
                self.store.cleanup_expired(now)
            except StoreError:
                logger.exception("Auto-cleanup failed")
            if background:
                self._sample_loop.start()
                self._idle_loop.start()
        logger.info("Tracking started")
        self.bus.publish(TrackingStatusChanged(is_tracking=True))
        return CommandResult(True, self.get_status())

    def stop(self) -> CommandResult:
        with self._state_lock:
            if not self._tracking or self._pending_stop:
                return CommandResult(True, self.get_status())
            self._pending_stop = True
        try:
            if not self.sampler.wait_until_quiet(STOP_WAIT_SECONDS):
                logger.warning("Sample still running after %.0fs; stopping anyway", STOP_WAIT_SECONDS)
            self._sample_loop.stop()
            self._idle_loop.stop()
            self.consolidator.flush()
            self.focus.close(self.clock.now())
            self.idle.reset()
        finally:
            with self._state_lock:
                self._tracking = False
                self._pending_stop = False
        logger.info("Tracking stopped")
        self.bus.publish(TrackingStatusChanged(is_tracking=False))
        return CommandResult(True, self.get_status())

    def toggle(self) -> CommandResult:
        return self.stop() if self._tracking else self.start()

    def get_status(self) -> TrackingUpdate:
        return TrackingUpdate(
            is_tracking=self._tracking,
            current_activity=self.consolidator.snapshot(),
            session_start=self._session_start,
            last_active=self.sampler.last_active_time,
            sampling_rate_seconds=self.sampler.current_interval,
            focus_session=self.focus.current(),
            is_paused=self.idle.is_paused,
            last_idle_period=self.idle.last_idle_period,
        )

    def _publish_update(self) -> None:
        if self._tracking:
            self.bus.publish(self.get_status())

    def _sample_step(self) -> float:
        self.sampler.tick()
        return self.sampler.current_interval

    def _idle_step(self) -> float:
        self.check_idle()
        return IDLE_CHECK_INTERVAL_SECONDS

    def check_idle(self) -> None:
        """Poll the OS idle counter once and act on any state change."""
        if not self._tracking or self._pending_stop:
            return
        try:
            idle_seconds = self.probe.system_idle_seconds()
        except (ProbeError, OSError):
            logger.exception("Failed to query idle state; assuming active")
            return
        now = self.clock.now()
        was_paused = self.idle.is_paused
        events = self.idle.check(idle_seconds, now, self.settings().idle_threshold)
        for event in events:
            if isinstance(event, TrackingPaused):
                if not self.sampler.wait_until_quiet(IDLE_PAUSE_WAIT_SECONDS):
                    logger.warning("Sample still running; pausing for idle anyway")
                self.consolidator.on_idle_start(event.idle_start_time)
            self.bus.publish(event)
        if was_paused and not self.idle.is_paused:
            self.sampler.rebase(now)

    # -- commands ---------------------------------------------------------

    def _rejected(self) -> Optional[CommandResult]:
        """Refuse state-changing commands unless tracking is running."""
        if self._pending_stop:
            return CommandResult(False, reason="tracker is stopping")
        if not self._tracking:
            return CommandResult(False, reason="tracker is stopped")
        return None

    def resolve_idle(self, was_working: bool) -> CommandResult:
        rejected = self._rejected()
        if rejected:
            return rejected
        period = self.idle.take_idle_period()
        if period is None:
            return CommandResult(True, None, reason="no idle period to resolve")
        return CommandResult(True, self.consolidator.apply_idle_resolution(period, was_working))

    def create_manual(self, descriptor: ActivityDescriptor, start: datetime, end: datetime) -> CommandResult:
        rejected = self._rejected()
        if rejected:
            return rejected
        try:
            return CommandResult(True, self.consolidator.create_manual(descriptor, start, end))
        except (ValueError, StoreError) as exc:
            logger.warning("Manual activity rejected: %s", exc)
            return CommandResult(False, reason=str(exc))

    def consolidate_now(self) -> CommandResult:
        rejected = self._rejected()
        if rejected:
            return rejected
        try:
            self.consolidator.save_current()
            removed = self.store.consolidate()
        except StoreError as exc:
            logger.exception("Manual consolidation failed")
            return CommandResult(False, {"consolidated": 0}, reason=str(exc))
        return CommandResult(True, {"consolidated": removed})

    def find_activity_by_id(self, activity_id: str) -> CommandResult:
        live = self.consolidator.snapshot()
        if live is not None and live.id == activity_id:
            return CommandResult(True, live)
        try:
            record = self.store.find_by_id(activity_id)
        except StoreError as exc:
            logger.exception("Activity lookup failed")
            return CommandResult(False, reason=str(exc))
        if record is None:
            return CommandResult(False, reason="activity not found")
        return CommandResult(True, record)

    def list_activities(self, activity_filter: Optional[ActivityFilter] = None) -> CommandResult:
        try:
            return CommandResult(True, self.store.list_activities(activity_filter))
        except StoreError as exc:
            logger.exception("Failed to list activities")
            return CommandResult(False, [], reason=str(exc))

    def update_activity(self, activity_id: str, patch: Mapping[str, Any]) -> CommandResult:
        rejected = self._rejected()
        if rejected:
            return rejected
        try:
            updated = self.store.update_activity(activity_id, patch)
        except (ValueError, StoreError) as exc:
            logger.warning("Activity update rejected: %s", exc)
            return CommandResult(False, reason=str(exc))
        if updated is None:
            return CommandResult(False, reason="activity not found")
        self.consolidator.replace_live(updated)
        return CommandResult(True, updated)

    def delete_activity(self, activity_id: str) -> CommandResult:
        rejected = self._rejected()
        if rejected:
            return rejected
        live = self.consolidator.snapshot()
        self.consolidator.discard_live(activity_id)
        try:
            removed = self.store.remove(activity_id)
        except StoreError as exc:
            logger.exception("Failed to delete activity %s", activity_id)
            return CommandResult(False, reason=str(exc))
        if not removed and (live is None or live.id != activity_id):
            return CommandResult(False, reason="activity not found")
        return CommandResult(True, activity_id)

    def set_mapping(self, kind: str, pattern: str, value: Any) -> CommandResult:
        rejected = self._rejected()
        if rejected:
            return rejected
        try:
            mappings = self.store.set_mapping(kind, pattern, value)
        except (ValueError, StoreError) as exc:
            return CommandResult(False, reason=str(exc))
        self.classifier.invalidate()
        return CommandResult(True, mappings)

    def remove_mapping(self, kind: str, pattern: str) -> CommandResult:
        rejected = self._rejected()
        if rejected:
            return rejected
        try:
            removed = self.store.remove_mapping(kind, pattern)
        except (ValueError, StoreError) as exc:
            return CommandResult(False, reason=str(exc))
        self.classifier.invalidate()
        if not removed:
            return CommandResult(False, reason="mapping not found")
        return CommandResult(True, pattern)

    # -- tags, projects and activity types --------------------------------

    def _query(self, action: str, call: Callable[[], Any]) -> CommandResult:
        try:
            return CommandResult(True, call())
        except StoreError as exc:
            logger.exception("Failed to %s", action)
            return CommandResult(False, reason=str(exc))

    def _change(self, action: str, call: Callable[[], Any], *, missing: str = "not found") -> CommandResult:
        rejected = self._rejected()
        if rejected:
            return rejected
        try:
            value = call()
        except ValueError as exc:
            logger.warning("Could not %s: %s", action, exc)
            return CommandResult(False, reason=str(exc))
        except StoreError as exc:
            logger.exception("Failed to %s", action)
            return CommandResult(False, reason=str(exc))
        if value is None or value is False:
            return CommandResult(False, reason=missing)
        return CommandResult(True, value)

    def tags(self) -> CommandResult:
        return self._query("read tags", self.store.tags)

    def used_tags(self) -> CommandResult:
        return self._query("read used tags", self.store.used_tags)

    def add_tag(self, name: str) -> CommandResult:
        return self._change("add tag", lambda: self.store.add_tag(name))

    def remove_tag(self, name: str) -> CommandResult:
        return self._change("remove tag", lambda: self.store.remove_tag(name), missing="tag not found")

    def update_activity_tags(self, activity_id: str, tags: list[str]) -> CommandResult:
        result = self._change(
            "update activity tags",
            lambda: self.store.update_activity_tags(activity_id, tags),
            missing="activity not found",
        )
        if result.ok:
            self.consolidator.replace_live(result.value)
        return result

    def activities_by_tags(self, tags: list[str], *, match_all: bool = False) -> CommandResult:
        return self._query("filter activities by tag", lambda: self.store.activities_by_tags(tags, match_all=match_all))

    def projects(self) -> CommandResult:
        return self._query("read projects", self.store.projects)

    def add_project(self, name: str, **billing: str) -> CommandResult:
        return self._change("add project", lambda: self.store.add_project(name, **billing))

    def update_project(self, project_id: str, updates: Mapping[str, Any]) -> CommandResult:
        return self._change(
            "update project", lambda: self.store.update_project(project_id, updates), missing="project not found"
        )

    def remove_project(self, project_id: str) -> CommandResult:
        return self._change(
            "remove project", lambda: self.store.remove_project(project_id), missing="project not found"
        )

    def activity_types(self) -> CommandResult:
        return self._query("read activity types", self.store.activity_types)

    def add_activity_type(self, name: str) -> CommandResult:
        return self._change("add activity type", lambda: self.store.add_activity_type(name))

    def remove_activity_type(self, type_id: str) -> CommandResult:
        return self._change(
            "remove activity type", lambda: self.store.remove_activity_type(type_id), missing="activity type not found"
        )

    def stats(self) -> CommandResult:
        return self._query("compute stats", lambda: self.store.stats(self.clock.local_date(self.clock.now())))

    def export_data(self) -> CommandResult:
        return self._query("export data", lambda: self.store.export_data(self.clock.now()))

    def focus_stats(self) -> CommandResult:
        return CommandResult(True, self.focus.stats(self.clock.now()))

    def today_total(self) -> CommandResult:
        """Seconds tracked today, counting the live record as it stands now."""
        today = self.clock.local_date(self.clock.now())
        live = self.consolidator.snapshot()
        try:
            records = self.store.list_activities(ActivityFilter(date=today))
        except StoreError as exc:
            logger.exception("Failed to compute today's total")
            return CommandResult(False, 0, reason=str(exc))
        total = sum(record.duration for record in records if live is None or record.id != live.id)
        if live is not None and live.date == today:
            total += live.duration
        return CommandResult(True, total)

    # -- enrichment from the ingress --------------------------------------

    def process_browser_activity(self, url: str, title: str, browser: str = "Unknown") -> bool:
        if not self._tracking or self._pending_stop:
            return False
        return self.consolidator.enrich_browser(url, title, browser)

    def process_page_context(self, kind: str, data: Mapping[str, Any]) -> bool:
        if not self._tracking or self._pending_stop:
            return False
        return self.consolidator.enrich_page_context(kind, data)
