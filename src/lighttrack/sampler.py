"""Adaptive-rate sampling of the foreground window."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from .classifier import Classifier
from .config import (
    BASE_SAMPLE_INTERVAL_SECONDS,
    MAX_SAMPLE_INTERVAL_SECONDS,
    SAMPLE_INCREMENT_SECONDS,
    STABLE_SAMPLE_THRESHOLD,
    TrackerSettings,
)
from .consolidator import Consolidator
from .errors import ProbeUnavailableError
from .focus import FocusTracker
from .models import ActivityRecord, MappingTables
from .probe import Clock, PlatformProbe, active_window_with_retry

logger = logging.getLogger(__name__)


def activity_signature(record: Optional[ActivityRecord]) -> str:
    if record is None:
        return ""
    return f"{record.app}|{record.project}|{record.title}"


class Sampler:
    """Runs one sample at a time: probe, classify, attribute, save, notify.

    A tick that arrives while another is running is dropped. The caller
    schedules the next tick ``current_interval`` seconds after this one ends.
    """

    def __init__(
        self,
        probe: PlatformProbe,
        classifier: Classifier,
        consolidator: Consolidator,
        focus: FocusTracker,
        clock: Clock,
        *,
        settings: Callable[[], TrackerSettings],
        mapping_tables: Callable[[], MappingTables],
        is_paused: Callable[[], bool] = lambda: False,
        stop_requested: Callable[[], bool] = lambda: False,
        on_update: Optional[Callable[[], None]] = None,
    ) -> None:
        self._probe = probe
        self._classifier = classifier
        self._consolidator = consolidator
        self._focus = focus
        self._clock = clock
        self._settings = settings
        self._mapping_tables = mapping_tables
        self._is_paused = is_paused
        self._stop_requested = stop_requested
        self._on_update = on_update
        self._in_progress = threading.Lock()
        self.current_interval = BASE_SAMPLE_INTERVAL_SECONDS
        self.stable_count = 0
        self.last_signature = ""
        self.last_active_time: Optional[datetime] = None
        self.disabled = False

    def reset(self, now: datetime) -> None:
        """Start a fresh attribution window at ``now``."""
        self.current_interval = BASE_SAMPLE_INTERVAL_SECONDS
        self.stable_count = 0
        self.last_signature = ""
        self.last_active_time = now

    def rebase(self, now: datetime) -> None:
        """Move the attribution baseline without touching the adaptive rate."""
        with self._in_progress:
            self.last_active_time = now

    @property
    def busy(self) -> bool:
        return self._in_progress.locked()

    def wait_until_quiet(self, timeout: float) -> bool:
        """Block until no tick is running, for at most ``timeout`` seconds."""
        if not self._in_progress.acquire(timeout=timeout):
            return False
        self._in_progress.release()
        return True

    def tick(self) -> bool:
        """Take one sample. Returns ``False`` when the tick was dropped or aborted."""
        if self.disabled or self._stop_requested():
            return False
        if not self._in_progress.acquire(blocking=False):
            logger.debug("Tick already in progress, skipping")
            return False

        now = self._clock.now()
        previous = self.last_active_time
        try:
            if self._is_paused() or previous is None:
                return True
            delta = max(0, int((now - previous).total_seconds()))
            if delta == 0:
                return True

            try:
                observation = active_window_with_retry(self._probe)
            except ProbeUnavailableError as exc:
                logger.error("Foreground window tracking unavailable (%s); sampler disabled", exc)
                self.disabled = True
                return False
            if self._stop_requested():
                return False

            if observation is None:
                logger.debug("No active window detected")
                self._consolidator.apply_duration(delta, now)
                return True

            delta, _ = self._consolidator.handle_rollover(previous, now, delta)
            settings = self._settings()
            descriptor = self._classifier.classify(observation, self._mapping_tables(), settings)
            if self._stop_requested():
                return False

            record = self._consolidator.record_sample(descriptor, now, delta)
            self._focus.update(descriptor, now)
            self._adjust_rate(activity_signature(record), settings)
        except Exception:
            logger.exception("Error tracking activity")
            return False
        finally:
            self.last_active_time = now
            self._in_progress.release()

        if self._on_update is not None:
            self._on_update()
        return True

    def _adjust_rate(self, signature: str, settings: TrackerSettings) -> None:
        if not settings.smart_sampling_enabled:
            return
        if signature == self.last_signature:
            self.stable_count += 1
            if self.stable_count > STABLE_SAMPLE_THRESHOLD:
                interval = min(
                    MAX_SAMPLE_INTERVAL_SECONDS,
                    BASE_SAMPLE_INTERVAL_SECONDS + self.stable_count * SAMPLE_INCREMENT_SECONDS,
                )
                if interval != self.current_interval:
                    logger.debug("Adjusted sampling to %.0fs (stable activity)", interval)
                self.current_interval = interval
        else:
            if self.current_interval != BASE_SAMPLE_INTERVAL_SECONDS:
                logger.debug("Reset sampling to %.0fs (activity changed)", BASE_SAMPLE_INTERVAL_SECONDS)
            self.stable_count = 0
            self.current_interval = BASE_SAMPLE_INTERVAL_SECONDS
        self.last_signature = signature
