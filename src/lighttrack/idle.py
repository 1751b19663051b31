"""Idle state machine driven by the OS idle-seconds counter."""

from __future__ import annotations

import enum
import logging
from datetime import datetime, timedelta
from typing import Optional

from .config import IDLE_ACTIVITY_THRESHOLD_SECONDS, IDLE_WARNING_SECONDS, MIN_IDLE_MINUTES_FOR_PROMPT
from .events import Event, IdleReturn, IdleWarning, TrackingPaused
from .models import IdlePeriod

logger = logging.getLogger(__name__)


class IdleState(str, enum.Enum):
    ACTIVE = "active"
    WARNED = "warned"
    PAUSED = "paused"


class IdleDetector:
    """Tracks transitions between active, warned and paused.

    ``check`` never calls back into the tracker; it returns the events the
    transition produced and the caller acts on them.
    """

    def __init__(
        self,
        *,
        warning_seconds: int = IDLE_WARNING_SECONDS,
        activity_threshold: int = IDLE_ACTIVITY_THRESHOLD_SECONDS,
        min_idle_minutes_for_prompt: int = MIN_IDLE_MINUTES_FOR_PROMPT,
    ) -> None:
        self.warning_seconds = warning_seconds
        self.activity_threshold = activity_threshold
        self.min_idle_minutes_for_prompt = min_idle_minutes_for_prompt
        self.state = IdleState.ACTIVE
        self.idle_start: Optional[datetime] = None
        self.last_idle_period: Optional[IdlePeriod] = None

    @property
    def is_paused(self) -> bool:
        return self.state is IdleState.PAUSED

    def check(self, idle_seconds: int, now: datetime, idle_threshold: int) -> list[Event]:
        events: list[Event] = []
        if idle_seconds < self.activity_threshold:
            if self.state is IdleState.PAUSED:
                events.extend(self._return_from_idle(now))
            self.state = IdleState.ACTIVE
            return events

        if self.state is IdleState.ACTIVE and idle_seconds >= idle_threshold - self.warning_seconds:
            self.state = IdleState.WARNED
            logger.info("Idle warning: %ds without input", idle_seconds)
            events.append(IdleWarning(seconds_until_idle=self.warning_seconds))

        if self.state is not IdleState.PAUSED and idle_seconds >= idle_threshold:
            self.state = IdleState.PAUSED
            self.idle_start = now - timedelta(seconds=idle_seconds)
            logger.info("User idle detected, pausing tracking")
            events.append(TrackingPaused(reason="idle", idle_start_time=self.idle_start))
        return events

    def _return_from_idle(self, now: datetime) -> list[Event]:
        start = self.idle_start or now
        period = IdlePeriod(start=start, end=now, duration=max(0, int((now - start).total_seconds())))
        self.last_idle_period = period
        self.idle_start = None
        logger.info("User active again after %d minutes idle", period.minutes)
        if period.minutes > self.min_idle_minutes_for_prompt:
            return [IdleReturn(idle_period=period)]
        return []

    def take_idle_period(self) -> Optional[IdlePeriod]:
        period, self.last_idle_period = self.last_idle_period, None
        return period

    def reset(self) -> None:
        self.state = IdleState.ACTIVE
        self.idle_start = None
