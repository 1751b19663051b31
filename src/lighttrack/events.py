"""Observer events and the in-process event bus."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Union

from .models import ActivityRecord, IdlePeriod

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TrackingUpdate:
    is_tracking: bool
    current_activity: Optional[ActivityRecord]
    session_start: Optional[datetime]
    last_active: Optional[datetime]
    sampling_rate_seconds: float
    focus_session: Optional[dict[str, Any]]
    is_paused: bool
    last_idle_period: Optional[IdlePeriod]


@dataclass(slots=True)
class IdleWarning:
    seconds_until_idle: int


@dataclass(slots=True)
class TrackingPaused:
    reason: str
    idle_start_time: datetime


@dataclass(slots=True)
class IdleReturn:
    idle_period: IdlePeriod


@dataclass(slots=True)
class TrackingStatusChanged:
    is_tracking: bool


Event = Union[TrackingUpdate, IdleWarning, TrackingPaused, IdleReturn, TrackingStatusChanged]
Subscriber = Callable[[Event], None]


class EventBus:
    """Fan events out to subscribers; a failing subscriber never reaches the publisher."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return unsubscribe

    def publish(self, event: Event) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception:
                logger.exception("Event subscriber failed for %s", type(event).__name__)
