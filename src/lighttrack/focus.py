"""Focus sessions: stretches of work on one project, scored for distractions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from .config import (
    FOCUS_BASE_QUALITY,
    FOCUS_DISTRACTION_PENALTY,
    FOCUS_LONG_SESSION_BONUS,
    LONG_FOCUS_SESSION_SECONDS,
    MIN_FOCUS_SESSION_SECONDS,
    TrackerSettings,
)
from .errors import StoreError
from .models import ActivityDescriptor, FocusSession, new_id
from .storage import ActivityStore

logger = logging.getLogger(__name__)

DISTRACTION_APPS = ("slack", "discord", "teams", "whatsapp", "telegram", "facebook", "twitter")


def focus_quality(duration: int, distractions: int) -> int:
    quality = FOCUS_BASE_QUALITY - distractions * FOCUS_DISTRACTION_PENALTY
    if duration > LONG_FOCUS_SESSION_SECONDS:
        quality += FOCUS_LONG_SESSION_BONUS
    return max(0, min(FOCUS_BASE_QUALITY + FOCUS_LONG_SESSION_BONUS, quality))


@dataclass(slots=True)
class OpenSession:
    start: datetime
    project: Optional[str]
    distractions: int = 0
    duration: int = 0


class FocusTracker:
    def __init__(self, store: ActivityStore, settings: Callable[[], TrackerSettings]) -> None:
        self._store = store
        self._settings = settings
        self._session: Optional[OpenSession] = None

    @property
    def has_session(self) -> bool:
        return self._session is not None

    def update(self, descriptor: ActivityDescriptor, now: datetime) -> None:
        settings = self._settings()
        if not settings.track_focus_sessions:
            return
        session = self._session
        if session is None:
            session = self._open(descriptor, now)
        elif descriptor.project != session.project:
            app_name = descriptor.app.lower()
            if any(name in app_name for name in DISTRACTION_APPS):
                session.distractions += 1
            else:
                self.save(settings, now)
                session = self._open(descriptor, now)
        session.duration = max(0, int((now - session.start).total_seconds()))

    def _open(self, descriptor: ActivityDescriptor, now: datetime) -> OpenSession:
        self._session = OpenSession(start=now, project=descriptor.project)
        return self._session

    def save(self, settings: TrackerSettings, now: datetime) -> Optional[FocusSession]:
        session = self._session
        if session is None or session.duration < MIN_FOCUS_SESSION_SECONDS:
            return None
        record = FocusSession(
            id=new_id(),
            date=session.start,
            project=session.project,
            duration=session.duration,
            distractions=session.distractions,
            quality=focus_quality(session.duration, session.distractions),
        )
        try:
            self._store.add_focus_session(record, retention_days=settings.focus_retention_days, now=now)
        except StoreError:
            logger.exception("Failed to save focus session for %s", session.project)
            return None
        logger.debug("Focus session saved: %s (quality %d)", record.project, record.quality)
        return record

    def close(self, now: datetime) -> Optional[FocusSession]:
        saved = self.save(self._settings(), now)
        self._session = None
        return saved

    def current(self) -> Optional[dict[str, Any]]:
        session = self._session
        if session is None:
            return None
        return {
            "project": session.project,
            "duration": session.duration,
            "distractions": session.distractions,
            "quality": focus_quality(session.duration, session.distractions),
        }

    def stats(self, now: datetime) -> dict[str, float]:
        try:
            sessions = self._store.focus_sessions()
        except StoreError:
            logger.exception("Failed to read focus sessions")
            sessions = []
        today = [session for session in sessions if session.date.date() == now.date()]
        total_time = sum(session.duration for session in sessions)
        return {
            "total_sessions": len(sessions),
            "today_sessions": len(today),
            "total_focus_time": total_time,
            "average_session_length": total_time / len(sessions) if sessions else 0,
            "average_quality": sum(s.quality for s in sessions) / len(sessions) if sessions else 0,
            "today_quality": sum(s.quality for s in today) / len(today) if today else 0,
        }
