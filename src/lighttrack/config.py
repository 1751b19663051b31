"""Configuration models and helpers for the tracking engine."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

# Sampler
BASE_SAMPLE_INTERVAL_SECONDS = 5.0
MAX_SAMPLE_INTERVAL_SECONDS = 60.0
SAMPLE_INCREMENT_SECONDS = 5.0
STABLE_SAMPLE_THRESHOLD = 3
ACTIVE_WINDOW_RETRY_COUNT = 3
ACTIVE_WINDOW_RETRY_DELAY_SECONDS = 0.1
STOP_WAIT_SECONDS = 5.0

# Idle detection
IDLE_CHECK_INTERVAL_SECONDS = 10.0
IDLE_WARNING_SECONDS = 30
IDLE_ACTIVITY_THRESHOLD_SECONDS = 5
MIN_IDLE_MINUTES_FOR_PROMPT = 1
IDLE_PAUSE_WAIT_SECONDS = 2.0

# Consolidation
MAX_CHECKSUM_CACHE_SIZE = 50
ENRICHMENT_LOCK_TIMEOUT_SECONDS = 1.0

# Focus sessions
MIN_FOCUS_SESSION_SECONDS = 300
LONG_FOCUS_SESSION_SECONDS = 3600
FOCUS_BASE_QUALITY = 100
FOCUS_DISTRACTION_PENALTY = 10
FOCUS_LONG_SESSION_BONUS = 10

# Storage
ACTIVITY_CACHE_TTL_SECONDS = 5.0
MAX_ACTIVITIES = 10_000
DATA_VERSION = "3.0.0"

# Ingress
INGRESS_HOST = "127.0.0.1"
INGRESS_PORT = 41417
RATE_LIMIT_PER_MINUTE = 60
RATE_LIMIT_WINDOW_SECONDS = 60.0
BROWSER_ACTIVITY_MAX_BYTES = 10_000
PAGE_CONTEXT_MAX_BYTES = 50_000

CONSOLIDATION_MODES = ("strict", "relaxed", "smart")

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


@dataclass(slots=True)
class TrackerSettings:
    """User-editable settings persisted under the ``settings`` key."""

    idle_threshold: int = 180
    min_activity_duration: int = 60
    smart_sampling_enabled: bool = True
    consolidate_activities: bool = True
    consolidation_mode: str = "smart"
    merge_gap_threshold: int = 300
    activity_leniency: int = 120
    default_project: str = "General"
    work_day_start: str = "09:00"
    work_day_end: str = "17:00"
    track_focus_sessions: bool = True
    focus_retention_days: int = 30
    data_retention_days: int = 90
    auto_cleanup_enabled: bool = False
    max_activities: int = MAX_ACTIVITIES

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "TrackerSettings":
        """Build settings from a stored map, ignoring unknown keys.

        Keys may be snake_case or the camelCase spelling older data files use.
        """
        known = {f.name: f for f in fields(cls)}
        values: dict[str, Any] = {}
        for key, value in (raw or {}).items():
            name = _CAMEL_BOUNDARY.sub("_", key).lower()
            if name not in known or value is None:
                continue
            values[name] = value
        settings = cls(**values)
        if settings.consolidation_mode not in CONSOLIDATION_MODES:
            settings.consolidation_mode = "smart"
        if not settings.default_project:
            settings.default_project = "General"
        return settings

    def to_mapping(self) -> dict[str, Any]:
        return asdict(self)


class EngineConfig(BaseSettings):
    """Process configuration read from ``LIGHTTRACK_*`` environment variables."""

    model_config = SettingsConfigDict(env_prefix="LIGHTTRACK_", case_sensitive=False)

    env: str = "production"
    host: str = INGRESS_HOST
    port: int = INGRESS_PORT
    data_dir: Optional[Path] = None
    port_collision_fatal: bool = False

    @property
    def dev_mode(self) -> bool:
        return self.env.lower() == "development"
