"""Exception types shared across the tracking engine."""

from __future__ import annotations


class LightTrackError(Exception):
    """Base class for engine errors."""


class ProbeError(LightTrackError):
    """The platform probe could not answer."""


class ProbeTransientError(ProbeError):
    """The OS call failed but may succeed on retry."""


class ProbeUnavailableError(ProbeError):
    """Foreground window tracking is not supported on this platform."""


class StoreError(LightTrackError):
    """Reading or writing the data file failed."""


class StoreCorruptionError(StoreError):
    """The data file exists but its contents could not be decoded."""
