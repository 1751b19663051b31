"""Clock and foreground-window probes."""

from __future__ import annotations

import ctypes
import logging
import sys
import time
from datetime import date, datetime
from typing import Any, Optional, Protocol

import psutil

from .config import ACTIVE_WINDOW_RETRY_COUNT, ACTIVE_WINDOW_RETRY_DELAY_SECONDS
from .errors import ProbeTransientError, ProbeUnavailableError
from .models import Observation
from .normalization import display_app_name, normalize_window_title

logger = logging.getLogger(__name__)


class Clock(Protocol):
    def now(self) -> datetime: ...

    def monotonic(self) -> float: ...

    def local_date(self, timestamp: datetime) -> date: ...


class SystemClock:
    """Wall clock in local time plus a monotonic clock."""

    def now(self) -> datetime:
        return datetime.now()

    def monotonic(self) -> float:
        return time.monotonic()

    def local_date(self, timestamp: datetime) -> date:
        if timestamp.tzinfo is not None:
            timestamp = timestamp.astimezone()
        return timestamp.date()


class PlatformProbe(Protocol):
    def active_window(self) -> Optional[Observation]: ...

    def system_idle_seconds(self) -> int: ...


class MeetingsProvider(Protocol):
    """Read-only source of calendar meetings for the embedding application."""

    def meetings_between(self, start: datetime, end: datetime) -> list[dict[str, Any]]: ...


class WindowsIdleProbe:
    """Reads the time since the last keyboard or mouse input through Win32."""

    def __init__(self) -> None:
        from ctypes import wintypes

        class LASTINPUTINFO(ctypes.Structure):
            _fields_ = [("cbSize", wintypes.UINT), ("dwTime", wintypes.DWORD)]

        self._info_type = LASTINPUTINFO
        self._user32 = ctypes.windll.user32  # type: ignore[attr-defined]
        self._kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]

    def milliseconds_since_input(self) -> int:
        last_input = self._info_type()
        last_input.cbSize = ctypes.sizeof(last_input)
        if not self._user32.GetLastInputInfo(ctypes.byref(last_input)):
            raise ctypes.WinError()  # type: ignore[attr-defined]
        # dwTime wraps with the 32-bit tick counter
        elapsed = (self._kernel32.GetTickCount64() & 0xFFFFFFFF) - last_input.dwTime
        return int(elapsed) if elapsed >= 0 else 0


class WindowsActiveWindowProbe:
    """Retrieves the foreground window title and process name."""

    def __init__(self) -> None:
        from ctypes import wintypes

        self._wintypes = wintypes
        self._user32 = ctypes.windll.user32  # type: ignore[attr-defined]
        self._idle = WindowsIdleProbe()

    def active_window(self) -> Optional[Observation]:
        try:
            hwnd = self._user32.GetForegroundWindow()
        except OSError as exc:
            raise ProbeTransientError(str(exc)) from exc
        if not hwnd:
            return None

        length = self._user32.GetWindowTextLengthW(hwnd)
        buffer = ctypes.create_unicode_buffer(length + 1)
        self._user32.GetWindowTextW(hwnd, buffer, length + 1)
        raw_title = buffer.value.strip() or None

        pid = self._wintypes.DWORD()
        self._user32.GetWindowThreadProcessId(hwnd, ctypes.byref(pid))
        process_name: Optional[str]
        try:
            if pid.value:
                process_name = psutil.Process(pid.value).name()
            else:
                process_name = None
        except (psutil.Error, ProcessLookupError):
            process_name = None

        if process_name is None and raw_title is None:
            return None
        return Observation(
            app_name=display_app_name(process_name) or "Unknown",
            window_title=normalize_window_title(process_name, raw_title) or "",
            captured_at=datetime.now(),
        )

    def system_idle_seconds(self) -> int:
        return self._idle.milliseconds_since_input() // 1000


class UnsupportedProbe:
    """Probe for platforms without a foreground-window implementation."""

    def active_window(self) -> Optional[Observation]:
        raise ProbeUnavailableError(f"Foreground window tracking is not supported on {sys.platform}")

    def system_idle_seconds(self) -> int:
        return 0


def create_probe() -> PlatformProbe:
    if sys.platform == "win32":
        return WindowsActiveWindowProbe()
    return UnsupportedProbe()


def active_window_with_retry(
    probe: PlatformProbe,
    retries: int = ACTIVE_WINDOW_RETRY_COUNT,
    delay: float = ACTIVE_WINDOW_RETRY_DELAY_SECONDS,
    sleep=time.sleep,
) -> Optional[Observation]:
    """Query the active window, retrying transient failures.

    Returns ``None`` when there is no window or the retries are exhausted.
    ``ProbeUnavailableError`` propagates to the caller.
    """
    attempt = 0
    while True:
        try:
            return probe.active_window()
        except ProbeTransientError as exc:
            if attempt >= retries:
                logger.error("Failed to get active window after %d retries: %s", retries, exc)
                return None
            attempt += 1
            sleep(delay)
