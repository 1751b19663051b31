"""Title and app-name cleanup shared by the probe and the classifier."""

from __future__ import annotations

import re
from typing import Optional

# Process name -> the branding the browser appends to the active tab title.
_BROWSER_BRANDING: dict[str, str] = {
    "msedge.exe": "Microsoft Edge",
    "chrome.exe": "Google Chrome",
    "chromium.exe": "Chromium",
    "firefox.exe": "Mozilla Firefox",
    "brave.exe": "Brave",
    "opera.exe": "Opera",
    "vivaldi.exe": "Vivaldi",
}

BROWSER_APPS = ("chrome", "chromium", "firefox", "safari", "edge", "opera", "brave", "vivaldi")

_EXTRA_TAB_COUNT_PATTERN = re.compile(r"\s+and\s+\d+\s+more\s+pages?", re.IGNORECASE)


def normalize_window_title(process_name: Optional[str], window_title: Optional[str]) -> Optional[str]:
    """Strip browser branding and tab counters so the tab name is what remains."""
    title = (window_title or "").strip()
    if not title:
        return None

    branding = _BROWSER_BRANDING.get((process_name or "").lower())
    if branding and title.endswith(branding):
        title = title[: -len(branding)].rstrip(" -")

    title = _EXTRA_TAB_COUNT_PATTERN.sub("", title).strip(" -|")
    return " ".join(title.split()) or None


def display_app_name(process_name: Optional[str]) -> Optional[str]:
    """Turn ``chrome.exe`` into ``chrome`` for matching and display."""
    if not process_name:
        return None
    name = process_name.strip()
    if name.lower().endswith(".exe"):
        name = name[:-4]
    return name or None


def is_browser_app(app_name: str) -> bool:
    lowered = app_name.lower()
    return any(browser in lowered for browser in BROWSER_APPS)


# Only short trailing counters go; versions, dated IDs and "file2.txt" survive.
_TRAILING_COUNTER_PATTERN = re.compile(r"\s*[(\[#]\d{1,2}[)\]]?\s*$")
_TRAILING_CLOCK_PATTERN = re.compile(r"\s*-?\s*\d{1,2}:\d{2}(:\d{2})?\s*$")


def clean_title_for_comparison(title: str) -> str:
    """Lower-case a title and drop trailing counters and clock times."""
    cleaned = title.lower()
    cleaned = _TRAILING_COUNTER_PATTERN.sub("", cleaned)
    cleaned = _TRAILING_CLOCK_PATTERN.sub("", cleaned)
    return re.sub(r"\s+", " ", cleaned).strip()
