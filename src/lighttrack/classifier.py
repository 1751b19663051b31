"""Derive activity descriptors from window observations and mapping tables."""

from __future__ import annotations

import logging
import re
import threading
from datetime import datetime
from typing import Any, Mapping, Optional

from .config import TrackerSettings
from .models import ActivityDescriptor, ActivityRecord, MappingTables, MappingTarget, Observation, add_unique
from .normalization import clean_title_for_comparison, is_browser_app

logger = logging.getLogger(__name__)

MEETINGS_PROJECT = "Meetings"
MAX_PATTERN_LENGTH = 200

JIRA_TICKET_PATTERN = re.compile(r"\b([A-Za-z]{2,10}-\d+)\b")
GITHUB_ISSUE_PATTERN = re.compile(r"#(\d+)")
MEETING_PATTERN = re.compile(
    r"meeting|standup|sync|review|retrospective|call|huddle|1:1|one.on.one", re.IGNORECASE
)
FEATURE_PATTERN = re.compile(r"feat|feature|implement|add", re.IGNORECASE)
BUGFIX_PATTERN = re.compile(r"fix|bug|issue|resolve", re.IGNORECASE)

# Classic Outlook desktop
OUTLOOK_MEETING = re.compile(r"^(.+?)\s*-\s*(?:Meeting|Appointment|Event)\s*-\s*(?:Microsoft\s*)?Outlook", re.IGNORECASE)
OUTLOOK_CALENDAR = re.compile(r"^Calendar\s*-\s*(.+?)\s*-\s*(?:Microsoft\s*)?Outlook", re.IGNORECASE)
OUTLOOK_EMAIL = re.compile(r"^(.+?)\s*-\s*Message\s*(?:\(HTML\))?\s*-?\s*(?:Microsoft\s*)?Outlook", re.IGNORECASE)
OUTLOOK_READING = re.compile(r"^(?:RE:|FW:|FWD:)?\s*(.+?)\s*-\s*(?:Microsoft\s*)?Outlook$", re.IGNORECASE)
OUTLOOK_INBOX = re.compile(
    r"^(?:Inbox|Sent Items|Drafts|Deleted Items)\s*-\s*(.+?)\s*-\s*(?:Microsoft\s*)?Outlook", re.IGNORECASE
)
OUTLOOK_COMPOSING = re.compile(r"^(?:Untitled|(?:RE:|FW:|FWD:)\s*.+?)\s*-\s*Message\s*(?:\(HTML\))?", re.IGNORECASE)

# New Outlook for Windows separates parts with a bullet
NEW_OUTLOOK_MEETING = re.compile(r"^(.+?)\s*[•·]\s*(?:Calendar|Event)\s*[-•·]?\s*(?:Microsoft\s*)?Outlook", re.IGNORECASE)
NEW_OUTLOOK_MAIL = re.compile(r"^(?:Mail|Inbox)\s*[•·]\s*(?:Microsoft\s*)?Outlook", re.IGNORECASE)
NEW_OUTLOOK_READING = re.compile(r"^(.+?)\s*[•·]\s*(?:Microsoft\s*)?Outlook(?:\s*\(PWA\))?$", re.IGNORECASE)

# Outlook on the web, seen through a browser title
OUTLOOK_WEB_MAIL = re.compile(r"^(?:Mail|Inbox)\s*-\s*.*?(?:@|Outlook)", re.IGNORECASE)
OUTLOOK_WEB_CALENDAR = re.compile(r"^(?:Calendar)\s*-\s*.*?(?:@|Outlook)", re.IGNORECASE)
OUTLOOK_WEB_MEETING = re.compile(r"^(.+?)\s*-\s*(?:Calendar|Event)\s*-\s*.*?(?:@|Outlook)", re.IGNORECASE)
OUTLOOK_WEB_READING = re.compile(r"^(?:RE:|FW:|FWD:)?\s*(.+?)\s*-\s*.*?(?:@|Outlook)", re.IGNORECASE)
OUTLOOK_WEB_HOSTS = ("outlook.office", "outlook.live", "outlook.com")

TEAMS_MEETING = re.compile(r"^(.+?)\s*\|\s*Microsoft Teams$", re.IGNORECASE)
TEAMS_CALL = re.compile(r"^(?:Call with|Meeting with|Calling)\s+(.+?)\s*(?:\||$)", re.IGNORECASE)
TEAMS_CHAT = re.compile(r"^(?:Chat|(.+?))\s*\|\s*Microsoft Teams$", re.IGNORECASE)
TEAMS_NON_MEETING_SUBJECTS = frozenset({"chat", "activity", "calendar", "teams", "files", "apps"})

VSCODE_PROJECT = re.compile(r"\s-\s([^-]+)\s-\s(?:Visual Studio Code|VSCode)")
IDE_PROJECT = re.compile(r"\s-\s([^-]+)(?:\s-\s|$)")

MEETING_APPS = ("zoom", "teams", "google meet", "skype", "webex", "slack huddle", "discord")
DEV_APPS = (
    "visual studio code",
    "vscode",
    "vs code",
    "visual studio",
    "intellij",
    "webstorm",
    "pycharm",
    "sublime",
    "atom",
    "neovim",
    "nvim",
    "vim",
)
# Process names that only count when they are the whole app name.
DEV_APPS_EXACT = ("code",)
NON_BILLABLE_PATTERNS = ("break", "lunch", "personal", "youtube", "netflix", "spotify")

_NESTED_QUANTIFIER = re.compile(r"\([^)]*[+*][^)]*\)[+*?]|\([^)]*[+*?][^)]*\)\{")
_OVERLAPPING_ALTERNATION = re.compile(r"\(([^|)]+)\|(\1)\)[+*]")
_CHAINED_QUANTIFIERS = re.compile(r"(\+|\*|\?|\{[^}]+\}){2,}")


def is_safe_regex(pattern: str) -> bool:
    """Screen a user-supplied pattern for catastrophic backtracking shapes."""
    if len(pattern) > MAX_PATTERN_LENGTH:
        return False
    if _NESTED_QUANTIFIER.search(pattern):
        return False
    if _OVERLAPPING_ALTERNATION.search(pattern):
        return False
    if _CHAINED_QUANTIFIERS.search(pattern):
        return False
    return True


def matches_app(app_name: str, candidate: str) -> bool:
    """Word-boundary match so that ``code`` does not hit ``Decode``."""
    return re.search(rf"\b{re.escape(candidate)}\b", app_name, re.IGNORECASE) is not None


class Classifier:
    """Pure classification pipeline with a memoized cache of user regexes."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._compiled: dict[str, Optional[re.Pattern[str]]] = {}

    def invalidate(self) -> None:
        with self._lock:
            self._compiled.clear()

    def classify(
        self,
        observation: Observation,
        tables: MappingTables,
        settings: TrackerSettings,
    ) -> ActivityDescriptor:
        descriptor = ActivityDescriptor(
            app=observation.app_name or "Unknown",
            title=observation.window_title or "",
            url=observation.url or None,
        )
        search_text = f"{descriptor.title} {descriptor.app}".lower()
        try:
            extract_tickets(descriptor)
            detect_outlook_activity(descriptor)
            detect_teams_activity(descriptor)
            detect_activity_type(descriptor, search_text)

            self._apply_meeting_mappings(descriptor, tables.meeting)
            apply_jira_mappings(descriptor, tables.jira)
            apply_url_mappings(descriptor, tables.url)
            self._apply_project_mappings(descriptor, tables.project, search_text)
            check_billability(descriptor, search_text)
        except Exception:
            logger.exception("Classification failed for %s; falling back to default project", descriptor.app)
        if not descriptor.project:
            descriptor.project = settings.default_project
        return descriptor

    def pattern(self, pattern: str) -> Optional[re.Pattern[str]]:
        """Return the compiled pattern, or ``None`` if it is unsafe or invalid."""
        with self._lock:
            if pattern in self._compiled:
                return self._compiled[pattern]
            compiled: Optional[re.Pattern[str]] = None
            if not is_safe_regex(pattern):
                logger.warning("Skipping potentially unsafe regex pattern: %s", pattern)
            else:
                try:
                    compiled = re.compile(pattern, re.IGNORECASE)
                except re.error as exc:
                    logger.warning("Invalid mapping pattern %r: %s", pattern, exc)
            self._compiled[pattern] = compiled
            return compiled

    def _apply_meeting_mappings(self, descriptor: ActivityDescriptor, mappings: Mapping[str, Any]) -> None:
        if not descriptor.meeting_subject or not mappings:
            return
        if descriptor.project and descriptor.project != MEETINGS_PROJECT:
            return
        subject = descriptor.meeting_subject.lower()
        for pattern, value in mappings.items():
            compiled = self.pattern(pattern)
            if compiled is None or not compiled.search(subject):
                continue
            if _apply_mapping_value(descriptor, value):
                return

    def _apply_project_mappings(
        self, descriptor: ActivityDescriptor, mappings: Mapping[str, Any], search_text: str
    ) -> None:
        if descriptor.project or not mappings:
            return
        for pattern, value in mappings.items():
            compiled = self.pattern(pattern)
            if compiled is None or not compiled.search(search_text):
                continue
            if _apply_mapping_value(descriptor, value):
                return


def _apply_mapping_value(descriptor: ActivityDescriptor, value: Any) -> bool:
    target = MappingTarget.from_value(value)
    if target is None:
        logger.warning("Ignoring mapping without a project: %r", value)
        return False
    descriptor.apply_target(target)
    return True


def extract_tickets(descriptor: ActivityDescriptor) -> None:
    """Collect JIRA keys (upper-cased) and GitHub issue refs from the title."""
    jira = [match.group(1).upper() for match in JIRA_TICKET_PATTERN.finditer(descriptor.title)]
    if jira:
        add_unique(descriptor.tickets, *jira)
        add_unique(descriptor.tags, "jira")
    github = [match.group(0) for match in GITHUB_ISSUE_PATTERN.finditer(descriptor.title)]
    if github:
        add_unique(descriptor.tickets, *github)
        add_unique(descriptor.tags, "github")


def _mark_meeting(descriptor: ActivityDescriptor, subject: str, app: str, *extra_tags: str) -> None:
    descriptor.meeting_subject = subject.strip()
    descriptor.meeting_app = app
    descriptor.activity_type = "meeting"
    add_unique(descriptor.tags, "meeting", *extra_tags)
    if not descriptor.project:
        descriptor.project = MEETINGS_PROJECT


def _mark_email(descriptor: ActivityDescriptor, kind: str, subject: Optional[str] = None) -> None:
    if kind == "reading":
        descriptor.email_subject = subject.strip() if subject else None
        descriptor.email_activity = "reading"
        descriptor.activity_type = "email-reading"
        add_unique(descriptor.tags, "email", "reading")
    elif kind == "composing":
        descriptor.email_activity = "composing"
        descriptor.activity_type = "email-composing"
        add_unique(descriptor.tags, "email", "composing")
    elif kind == "calendar":
        descriptor.email_activity = "calendar"
        descriptor.activity_type = "calendar"
        add_unique(descriptor.tags, "calendar")
    else:
        descriptor.email_activity = "inbox"
        descriptor.activity_type = "email"
        add_unique(descriptor.tags, "email")


def detect_outlook_activity(descriptor: ActivityDescriptor) -> None:
    """Recognize classic, new and web Outlook windows."""
    app_name = descriptor.app.lower()
    title = descriptor.title
    url = (descriptor.url or "").lower()

    is_web = any(host in url for host in OUTLOOK_WEB_HOSTS)
    is_desktop = "outlook" in app_name
    if not is_desktop and not is_web:
        return
    is_new = "•" in title or "·" in title or "(PWA)" in title

    add_unique(descriptor.tags, "outlook")
    if is_web:
        add_unique(descriptor.tags, "outlook-web")
    if is_new:
        add_unique(descriptor.tags, "new-outlook")

    if is_new:
        match = NEW_OUTLOOK_MEETING.search(title)
        if match:
            _mark_meeting(descriptor, match.group(1), "Outlook (New)")
            return
        if NEW_OUTLOOK_MAIL.search(title):
            _mark_email(descriptor, "inbox")
            return
        match = NEW_OUTLOOK_READING.search(title)
        if match:
            _mark_email(descriptor, "reading", match.group(1))
            return

    if is_web:
        if OUTLOOK_WEB_CALENDAR.search(title):
            _mark_email(descriptor, "calendar")
            return
        match = OUTLOOK_WEB_MEETING.search(title)
        if match:
            _mark_meeting(descriptor, match.group(1), "Outlook Web")
            return
        if OUTLOOK_WEB_MAIL.search(title):
            _mark_email(descriptor, "inbox")
            return
        match = OUTLOOK_WEB_READING.search(title)
        if match:
            _mark_email(descriptor, "reading", match.group(1))
            return

    match = OUTLOOK_MEETING.search(title)
    if match:
        _mark_meeting(descriptor, match.group(1), "Outlook")
        return
    if OUTLOOK_CALENDAR.search(title):
        _mark_email(descriptor, "calendar")
        return
    if OUTLOOK_INBOX.search(title):
        _mark_email(descriptor, "inbox")
        return
    if OUTLOOK_COMPOSING.search(title):
        _mark_email(descriptor, "composing")
        return
    match = OUTLOOK_EMAIL.search(title)
    if match:
        _mark_email(descriptor, "reading", match.group(1))
        return

    match = OUTLOOK_READING.search(title)
    lowered = title.lower()
    if match and "inbox" not in lowered and "calendar" not in lowered:
        _mark_email(descriptor, "reading", match.group(1))


def detect_teams_activity(descriptor: ActivityDescriptor) -> None:
    if "teams" not in descriptor.app.lower():
        return
    title = descriptor.title
    add_unique(descriptor.tags, "teams")

    match = TEAMS_CALL.search(title)
    if match:
        _mark_meeting(descriptor, match.group(1), "Teams", "call")
        return

    match = TEAMS_MEETING.search(title)
    if match:
        subject = match.group(1).strip()
        if subject.lower() not in TEAMS_NON_MEETING_SUBJECTS:
            _mark_meeting(descriptor, subject, "Teams")
            return

    match = TEAMS_CHAT.search(title)
    if match:
        descriptor.activity_type = "chat"
        add_unique(descriptor.tags, "chat")
        if match.group(1):
            descriptor.set_metadata("chat_with", match.group(1).strip())


def is_dev_app(app_name: str) -> bool:
    lowered = app_name.strip().lower()
    if lowered in DEV_APPS_EXACT:
        return True
    return any(matches_app(lowered, candidate) for candidate in DEV_APPS)


def detect_activity_type(descriptor: ActivityDescriptor, search_text: str) -> None:
    app_name = descriptor.app.lower()

    if MEETING_PATTERN.search(search_text) or any(matches_app(app_name, app) for app in MEETING_APPS):
        add_unique(descriptor.tags, "meeting")
        if not descriptor.project:
            descriptor.project = MEETINGS_PROJECT

    if is_dev_app(descriptor.app):
        add_unique(descriptor.tags, "development")
        if not descriptor.project:
            descriptor.project = project_from_ide_title(descriptor.title)

    if FEATURE_PATTERN.search(search_text):
        add_unique(descriptor.tags, "feature")
    if BUGFIX_PATTERN.search(search_text):
        add_unique(descriptor.tags, "bugfix")


def project_from_ide_title(title: str) -> Optional[str]:
    """``"main.py - billing - Visual Studio Code"`` gives ``"billing"``."""
    match = VSCODE_PROJECT.search(title) or IDE_PROJECT.search(title)
    if match:
        return match.group(1).strip() or None
    return None


def apply_jira_mappings(descriptor: ActivityDescriptor, mappings: Mapping[str, Any]) -> None:
    if descriptor.project or not mappings:
        return
    for ticket in descriptor.tickets:
        if "-" not in ticket:
            continue
        project_key = ticket.split("-", 1)[0]
        value = mappings.get(project_key) or mappings.get(project_key.lower())
        if value and _apply_mapping_value(descriptor, value):
            return


def apply_url_mappings(descriptor: ActivityDescriptor, mappings: Mapping[str, Any]) -> None:
    if descriptor.project or not descriptor.url or not mappings:
        return
    url = descriptor.url.lower()
    for pattern, value in mappings.items():
        if pattern and pattern.lower() in url and _apply_mapping_value(descriptor, value):
            return


def check_billability(descriptor: ActivityDescriptor, search_text: str) -> None:
    if any(pattern in search_text for pattern in NON_BILLABLE_PATTERNS):
        descriptor.billable = False
        add_unique(descriptor.tags, "break")


def can_continue(
    current: ActivityRecord,
    incoming: ActivityDescriptor,
    settings: TrackerSettings,
    now: datetime,
) -> bool:
    """Decide whether ``incoming`` extends the live record instead of starting a new one."""
    if current.app != incoming.app:
        return False
    same_project = current.project == incoming.project
    same_title = current.title == incoming.title

    if not settings.smart_sampling_enabled:
        return same_title and same_project

    age = (now - current.start_time).total_seconds()
    if age < settings.activity_leniency:
        return same_project

    if not settings.consolidate_activities:
        return same_title and same_project

    if is_browser_app(current.app) and current.url and incoming.url:
        return current.url == incoming.url

    if not same_project:
        return False
    mode = settings.consolidation_mode
    if mode == "strict":
        return same_title
    if mode == "relaxed":
        return True
    return is_similar_activity(current, incoming)


def is_similar_activity(current: ActivityRecord, incoming: ActivityDescriptor) -> bool:
    if set(current.tickets) & set(incoming.tickets):
        return True
    if len(set(current.tags) & set(incoming.tags)) >= 2:
        return True
    return clean_title_for_comparison(current.title) == clean_title_for_comparison(incoming.title)
