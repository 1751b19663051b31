"""Simple reporting utilities for CLI output."""

from __future__ import annotations

from collections import defaultdict
from datetime import date
from typing import Iterable

from .models import ActivityFilter, ActivityRecord
from .storage import ActivityStore


class SummaryPrinter:
    """Render human-readable summaries in the console."""

    def __init__(self, store: ActivityStore) -> None:
        self.store = store

    def print_daily_summary(self, day: date) -> None:
        records = self.store.list_activities(ActivityFilter(date=day))
        if not records:
            print("No activity recorded for the selected day.")
            return

        total = sum(record.duration for record in records)
        billable = sum(record.duration for record in records if record.billable)
        excluded = sum(
            period.duration for record in records for period in record.idle_periods if period.excluded
        )

        print(f"Summary for {day.isoformat()}")
        print("-" * 40)
        print(f"Tracked time:  {format_duration(total)}")
        print(f"Billable time: {format_duration(billable)}")
        print(f"Idle excluded: {format_duration(excluded)}")
        print()

        projects = aggregate_by_project(records)
        if projects:
            print("Projects:")
            for project, seconds in projects[:10]:
                print(f"  {project:<30} {format_duration(seconds)}")

        top_apps = aggregate_by_app(records)
        if top_apps:
            print()
            print("Top applications:")
            for app_name, seconds in top_apps[:5]:
                print(f"  {app_name:<30} {format_duration(seconds)}")


def aggregate_by_project(records: Iterable[ActivityRecord]) -> list[tuple[str, int]]:
    totals: defaultdict[str, int] = defaultdict(int)
    for record in records:
        totals[record.project or "(none)"] += record.duration
    return sorted(totals.items(), key=lambda item: item[1], reverse=True)


def aggregate_by_app(records: Iterable[ActivityRecord]) -> list[tuple[str, int]]:
    totals: defaultdict[str, int] = defaultdict(int)
    for record in records:
        totals[record.app or "Unknown"] += record.duration
    return sorted(totals.items(), key=lambda item: item[1], reverse=True)


def format_duration(seconds: float) -> str:
    total_seconds = int(round(seconds))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
