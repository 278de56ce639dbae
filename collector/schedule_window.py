"""
Schedule Window Evaluator

Decides which routes are due for collection right now, and materializes the
full weekly schedule for previews and cron generation.

A schedule entry is anchored on a collect-at time:
  - depart entries: the depart time itself
  - arrive entries: arrive time minus ARRIVE_LEAD_MINUTES
    (30 min assumed travel + 15 min buffer, a static estimate)

A route is due when the current minute lies in
[anchor - before, anchor + after], both ends inclusive.

Windows are evaluated on a continuous timeline, so a window that crosses
midnight (anchor 00:05 with before=15, or an arrive entry at 00:15 whose
anchor falls on the previous evening) still matches. The scheduled day
recorded for such a match is the entry's own day.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from route_config import Route, ScheduleEntry, clock_to_minutes

logger = logging.getLogger(__name__)

ASSUMED_TRAVEL_MINUTES = 30
ARRIVE_BUFFER_MINUTES = 15
ARRIVE_LEAD_MINUTES = ASSUMED_TRAVEL_MINUTES + ARRIVE_BUFFER_MINUTES

MINUTES_PER_DAY = 24 * 60

DAY_NAMES = {
    1: "Monday", 2: "Tuesday", 3: "Wednesday", 4: "Thursday",
    5: "Friday", 6: "Saturday", 7: "Sunday",
}


@dataclass(frozen=True)
class ScheduleContext:
    """Resolved schedule for one collection of one route."""
    route: Route
    mode: str                 # "depart" | "arrive"
    scheduled_time: str       # nominal HH:MM; the baseline slot label
    collect_at: str           # anchor HH:MM
    scheduled_day: int        # ISO day the slot belongs to
    entry: Optional[ScheduleEntry] = None


@dataclass(frozen=True)
class ScheduleSlot:
    """One (day, entry) pair of the materialized schedule."""
    route_id: str
    label: str
    mode: str
    time: str
    collect_at: str


def minutes_to_clock(minutes: int) -> str:
    minutes %= MINUTES_PER_DAY
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def anchor_minutes(entry: ScheduleEntry) -> Optional[int]:
    """
    Collect-at time in minutes from the entry day's midnight.

    Negative for arrive entries early enough that the anchor falls on the
    previous evening.
    """
    if entry.depart is not None:
        return clock_to_minutes(entry.depart)
    if entry.arrive is not None:
        return clock_to_minutes(entry.arrive) - ARRIVE_LEAD_MINUTES
    return None


def collect_at(entry: ScheduleEntry) -> Optional[str]:
    anchor = anchor_minutes(entry)
    return None if anchor is None else minutes_to_clock(anchor)


def in_window(current_minute: int, anchor: int, before: int, after: int) -> bool:
    """Both boundaries are inclusive."""
    return anchor - before <= current_minute <= anchor + after


def _matching_day(entry: ScheduleEntry, iso_day: int, current_minute: int,
                  before: int, after: int) -> Optional[int]:
    """Return the entry day whose window contains now, if any."""
    anchor = anchor_minutes(entry)
    if anchor is None:
        return None

    # today first, then an entry from yesterday running past midnight,
    # then an entry from tomorrow whose window opens before midnight
    for days_since_entry in (0, 1, -1):
        entry_day = (iso_day - 1 - days_since_entry) % 7 + 1
        if entry_day not in entry.days:
            continue
        relative = current_minute + days_since_entry * MINUTES_PER_DAY
        if in_window(relative, anchor, before, after):
            return entry_day
    return None


def is_due(route: Route, now: datetime, before: int, after: int) -> Optional[ScheduleContext]:
    """
    Return a ScheduleContext if `now` falls in one of the route's windows.

    Only the first matching entry counts; later entries are not evaluated.
    Seconds are ignored.
    """
    iso_day = now.isoweekday()
    current_minute = now.hour * 60 + now.minute

    for entry in route.schedule:
        if entry.is_inert:
            continue
        entry_day = _matching_day(entry, iso_day, current_minute, before, after)
        if entry_day is not None:
            return ScheduleContext(
                route=route,
                mode=entry.mode,
                scheduled_time=entry.time,
                collect_at=collect_at(entry),
                scheduled_day=entry_day,
                entry=entry,
            )
    return None


def active_routes(routes: Iterable[Route], now: datetime,
                  before: int, after: int) -> List[ScheduleContext]:
    """All routes that are due at `now`, at most one context per route."""
    due = []
    for route in routes:
        context = is_due(route, now, before, after)
        if context is not None:
            due.append(context)
    return due


def forced_context(route: Route, now: datetime) -> ScheduleContext:
    """
    Context for a forced run: the first schedule entry only labels the
    measurement; there is no window check.
    """
    entry = route.schedule[0] if route.schedule else None
    if entry is None or entry.is_inert:
        label = now.strftime("%H:%M")
        return ScheduleContext(
            route=route, mode="depart", scheduled_time=label,
            collect_at=label, scheduled_day=now.isoweekday(), entry=entry,
        )
    return ScheduleContext(
        route=route,
        mode=entry.mode,
        scheduled_time=entry.time,
        collect_at=now.strftime("%H:%M"),
        scheduled_day=now.isoweekday(),
        entry=entry,
    )


# ---------------------------------------------------------------------------
# Full schedule materialization
# ---------------------------------------------------------------------------

def full_schedule(routes: Iterable[Route]) -> Dict[int, List[ScheduleSlot]]:
    """
    Every (day, entry) pair, grouped by ISO day and sorted by collect-at.
    Days are returned in ascending order.
    """
    schedule: Dict[int, List[ScheduleSlot]] = defaultdict(list)
    for route in routes:
        for entry in route.schedule:
            if entry.is_inert:
                continue
            for day in entry.days:
                schedule[day].append(ScheduleSlot(
                    route_id=route.id,
                    label=route.label,
                    mode=entry.mode,
                    time=entry.time,
                    collect_at=collect_at(entry),
                ))

    return {
        day: sorted(schedule[day], key=lambda s: (s.collect_at, s.route_id))
        for day in sorted(schedule)
    }


def cron_lines(routes: Iterable[Route], before: int, after: int,
               command: str, step: int = 5) -> List[str]:
    """
    Suggested crontab lines that fire the collector inside every window.

    Minute marks run every `step` minutes from anchor - before to
    anchor + after and are split per hour (and per day when the window
    crosses midnight).
    """
    # (label, hour, minute) -> ISO days, in first-seen order
    marks: Dict[tuple, set] = {}
    for route in routes:
        for entry in route.schedule:
            anchor = anchor_minutes(entry)
            if anchor is None:
                continue
            for day in entry.days:
                for offset in range(-before, after + 1, step):
                    day_shift, minute_of_day = divmod(anchor + offset, MINUTES_PER_DAY)
                    hour, minute = divmod(minute_of_day, 60)
                    cron_day = (day - 1 + day_shift) % 7 + 1
                    marks.setdefault((route.label, hour, minute), set()).add(cron_day)

    # one line per (label, hour, day set)
    lines_by_key: Dict[tuple, set] = {}
    for (label, hour, minute), days in marks.items():
        lines_by_key.setdefault((label, hour, tuple(sorted(days))), set()).add(minute)

    lines = []
    for (label, hour, days), minutes in lines_by_key.items():
        minute_field = ",".join(str(m) for m in sorted(minutes))
        # cron numbers Sunday as 0
        day_field = ",".join(str(d) for d in sorted(d % 7 for d in days))
        lines.append(f"# {label}")
        lines.append(f"{minute_field} {hour} * * {day_field} {command}")
    return lines
