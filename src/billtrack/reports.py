"""Breakdowns of ledger entries by day, week and client."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from billtrack.ledger import EntryLedger, summary_by_client
from billtrack.models import TimeEntry, normalize_timestamp


class TimeRange(enum.Enum):
    TODAY = "today"
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
    ALL = "all"

    @property
    def label(self) -> str:
        return {
            TimeRange.TODAY: "Today",
            TimeRange.WEEK: "Last 7 Days",
            TimeRange.MONTH: "Last 30 Days",
            TimeRange.QUARTER: "Last 3 Months",
            TimeRange.ALL: "All Time",
        }[self]


def _months_back(dt: datetime, months: int) -> datetime:
    """Same day-of-month `months` earlier, clamped to the end of shorter months."""
    month_index = dt.year * 12 + dt.month - 1 - months
    year, month = divmod(month_index, 12)
    month += 1
    for day in range(dt.day, 27, -1):
        try:
            return dt.replace(year=year, month=month, day=day)
        except ValueError:
            continue
    return dt.replace(year=year, month=month, day=min(dt.day, 28))


def range_start(time_range: TimeRange, now: datetime) -> datetime | None:
    """Get the inclusive lower bound of a range, or None for unbounded ranges."""
    if time_range is TimeRange.WEEK:
        return now - timedelta(days=7)
    if time_range is TimeRange.MONTH:
        return _months_back(now, 1)
    if time_range is TimeRange.QUARTER:
        return _months_back(now, 3)
    return None


def entries_for_range(
    ledger: EntryLedger, time_range: TimeRange, now: datetime | None = None
) -> list[TimeEntry]:
    """Select ledger entries for a time range ending at now."""
    now = normalize_timestamp(now if now is not None else datetime.now())
    if time_range is TimeRange.TODAY:
        return ledger.today(now)
    start = range_start(time_range, now)
    if start is None:
        return ledger.all()
    return ledger.by_date_range(start, now)


@dataclass
class DayBreakdown:
    day: date
    clients: dict[str, int] = field(default_factory=dict)
    total_minutes: int = 0


@dataclass
class WeekBreakdown:
    week_start: date
    clients: dict[str, int] = field(default_factory=dict)
    total_minutes: int = 0

    @property
    def label(self) -> str:
        """Format as 'Jan 20 - Jan 24' (Monday to Friday)."""
        friday = self.week_start + timedelta(days=4)
        return f"{self.week_start.strftime('%b')} {self.week_start.day} - {friday.strftime('%b')} {friday.day}"


@dataclass
class ClientSummary:
    client: str
    total_minutes: int
    percentage: float


def _local_day(entry: TimeEntry) -> date:
    return entry.start_time.astimezone().date()


def group_by_day(entries: list[TimeEntry]) -> list[DayBreakdown]:
    """Group entries by local start day, most recent day first."""
    days: dict[date, DayBreakdown] = {}
    for entry in entries:
        day = _local_day(entry)
        breakdown = days.setdefault(day, DayBreakdown(day=day))
        breakdown.clients[entry.client] = breakdown.clients.get(entry.client, 0) + entry.duration_minutes
        breakdown.total_minutes += entry.duration_minutes
    return sorted(days.values(), key=lambda d: d.day, reverse=True)


def group_by_week(entries: list[TimeEntry]) -> list[WeekBreakdown]:
    """Group entries by the Monday of their local start week, most recent first."""
    weeks: dict[date, WeekBreakdown] = {}
    for entry in entries:
        day = _local_day(entry)
        monday = day - timedelta(days=day.weekday())
        breakdown = weeks.setdefault(monday, WeekBreakdown(week_start=monday))
        breakdown.clients[entry.client] = breakdown.clients.get(entry.client, 0) + entry.duration_minutes
        breakdown.total_minutes += entry.duration_minutes
    return sorted(weeks.values(), key=lambda w: w.week_start, reverse=True)


def client_summaries(entries: list[TimeEntry]) -> list[ClientSummary]:
    """Total billed minutes per client with share of the overall total."""
    totals = summary_by_client(entries)
    grand_total = sum(totals.values())
    summaries = [
        ClientSummary(
            client=client,
            total_minutes=minutes,
            percentage=round(minutes * 100 / grand_total, 1) if grand_total > 0 else 0.0,
        )
        for client, minutes in totals.items()
    ]
    return sorted(summaries, key=lambda s: s.total_minutes, reverse=True)


def day_label(day: date, today: date | None = None) -> str:
    """Format a day as 'Today', 'Yesterday' or e.g. 'Tue, Jan 21'."""
    if today is None:
        today = date.today()
    if day == today:
        return "Today"
    if day == today - timedelta(days=1):
        return "Yesterday"
    return f"{day.strftime('%a, %b')} {day.day}"


def make_progress_bar(value: int, max_value: int, width: int = 16) -> str:
    """Draw a client's billed minutes as a bar for `summary`.

    Any non-zero share shows at least one filled cell, so small clients
    stay visible next to large ones.

    Args:
        value: Billed minutes for the client.
        max_value: Billed minutes of the largest client (a full bar).
        width: Number of cells (default: 16).

    Returns:
        Bar string like '████████░░░░░░░░'.
    """
    if max_value == 0 or value == 0:
        return "░" * width
    filled = max(1, min(width, round((value / max_value) * width)))
    return "█" * filled + "░" * (width - filled)
