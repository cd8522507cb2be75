"""CLI entry point for billtrack."""

from __future__ import annotations

import functools
import json
import logging
import re
import sys
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Callable

import click

from billtrack.errors import InvalidInputError, TrackerError
from billtrack.models import ActiveTracking, IdleState, TimeEntry, clean_client
from billtrack.reports import (
    TimeRange,
    client_summaries,
    day_label,
    entries_for_range,
    group_by_day,
    group_by_week,
    make_progress_bar,
)
from billtrack.rounding import format_duration
from billtrack.tracker import (
    IDLE_THRESHOLD_MINUTES,
    IdleCheckOutcome,
    LongSessionResolution,
    TimeTracker,
)

DEFAULT_DATA_DIR = Path.home() / ".local" / "share" / "billtrack"

_CLOCK_TIME = re.compile(r"^(\d{1,2}):(\d{2})$")


def parse_time(value: str, on_date: date | None = None) -> datetime:
    """Parse 'HH:MM' (local time on `on_date`, default today) or an ISO 8601 timestamp.

    Raises:
        click.BadParameter: If the value is neither.
    """
    value = value.strip()
    match = _CLOCK_TIME.match(value)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour > 23 or minute > 59:
            raise click.BadParameter(f"Invalid time: {value}. Use HH:MM.")
        day = on_date or date.today()
        return datetime(day.year, day.month, day.day, hour, minute).astimezone()
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise click.BadParameter(f"Invalid time: {value}. Use HH:MM or ISO 8601.") from None
    return parsed if parsed.tzinfo else parsed.astimezone()


def format_clock(dt: datetime) -> str:
    return dt.astimezone().strftime("%H:%M")


class TimeParamType(click.ParamType):
    name = "time"

    def convert(self, value: Any, param: click.Parameter | None, ctx: click.Context | None) -> datetime:
        if isinstance(value, datetime):
            return value
        try:
            return parse_time(value)
        except click.BadParameter as e:
            self.fail(e.message, param, ctx)


TIME = TimeParamType()


def handle_errors(f: Callable[..., Any]) -> Callable[..., Any]:
    """Report tracker and storage errors on stderr and exit 1."""

    @functools.wraps(f)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return f(*args, **kwargs)
        except TrackerError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        except OSError as e:
            click.echo(f"Failed to save: {e}", err=True)
            sys.exit(1)

    return wrapper


def _confirm_worked(worked: bool | None, message: str) -> bool:
    if worked is not None:
        return worked
    return click.confirm(message, default=True)


def _cap_long_session(
    tracker: TimeTracker,
    active: ActiveTracking,
    resolve: str | None,
    until: datetime | None,
) -> TimeEntry | None:
    """Stop a long-running session, asking how to record it unless told."""
    if resolve is None:
        click.echo(
            f'"{active.client}" has been running for '
            f"{format_duration(tracker.session_minutes())} (started {format_clock(active.start_time)})"
        )
        resolve = click.prompt(
            "How to record (hour = cap at 1 hour, custom = specify stop time, full = keep full duration)",
            type=click.Choice([r.value for r in LongSessionResolution]),
            default=LongSessionResolution.ONE_HOUR.value,
        )
    resolution = LongSessionResolution(resolve)

    prompted = False
    while True:
        if resolution is LongSessionResolution.CUSTOM and until is None:
            until = click.prompt("Stop time", type=TIME)
            prompted = True
        try:
            entry = tracker.cap_session(resolution, until=until)
        except InvalidInputError as e:
            if not prompted:
                raise
            click.echo(f"Invalid time: {e}", err=True)
            until = None
            continue
        break

    if entry is not None:
        labels = {
            LongSessionResolution.ONE_HOUR: "Recorded as 1 hour",
            LongSessionResolution.CUSTOM: "Recorded custom duration",
            LongSessionResolution.KEEP_FULL: "Kept full duration",
        }
        click.echo(f'{labels[resolution]}: "{entry.client}" - {format_duration(entry.duration_minutes)}')
    return entry


def _idle_question(idle_state: IdleState) -> str:
    return (
        f'You were tracking "{idle_state.client}" until {format_clock(idle_state.pause_time)}. '
        "Have you been working on this client during the idle time?"
    )


@click.group()
@click.option(
    "--data-dir",
    type=click.Path(path_type=Path),
    default=DEFAULT_DATA_DIR,
    envvar="BILLTRACK_DATA_DIR",
    help="Directory holding the ledger and session files",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, data_dir: Path, verbose: bool) -> None:
    """Billable time tracker CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = data_dir


resolve_option = click.option(
    "--resolve",
    type=click.Choice([r.value for r in LongSessionResolution]),
    help="How to record a long-running session: hour, custom or full",
)
until_option = click.option("--until", type=TIME, help="Stop time for --resolve custom (HH:MM or ISO 8601)")
worked_option = click.option(
    "--yes/--no",
    "worked",
    default=None,
    help="Answer the idle question: count the idle time or not",
)


@main.command("track")
@click.argument("client")
@resolve_option
@until_option
@worked_option
@click.pass_obj
@handle_errors
def track_command(
    data_dir: Path, client: str, resolve: str | None, until: datetime | None, worked: bool | None
) -> None:
    """Start tracking CLIENT, switching from the current client if any.

    Example:
        billtrack track Acme
        billtrack track Globex --resolve hour
    """
    client = clean_client(client)

    tracker = TimeTracker.open(data_dir)

    idle_state = tracker.get_idle_state()
    if idle_state is not None:
        same_client = idle_state.client.lower() == client.lower()
        if _confirm_worked(worked, _idle_question(idle_state)):
            tracker.resume_from_idle(idle_state)
            if same_client:
                click.echo(f'Tracking resumed: "{idle_state.client}" (idle time counted)')
                return
            # The resumed session started just now; drop it rather than record 0 minutes
            tracker.discard_active()
            click.echo(f'Counted idle time for "{idle_state.client}", now switching to "{client}"')
        else:
            tracker.stop_from_idle(idle_state)
            click.echo(f'Idle time not counted. Starting fresh with "{client}"')
    else:
        active = tracker.get_active()
        if active is not None and (resolve is not None or tracker.idle_minutes() > IDLE_THRESHOLD_MINUTES):
            _cap_long_session(tracker, active, resolve, until)

    result = tracker.start(client)
    if result.switched:
        click.echo(f'Switched tracking: stopped "{result.previous_client}", now tracking "{result.client}"')
    else:
        click.echo(f'Started tracking "{result.client}"')


@main.command("stop")
@resolve_option
@until_option
@worked_option
@click.pass_obj
@handle_errors
def stop_command(data_dir: Path, resolve: str | None, until: datetime | None, worked: bool | None) -> None:
    """Stop tracking and record the entry.

    Sessions longer than an hour ask whether to cap the recorded time.
    """
    tracker = TimeTracker.open(data_dir)

    idle_state = tracker.get_idle_state()
    if idle_state is not None:
        if _confirm_worked(worked, _idle_question(idle_state)):
            resumed = tracker.resume_from_idle(idle_state)
            tracker.discard_active()
            total = sum(e.duration_minutes for e in resumed.entries)
            click.echo(f'Stopped tracking "{idle_state.client}" - {format_duration(total)} (idle time counted)')
        else:
            tracker.stop_from_idle(idle_state)
            click.echo(f'Stopped tracking "{idle_state.client}" - idle time not counted')
        return

    active = tracker.get_active()
    if active is None:
        click.echo("No active tracking: there's nothing currently being tracked", err=True)
        sys.exit(1)

    if resolve is not None or tracker.is_long_session():
        _cap_long_session(tracker, active, resolve, until)
        return

    entry = tracker.stop()
    if entry is not None:
        click.echo(f'Stopped tracking "{entry.client}" - {format_duration(entry.duration_minutes)}')


@main.command("discard")
@click.confirmation_option(prompt="Discard the current session without recording it?")
@click.pass_obj
@handle_errors
def discard_command(data_dir: Path) -> None:
    """Drop the current session without recording any time."""
    tracker = TimeTracker.open(data_dir)
    discarded = tracker.discard_active()
    if discarded is None:
        click.echo("No active tracking")
    else:
        click.echo(f'Discarded session for "{discarded.client}"')


@main.command("status")
@worked_option
@click.pass_obj
@handle_errors
def status_command(data_dir: Path, worked: bool | None) -> None:
    """Show the current session and today's totals per client."""
    tracker = TimeTracker.open(data_dir)

    idle_state = tracker.get_idle_state()
    if idle_state is not None:
        if _confirm_worked(worked, _idle_question(idle_state)):
            tracker.resume_from_idle(idle_state)
            click.echo(f'Tracking resumed: "{idle_state.client}" (idle time counted)')
        else:
            tracker.stop_from_idle(idle_state)
            click.echo(f'Stopped tracking "{idle_state.client}" (idle time not counted)')
        click.echo()

    active = tracker.get_active()
    if active is not None:
        tracker.update_activity()
        click.echo(
            f"Currently tracking: {active.client} "
            f"(started {format_clock(active.start_time)}, {format_duration(tracker.session_minutes())})"
        )
    else:
        click.echo("Not tracking")
    click.echo()

    summary = tracker.ledger.summary_by_client(tracker.ledger.today())
    if not summary:
        click.echo("No time recorded today.")
        return
    click.echo("Today:")
    for client, minutes in summary.items():
        click.echo(f"  {client:<24} {format_duration(minutes):>8}")
    click.echo(f"  {'Total':<24} {format_duration(sum(summary.values())):>8}")


@main.command("idle-check")
@click.option(
    "--threshold",
    type=int,
    default=IDLE_THRESHOLD_MINUTES,
    show_default=True,
    help="Minutes without activity before tracking is paused",
)
@click.pass_obj
@handle_errors
def idle_check_command(data_dir: Path, threshold: int) -> None:
    """Pause tracking if idle too long during business hours.

    Meant to run periodically, e.g. from cron every 15 minutes.
    """
    tracker = TimeTracker.open(data_dir)
    check = tracker.check_idle(threshold_minutes=threshold)

    if check.outcome is IdleCheckOutcome.NO_ACTIVE:
        click.echo("Idle check: no active tracking")
    elif check.outcome is IdleCheckOutcome.OUTSIDE_BUSINESS_HOURS:
        click.echo("Idle check: outside business hours")
    elif check.outcome is IdleCheckOutcome.ALREADY_PENDING:
        client = check.idle_state.client if check.idle_state is not None else "unknown"
        click.echo(f'Idle confirmation pending: run "billtrack status" to confirm tracking for "{client}"')
    elif check.outcome is IdleCheckOutcome.ACTIVE:
        click.echo(f"Idle check: active - {check.idle_minutes} minutes idle")
    else:
        click.echo(
            f"Time tracking paused: you've been idle for {check.idle_minutes} minutes. "
            "Please confirm when you return."
        )


@main.command("add")
@click.argument("client")
@click.argument("start")
@click.argument("end")
@click.option("--date", "on_date", type=click.DateTime(formats=["%Y-%m-%d"]), help="Day for HH:MM times (default: today)")
@click.pass_obj
@handle_errors
def add_command(data_dir: Path, client: str, start: str, end: str, on_date: datetime | None) -> None:
    """Record a manual entry for CLIENT from START to END.

    Times are HH:MM or ISO 8601. An HH:MM end at or before the start is taken
    to be on the next day.

    Example:
        billtrack add Acme 09:00 10:30 --date 2025-01-28
    """
    day = on_date.date() if on_date else None
    start_time = parse_time(start, day)
    end_time = parse_time(end, day)
    if _CLOCK_TIME.match(start.strip()) and _CLOCK_TIME.match(end.strip()) and end_time <= start_time:
        end_time += timedelta(days=1)

    tracker = TimeTracker.open(data_dir)
    entry = tracker.add_entry(client, start_time, end_time)
    click.echo(f'Added {format_duration(entry.duration_minutes)} for "{entry.client}"')


def _entry_line(index: int, entry: TimeEntry) -> str:
    return (
        f"{index:>4}  {entry.start_time.astimezone().strftime('%Y-%m-%d')} "
        f"{format_clock(entry.start_time)}-{format_clock(entry.end_time)}  "
        f"{format_duration(entry.duration_minutes):>8}  {entry.client}"
    )


def _entry_at(tracker: TimeTracker, index: int) -> TimeEntry:
    entries = tracker.ledger.all()
    if not 1 <= index <= len(entries):
        raise InvalidInputError(f"No entry #{index} (ledger has {len(entries)} entries).")
    return entries[index - 1]


@main.command("entries")
@click.option(
    "--range",
    "time_range",
    type=click.Choice([r.value for r in TimeRange]),
    default=TimeRange.ALL.value,
    show_default=True,
    help="Time range to list",
)
@click.pass_obj
@handle_errors
def entries_command(data_dir: Path, time_range: str) -> None:
    """List recorded entries with the numbers used by edit and delete."""
    tracker = TimeTracker.open(data_dir)
    selected = entries_for_range(tracker.ledger, TimeRange(time_range))
    numbered = [(i, e) for i, e in enumerate(tracker.ledger.all(), 1) if e in selected]
    if not numbered:
        click.echo("No entries found.")
        return
    for index, entry in numbered:
        click.echo(_entry_line(index, entry))


@main.command("edit")
@click.argument("index", type=int)
@click.option("--client", help="New client name")
@click.option("--start", help="New start time (HH:MM on the entry's day, or ISO 8601)")
@click.option("--end", help="New end time (HH:MM on the entry's day, or ISO 8601)")
@click.pass_obj
@handle_errors
def edit_command(data_dir: Path, index: int, client: str | None, start: str | None, end: str | None) -> None:
    """Change entry INDEX (as numbered by `billtrack entries`).

    The duration is recomputed with the billing rounding.
    """
    tracker = TimeTracker.open(data_dir)
    original = _entry_at(tracker, index)
    day = original.start_time.astimezone().date()

    new_client = clean_client(client if client is not None else original.client)
    start_time = parse_time(start, day) if start else original.start_time
    end_time = parse_time(end, day) if end else original.end_time
    if end_time <= start_time:
        raise InvalidInputError("End time must be after start time.")

    replacement = TimeEntry.finalize(new_client, start_time, end_time)
    count = tracker.ledger.update(original, replacement)
    if count > 1:
        click.echo(f"Warning: {count} identical entries matched and were all updated", err=True)
    click.echo(f"Updated entry #{index}:")
    click.echo(_entry_line(index, replacement))


@main.command("delete")
@click.argument("index", type=int)
@click.option("--force", is_flag=True, help="Do not ask for confirmation")
@click.pass_obj
@handle_errors
def delete_command(data_dir: Path, index: int, force: bool) -> None:
    """Delete entry INDEX (as numbered by `billtrack entries`)."""
    tracker = TimeTracker.open(data_dir)
    entry = _entry_at(tracker, index)
    if not force:
        click.echo(_entry_line(index, entry))
        click.confirm("Delete this entry?", abort=True)

    count = tracker.ledger.delete(entry)
    if count > 1:
        click.echo(f"Warning: {count} identical entries matched and were all deleted", err=True)
    click.echo(f'Deleted entry for "{entry.client}"')


@main.command("report")
@click.option(
    "--range",
    "time_range",
    type=click.Choice(["today", "week", "month", "all"]),
    default="week",
    show_default=True,
    help="Time range to report on",
)
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_obj
@handle_errors
def report_command(data_dir: Path, time_range: str, output_json: bool) -> None:
    """Show time per client for each day."""
    tracker = TimeTracker.open(data_dir)
    selected_range = TimeRange(time_range)
    days = group_by_day(entries_for_range(tracker.ledger, selected_range))
    total = sum(d.total_minutes for d in days)

    if output_json:
        output = {
            "range": selected_range.value,
            "total_minutes": total,
            "days": [
                {"date": d.day.isoformat(), "total_minutes": d.total_minutes, "clients": d.clients}
                for d in days
            ],
        }
        click.echo(json.dumps(output, indent=2))
        return

    click.echo(f"Time Report: {selected_range.label}")
    click.echo()
    if not days:
        click.echo("No time entries found.")
        return

    for day in days:
        click.echo(f"{day_label(day.day)}  ({format_duration(day.total_minutes)})")
        for client, minutes in sorted(day.clients.items(), key=lambda item: item[1], reverse=True):
            pct = minutes * 100 / day.total_minutes if day.total_minutes else 0
            click.echo(f"  {client:<24} {format_duration(minutes):>8}  {pct:5.1f}%")
        click.echo()
    click.echo(f"Total: {format_duration(total)}")


@main.command("summary")
@click.option(
    "--range",
    "time_range",
    type=click.Choice(["week", "month", "quarter", "all"]),
    default="month",
    show_default=True,
    help="Time range to summarize",
)
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_obj
@handle_errors
def summary_command(data_dir: Path, time_range: str, output_json: bool) -> None:
    """Show totals per client and a weekly breakdown."""
    tracker = TimeTracker.open(data_dir)
    selected_range = TimeRange(time_range)
    entries = entries_for_range(tracker.ledger, selected_range)
    clients = client_summaries(entries)
    weeks = group_by_week(entries)
    total = sum(c.total_minutes for c in clients)

    if output_json:
        output = {
            "range": selected_range.value,
            "total_minutes": total,
            "by_client": [
                {"client": c.client, "total_minutes": c.total_minutes, "percentage": c.percentage}
                for c in clients
            ],
            "by_week": [
                {"week_start": w.week_start.isoformat(), "total_minutes": w.total_minutes, "clients": w.clients}
                for w in weeks
            ],
        }
        click.echo(json.dumps(output, indent=2))
        return

    click.echo(f"Summary: {selected_range.label}")
    click.echo()
    if not clients:
        click.echo("No time entries found.")
        return

    click.echo(f"Total: {format_duration(total)}")
    click.echo()
    click.echo("By Client:")
    max_total = max(c.total_minutes for c in clients)
    for c in clients:
        display_client = c.client if len(c.client) <= 20 else c.client[:17] + "..."
        bar = make_progress_bar(c.total_minutes, max_total)
        click.echo(f"  {display_client:<20} {format_duration(c.total_minutes):>8} {c.percentage:5.1f}%   {bar}")
    click.echo()
    click.echo("By Week:")
    for w in weeks:
        click.echo(f"  {w.label:<20} {format_duration(w.total_minutes):>8}")


if __name__ == "__main__":
    main()
