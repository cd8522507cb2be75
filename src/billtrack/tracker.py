"""Tracking state machine: start, stop, switch and idle handling."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

from billtrack.errors import (
    IdlePendingError,
    InvalidInputError,
    NoActiveSessionError,
    NoIdlePendingError,
)
from billtrack.ledger import CsvLedger, EntryLedger, MemoryLedger
from billtrack.models import ActiveTracking, IdleState, TimeEntry, clean_client, normalize_timestamp
from billtrack.rounding import elapsed_minutes
from billtrack.slots import JsonSlot, MemorySlot, Slot

logger = logging.getLogger(__name__)

ENTRIES_FILE = "time-entries.csv"
ACTIVE_FILE = "active-tracking.json"
IDLE_FILE = "idle-state.json"

# Idle longer than this (during business hours) pauses tracking
IDLE_THRESHOLD_MINUTES = 60
# Sessions longer than this are offered a cap when stopped or switched
LONG_SESSION_MINUTES = 60
BUSINESS_HOURS_START = 9
BUSINESS_HOURS_END = 18


def _resolve_now(now: datetime | None) -> datetime:
    return normalize_timestamp(now if now is not None else datetime.now())


def is_business_hours(now: datetime | None = None) -> bool:
    """Check for Monday-Friday, 9:00-18:00 local time."""
    local = _resolve_now(now).astimezone()
    return local.weekday() < 5 and BUSINESS_HOURS_START <= local.hour < BUSINESS_HOURS_END


class TrackingState(enum.Enum):
    STOPPED = "stopped"
    ACTIVE = "active"
    IDLE_PENDING = "idle_pending"


class LongSessionResolution(enum.Enum):
    """How to record a session that ran longer than expected."""

    ONE_HOUR = "hour"
    CUSTOM = "custom"
    KEEP_FULL = "full"


class IdleCheckOutcome(enum.Enum):
    NO_ACTIVE = "no_active"
    OUTSIDE_BUSINESS_HOURS = "outside_business_hours"
    ALREADY_PENDING = "already_pending"
    ACTIVE = "active"
    PAUSED = "paused"


@dataclass
class StartResult:
    client: str
    start_time: datetime
    previous_client: str | None = None
    previous_entry: TimeEntry | None = None

    @property
    def switched(self) -> bool:
        return self.previous_client is not None


@dataclass
class ResumeResult:
    active: ActiveTracking
    entries: list[TimeEntry] = field(default_factory=list)


@dataclass
class IdleCheck:
    outcome: IdleCheckOutcome
    idle_minutes: int = 0
    idle_state: IdleState | None = None


class TimeTracker:
    """Coordinates the ledger with the active and idle-pending slots.

    At most one of the two slots is populated after each operation.
    Not safe for concurrent use; the caller is expected to be the only writer.
    """

    def __init__(
        self,
        ledger: EntryLedger,
        active_slot: Slot[ActiveTracking],
        idle_slot: Slot[IdleState],
    ) -> None:
        self.ledger = ledger
        self._active = active_slot
        self._idle = idle_slot

    @classmethod
    def open(cls, data_dir: Path) -> TimeTracker:
        """Open the file-backed stores in data_dir, creating it if needed."""
        data_dir = Path(data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)
        return cls(
            CsvLedger(data_dir / ENTRIES_FILE),
            JsonSlot(data_dir / ACTIVE_FILE, ActiveTracking),
            JsonSlot(data_dir / IDLE_FILE, IdleState),
        )

    @classmethod
    def open_in_memory(cls) -> TimeTracker:
        """Create a tracker backed by in-memory stores for testing."""
        return cls(MemoryLedger(), MemorySlot(), MemorySlot())

    def get_active(self) -> ActiveTracking | None:
        return self._active.get()

    def get_idle_state(self) -> IdleState | None:
        return self._idle.get()

    def state(self) -> TrackingState:
        if self._idle.get() is not None:
            return TrackingState.IDLE_PENDING
        if self._active.get() is not None:
            return TrackingState.ACTIVE
        return TrackingState.STOPPED

    def _require_no_idle(self) -> None:
        idle = self._idle.get()
        if idle is not None:
            raise IdlePendingError(idle.client)

    def _finalize(self, client: str, start: datetime, end: datetime) -> TimeEntry:
        """Round and append one interval to the ledger."""
        entry = TimeEntry.finalize(client, start, end)
        self.ledger.append(entry)
        return entry

    def start(self, client: str, now: datetime | None = None) -> StartResult:
        """Start tracking a client, stopping the current session first.

        Raises:
            InvalidInputError: If the client name is empty or spans lines.
            IdlePendingError: If an idle-paused session is awaiting confirmation.
        """
        client = clean_client(client)
        self._require_no_idle()
        now = _resolve_now(now)

        result = StartResult(client=client, start_time=now)
        active = self._active.get()
        if active is not None:
            result.previous_client = active.client
            result.previous_entry = self.stop(end_time=now, now=now)

        self._active.set(ActiveTracking(client=client, start_time=now, last_activity_time=now))
        logger.info("Started tracking %s", client)
        return result

    def stop(self, end_time: datetime | None = None, now: datetime | None = None) -> TimeEntry | None:
        """Stop the active session and record it.

        Args:
            end_time: Recorded end of the session (default: now).
            now: Current time for testing.

        Returns:
            The recorded entry, or None if nothing was being tracked.

        Raises:
            IdlePendingError: If an idle-paused session is awaiting confirmation.
            InvalidInputError: If end_time is before the session start.
        """
        self._require_no_idle()
        active = self._active.get()
        if active is None:
            return None

        end = normalize_timestamp(end_time) if end_time is not None else _resolve_now(now)
        if end < active.start_time:
            raise InvalidInputError("Stop time must not be before the start time.")

        entry = self._finalize(active.client, active.start_time, end)
        self._active.clear()
        logger.info("Stopped tracking %s (%d min)", entry.client, entry.duration_minutes)
        return entry

    def discard_active(self) -> ActiveTracking | None:
        """Drop the active session without recording anything."""
        active = self._active.get()
        self._active.clear()
        if active is not None:
            logger.info("Discarded session for %s", active.client)
        return active

    def update_activity(self, now: datetime | None = None) -> None:
        active = self._active.get()
        if active is None:
            return
        active.last_activity_time = _resolve_now(now)
        self._active.set(active)

    def idle_minutes(self, now: datetime | None = None) -> int:
        active = self._active.get()
        if active is None:
            return 0
        idle_seconds = (_resolve_now(now) - active.last_activity_time).total_seconds()
        return int(idle_seconds // 60)

    def session_minutes(self, now: datetime | None = None) -> int:
        active = self._active.get()
        if active is None:
            return 0
        return elapsed_minutes(active.start_time, _resolve_now(now))

    def is_long_session(self, now: datetime | None = None) -> bool:
        return self.session_minutes(now) > LONG_SESSION_MINUTES

    def is_business_hours(self, now: datetime | None = None) -> bool:
        return is_business_hours(now)

    def pause_for_idle(self, now: datetime | None = None) -> IdleState:
        """Move the active session into the idle-pending slot.

        Raises:
            NoActiveSessionError: If nothing is being tracked.
            IdlePendingError: If a session is already paused for idle.
        """
        self._require_no_idle()
        active = self._active.get()
        if active is None:
            raise NoActiveSessionError()

        idle_state = IdleState(
            pause_time=_resolve_now(now),
            client=active.client,
            original_start_time=active.start_time,
            last_activity_time=active.last_activity_time,
        )
        self._idle.set(idle_state)
        self._active.clear()
        logger.info("Paused %s for idle at %s", active.client, idle_state.pause_time.isoformat())
        return idle_state

    def _pending_idle(self, idle_state: IdleState | None) -> IdleState:
        stored = self._idle.get()
        if stored is None:
            raise NoIdlePendingError()
        if idle_state is not None and idle_state.key != stored.key:
            logger.warning("Ignoring stale idle state for %s", idle_state.client)
            raise NoIdlePendingError()
        return stored

    def resume_from_idle(
        self, idle_state: IdleState | None = None, now: datetime | None = None
    ) -> ResumeResult:
        """Count the idle gap as worked time and keep tracking.

        Records [original start, pause] and [pause, now] as two entries, each
        rounded on its own, then opens a new session for the client at now.
        Both entries are written together, so a failed write records neither.

        Raises:
            NoIdlePendingError: If nothing is paused, or `idle_state` is not
                the pause currently pending.
        """
        idle_state = self._pending_idle(idle_state)
        now = _resolve_now(now)

        entries = [
            TimeEntry.finalize(idle_state.client, idle_state.original_start_time, idle_state.pause_time),
            TimeEntry.finalize(idle_state.client, idle_state.pause_time, now),
        ]
        self.ledger.extend(entries)
        active = ActiveTracking(client=idle_state.client, start_time=now, last_activity_time=now)
        self._active.set(active)
        self._idle.clear()
        logger.info("Resumed %s after idle", idle_state.client)
        return ResumeResult(active=active, entries=entries)

    def stop_from_idle(self, idle_state: IdleState | None = None) -> TimeEntry:
        """Record only the time before the idle pause and stop tracking."""
        idle_state = self._pending_idle(idle_state)
        entry = self._finalize(
            idle_state.client, idle_state.original_start_time, idle_state.pause_time
        )
        self._idle.clear()
        logger.info("Stopped %s from idle; idle gap not counted", idle_state.client)
        return entry

    def check_idle(
        self, now: datetime | None = None, threshold_minutes: int = IDLE_THRESHOLD_MINUTES
    ) -> IdleCheck:
        """Pause the active session if it has been idle too long in business hours."""
        now = _resolve_now(now)
        if self._active.get() is None:
            pending = self._idle.get()
            if pending is not None:
                return IdleCheck(IdleCheckOutcome.ALREADY_PENDING, idle_state=pending)
            return IdleCheck(IdleCheckOutcome.NO_ACTIVE)
        if not is_business_hours(now):
            return IdleCheck(IdleCheckOutcome.OUTSIDE_BUSINESS_HOURS)
        pending = self._idle.get()
        if pending is not None:
            return IdleCheck(IdleCheckOutcome.ALREADY_PENDING, idle_state=pending)

        minutes = self.idle_minutes(now)
        if minutes <= threshold_minutes:
            return IdleCheck(IdleCheckOutcome.ACTIVE, idle_minutes=minutes)
        return IdleCheck(
            IdleCheckOutcome.PAUSED, idle_minutes=minutes, idle_state=self.pause_for_idle(now)
        )

    def cap_session(
        self,
        resolution: LongSessionResolution,
        until: datetime | None = None,
        now: datetime | None = None,
    ) -> TimeEntry | None:
        """Stop a long-running session using the chosen resolution.

        Raises:
            InvalidInputError: For CUSTOM without `until`, or `until` not after the start.
        """
        active = self._active.get()
        if active is None:
            self._require_no_idle()
            return None

        if resolution is LongSessionResolution.ONE_HOUR:
            return self.stop(end_time=active.start_time + timedelta(hours=1), now=now)
        if resolution is LongSessionResolution.CUSTOM:
            if until is None:
                raise InvalidInputError("A stop time is required.")
            if normalize_timestamp(until) <= active.start_time:
                raise InvalidInputError("Stop time must be after start time.")
            return self.stop(end_time=until, now=now)
        return self.stop(now=now)

    def add_entry(self, client: str, start_time: datetime, end_time: datetime) -> TimeEntry:
        return self.ledger.add(client, start_time, end_time)
