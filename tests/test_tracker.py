"""Tests for the tracking state machine."""

from datetime import datetime, timedelta

import pytest

from billtrack.errors import (
    IdlePendingError,
    InvalidInputError,
    NoActiveSessionError,
    NoIdlePendingError,
)
from billtrack.ledger import MemoryLedger
from billtrack.models import ActiveTracking, IdleState, TimeEntry
from billtrack.slots import MemorySlot
from billtrack.tracker import (
    IdleCheckOutcome,
    LongSessionResolution,
    TimeTracker,
    TrackingState,
    is_business_hours,
)


def at(hour: int, minute: int = 0, day: int = 28) -> datetime:
    """Local timestamp; 2025-01-28 is a Tuesday."""
    return datetime(2025, 1, day, hour, minute).astimezone()


class FailingLedger(MemoryLedger):
    """Memory ledger whose first `failures` writes raise OSError."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    def extend(self, entries: list[TimeEntry]) -> None:
        if self.failures:
            self.failures -= 1
            raise OSError("disk full")
        super().extend(entries)


def assert_exclusive(tracker: TimeTracker) -> None:
    assert not (tracker.get_active() is not None and tracker.get_idle_state() is not None)


class TestStartStop:
    """Tests for starting, stopping and switching."""

    def test_start_opens_session(self):
        tracker = TimeTracker.open_in_memory()
        result = tracker.start("Acme", now=at(9))

        assert not result.switched
        assert result.client == "Acme"
        assert result.start_time == at(9)
        active = tracker.get_active()
        assert active is not None
        assert active.client == "Acme"
        assert active.start_time == active.last_activity_time == at(9)
        assert tracker.state() is TrackingState.ACTIVE

    def test_start_trims_client_and_preserves_case(self):
        tracker = TimeTracker.open_in_memory()
        tracker.start("  ACME Corp ", now=at(9))
        assert tracker.get_active().client == "ACME Corp"

    def test_start_rejects_empty_client(self):
        tracker = TimeTracker.open_in_memory()
        with pytest.raises(InvalidInputError):
            tracker.start("   ", now=at(9))
        assert tracker.state() is TrackingState.STOPPED

    def test_start_rejects_multiline_client(self):
        tracker = TimeTracker.open_in_memory()
        with pytest.raises(InvalidInputError):
            tracker.start("Acme\nCorp", now=at(9))
        assert tracker.state() is TrackingState.STOPPED

    def test_stop_records_rounded_entry(self):
        tracker = TimeTracker.open_in_memory()
        tracker.start("Acme", now=at(9))
        entry = tracker.stop(now=at(9, 42))

        assert entry is not None
        assert entry.start_time == at(9)
        assert entry.end_time == at(9, 42)
        assert entry.duration_minutes == 45
        assert tracker.ledger.all() == [entry]
        assert tracker.state() is TrackingState.STOPPED

    def test_stop_without_session_is_noop(self):
        tracker = TimeTracker.open_in_memory()
        assert tracker.stop(now=at(9)) is None
        assert tracker.ledger.all() == []

    def test_stop_with_end_time_override(self):
        tracker = TimeTracker.open_in_memory()
        tracker.start("Acme", now=at(9))
        entry = tracker.stop(end_time=at(9, 20), now=at(12))
        assert entry.end_time == at(9, 20)
        assert entry.duration_minutes == 30

    def test_stop_before_start_rejected(self):
        tracker = TimeTracker.open_in_memory()
        tracker.start("Acme", now=at(9))
        with pytest.raises(InvalidInputError):
            tracker.stop(end_time=at(8))
        assert tracker.get_active() is not None
        assert tracker.ledger.all() == []

    def test_start_while_active_switches(self):
        """Switching finalizes exactly one entry for the previous client."""
        tracker = TimeTracker.open_in_memory()
        tracker.start("Acme", now=at(9))
        result = tracker.start("Globex", now=at(9, 42))

        assert result.switched
        assert result.previous_client == "Acme"
        assert result.previous_entry is not None
        entries = tracker.ledger.all()
        assert len(entries) == 1
        assert entries[0].client == "Acme"
        assert entries[0].duration_minutes == 45
        active = tracker.get_active()
        assert active.client == "Globex"
        assert active.start_time == active.last_activity_time == at(9, 42)

    def test_discard_active(self):
        tracker = TimeTracker.open_in_memory()
        tracker.start("Acme", now=at(9))
        discarded = tracker.discard_active()
        assert discarded.client == "Acme"
        assert tracker.get_active() is None
        assert tracker.ledger.all() == []
        assert tracker.discard_active() is None


class TestActivity:
    """Tests for activity pings, idle minutes and business hours."""

    def test_update_activity(self):
        tracker = TimeTracker.open_in_memory()
        tracker.start("Acme", now=at(9))
        tracker.update_activity(now=at(9, 50))
        active = tracker.get_active()
        assert active.last_activity_time == at(9, 50)
        assert active.start_time == at(9)

    def test_update_activity_without_session(self):
        tracker = TimeTracker.open_in_memory()
        tracker.update_activity(now=at(9))
        assert tracker.get_active() is None

    def test_idle_minutes_floors(self):
        tracker = TimeTracker.open_in_memory()
        tracker.start("Acme", now=at(9))
        tracker.update_activity(now=at(9, 50))
        assert tracker.idle_minutes(now=at(11, 5) + timedelta(seconds=59)) == 75

    def test_idle_minutes_without_session(self):
        assert TimeTracker.open_in_memory().idle_minutes(now=at(9)) == 0

    def test_long_session(self):
        tracker = TimeTracker.open_in_memory()
        tracker.start("Acme", now=at(9))
        assert tracker.session_minutes(now=at(10)) == 60
        assert not tracker.is_long_session(now=at(10))
        assert tracker.is_long_session(now=at(10, 1))

    @pytest.mark.parametrize(
        ("moment", "expected"),
        [
            (datetime(2025, 1, 28, 10, 0), True),  # Tuesday
            (datetime(2025, 1, 27, 9, 0), True),  # Monday opening
            (datetime(2025, 1, 31, 17, 59), True),  # Friday
            (datetime(2025, 1, 28, 8, 59), False),
            (datetime(2025, 1, 28, 18, 0), False),
            (datetime(2025, 2, 1, 10, 0), False),  # Saturday
            (datetime(2025, 2, 2, 10, 0), False),  # Sunday
        ],
    )
    def test_business_hours(self, moment, expected):
        assert is_business_hours(moment) is expected
        assert TimeTracker.open_in_memory().is_business_hours(moment) is expected


class TestIdleHandling:
    """Tests for idle pause, resume and discard."""

    def _paused_tracker(self) -> tuple[TimeTracker, IdleState]:
        tracker = TimeTracker.open_in_memory()
        tracker.start("Acme", now=at(9))
        tracker.update_activity(now=at(9, 50))
        return tracker, tracker.pause_for_idle(now=at(11, 5))

    def test_pause_moves_session_to_idle(self):
        tracker, idle = self._paused_tracker()

        assert idle.client == "Acme"
        assert idle.original_start_time == at(9)
        assert idle.pause_time == at(11, 5)
        assert idle.last_activity_time == at(9, 50)
        assert tracker.get_active() is None
        assert tracker.get_idle_state() == idle
        assert tracker.state() is TrackingState.IDLE_PENDING
        assert tracker.ledger.all() == []

    def test_pause_without_session(self):
        tracker = TimeTracker.open_in_memory()
        with pytest.raises(NoActiveSessionError):
            tracker.pause_for_idle(now=at(11))

    def test_pause_when_already_pending(self):
        active = ActiveTracking(client="Globex", start_time=at(9), last_activity_time=at(9))
        idle = IdleState(
            pause_time=at(10), client="Acme", original_start_time=at(8), last_activity_time=at(8)
        )
        tracker = TimeTracker(MemoryLedger(), MemorySlot(active), MemorySlot(idle))
        with pytest.raises(IdlePendingError):
            tracker.pause_for_idle(now=at(11))

    def test_start_and_stop_blocked_while_pending(self):
        tracker, _ = self._paused_tracker()
        with pytest.raises(IdlePendingError):
            tracker.start("Globex", now=at(11, 10))
        with pytest.raises(IdlePendingError):
            tracker.stop(now=at(11, 10))
        assert tracker.state() is TrackingState.IDLE_PENDING

    def test_resume_splits_into_two_entries(self):
        """[09:00, 11:05] -> 135 and [11:05, 11:10] -> 5, then tracking continues."""
        tracker, idle = self._paused_tracker()
        result = tracker.resume_from_idle(idle, now=at(11, 10))

        entries = tracker.ledger.all()
        assert entries == result.entries
        assert [(e.start_time, e.end_time, e.duration_minutes) for e in entries] == [
            (at(9), at(11, 5), 135),
            (at(11, 5), at(11, 10), 5),
        ]
        assert entries[0].end_time == entries[1].start_time
        active = tracker.get_active()
        assert active.client == "Acme"
        assert active.start_time == active.last_activity_time == at(11, 10)
        assert tracker.get_idle_state() is None

    def test_resume_reads_pending_state_when_not_given(self):
        tracker, _ = self._paused_tracker()
        tracker.resume_from_idle(now=at(11, 10))
        assert len(tracker.ledger.all()) == 2

    def test_resume_without_pending(self):
        tracker = TimeTracker.open_in_memory()
        with pytest.raises(NoIdlePendingError):
            tracker.resume_from_idle(now=at(11))

    def test_stop_from_idle_drops_gap(self):
        tracker, idle = self._paused_tracker()
        entry = tracker.stop_from_idle(idle)

        assert tracker.ledger.all() == [entry]
        assert entry.start_time == at(9)
        assert entry.end_time == at(11, 5)
        assert entry.duration_minutes == 135
        assert tracker.get_active() is None
        assert tracker.get_idle_state() is None
        assert tracker.state() is TrackingState.STOPPED

    def test_stop_from_idle_without_pending(self):
        with pytest.raises(NoIdlePendingError):
            TimeTracker.open_in_memory().stop_from_idle()

    def test_stale_idle_state_rejected_after_start(self):
        """A resolved pause cannot be resolved again once a new session runs."""
        tracker, idle = self._paused_tracker()
        tracker.stop_from_idle(idle)
        tracker.start("Globex", now=at(12))

        with pytest.raises(NoIdlePendingError):
            tracker.resume_from_idle(idle, now=at(12, 30))
        with pytest.raises(NoIdlePendingError):
            tracker.stop_from_idle(idle)

        assert [(e.client, e.start_time, e.end_time) for e in tracker.ledger.all()] == [
            ("Acme", at(9), at(11, 5)),
        ]
        assert tracker.get_active().client == "Globex"
        assert tracker.state() is TrackingState.ACTIVE

    def test_idle_state_must_match_pending_pause(self):
        tracker, idle = self._paused_tracker()
        other = idle.model_copy(update={"pause_time": at(10)})

        with pytest.raises(NoIdlePendingError):
            tracker.resume_from_idle(other, now=at(11, 10))
        assert tracker.ledger.all() == []
        assert tracker.get_idle_state() == idle

    def test_failed_resume_write_records_nothing(self):
        """A failed ledger write leaves the pause pending, so a retry records two entries."""
        ledger = FailingLedger(failures=1)
        tracker = TimeTracker(ledger, MemorySlot(), MemorySlot())
        tracker.start("Acme", now=at(9))
        idle = tracker.pause_for_idle(now=at(11, 5))

        with pytest.raises(OSError):
            tracker.resume_from_idle(idle, now=at(11, 12))
        assert ledger.all() == []
        assert tracker.state() is TrackingState.IDLE_PENDING

        tracker.resume_from_idle(idle, now=at(11, 12))
        assert [(e.start_time, e.end_time) for e in ledger.all()] == [
            (at(9), at(11, 5)),
            (at(11, 5), at(11, 12)),
        ]
        assert tracker.get_idle_state() is None

    def test_slots_stay_exclusive(self):
        tracker = TimeTracker.open_in_memory()
        steps = [
            lambda: tracker.start("Acme", now=at(9)),
            lambda: tracker.start("Globex", now=at(9, 30)),
            lambda: tracker.pause_for_idle(now=at(11)),
            lambda: tracker.resume_from_idle(now=at(11, 15)),
            lambda: tracker.pause_for_idle(now=at(13)),
            lambda: tracker.stop_from_idle(),
            lambda: tracker.start("Acme", now=at(14)),
            lambda: tracker.stop(now=at(15)),
        ]
        for step in steps:
            step()
            assert_exclusive(tracker)


class TestCheckIdle:
    """Tests for the periodic idle check."""

    def test_no_active(self):
        check = TimeTracker.open_in_memory().check_idle(now=at(10))
        assert check.outcome is IdleCheckOutcome.NO_ACTIVE

    def test_outside_business_hours(self):
        tracker = TimeTracker.open_in_memory()
        tracker.start("Acme", now=at(18, 0, day=25))
        check = tracker.check_idle(now=at(22, 0, day=25))
        assert check.outcome is IdleCheckOutcome.OUTSIDE_BUSINESS_HOURS
        assert tracker.get_active() is not None

    def test_active_under_threshold(self):
        tracker = TimeTracker.open_in_memory()
        tracker.start("Acme", now=at(9))
        check = tracker.check_idle(now=at(10))
        assert check.outcome is IdleCheckOutcome.ACTIVE
        assert check.idle_minutes == 60
        assert tracker.get_idle_state() is None

    def test_pauses_after_threshold(self):
        tracker = TimeTracker.open_in_memory()
        tracker.start("Acme", now=at(9))
        tracker.update_activity(now=at(9, 50))
        check = tracker.check_idle(now=at(11, 5))

        assert check.outcome is IdleCheckOutcome.PAUSED
        assert check.idle_minutes == 75
        assert check.idle_state.original_start_time == at(9)
        assert check.idle_state.pause_time == at(11, 5)
        assert tracker.get_active() is None

    def test_already_pending(self):
        tracker = TimeTracker.open_in_memory()
        tracker.start("Acme", now=at(9))
        tracker.pause_for_idle(now=at(11))
        check = tracker.check_idle(now=at(12))
        assert check.outcome is IdleCheckOutcome.ALREADY_PENDING
        assert check.idle_state.client == "Acme"


class TestCapSession:
    """Tests for long-session capping."""

    def test_cap_at_one_hour(self):
        tracker = TimeTracker.open_in_memory()
        tracker.start("Acme", now=at(14))
        entry = tracker.cap_session(LongSessionResolution.ONE_HOUR, now=at(16, 30))
        assert entry.end_time == at(15)
        assert entry.duration_minutes == 60

    def test_cap_at_custom_time(self):
        tracker = TimeTracker.open_in_memory()
        tracker.start("Acme", now=at(14))
        entry = tracker.cap_session(LongSessionResolution.CUSTOM, until=at(15, 20), now=at(16, 30))
        assert entry.end_time == at(15, 20)
        assert entry.duration_minutes == 90

    @pytest.mark.parametrize("until", [None, datetime(2025, 1, 28, 14, 0), datetime(2025, 1, 28, 13, 0)])
    def test_custom_time_must_follow_start(self, until):
        tracker = TimeTracker.open_in_memory()
        tracker.start("Acme", now=at(14))
        with pytest.raises(InvalidInputError):
            tracker.cap_session(LongSessionResolution.CUSTOM, until=until, now=at(16, 30))
        assert tracker.get_active() is not None
        assert tracker.ledger.all() == []

    def test_keep_full(self):
        tracker = TimeTracker.open_in_memory()
        tracker.start("Acme", now=at(14))
        entry = tracker.cap_session(LongSessionResolution.KEEP_FULL, now=at(16, 30))
        assert entry.end_time == at(16, 30)
        assert entry.duration_minutes == 150

    def test_nothing_active(self):
        tracker = TimeTracker.open_in_memory()
        assert tracker.cap_session(LongSessionResolution.ONE_HOUR, now=at(16)) is None


class TestFileBackedTracker:
    """Tests for TimeTracker.open with files on disk."""

    def test_state_survives_reopen(self, tmp_path):
        TimeTracker.open(tmp_path).start("Acme", now=at(9))
        tracker = TimeTracker.open(tmp_path)
        assert tracker.get_active().client == "Acme"

        tracker.pause_for_idle(now=at(11, 5))
        reopened = TimeTracker.open(tmp_path)
        assert reopened.state() is TrackingState.IDLE_PENDING
        reopened.resume_from_idle(now=at(11, 10))

        final = TimeTracker.open(tmp_path)
        assert [e.duration_minutes for e in final.ledger.all()] == [135, 5]
        assert final.get_active().start_time == at(11, 10)
        assert not (tmp_path / "idle-state.json").exists()

    def test_creates_data_dir(self, tmp_path):
        data_dir = tmp_path / "nested" / "billtrack"
        TimeTracker.open(data_dir).start("Acme", now=at(9))
        assert (data_dir / "active-tracking.json").exists()

    def test_add_entry(self, tmp_path):
        tracker = TimeTracker.open(tmp_path)
        entry = tracker.add_entry("Acme", at(9), at(10, 1))
        assert entry.duration_minutes == 75
        assert (tmp_path / "time-entries.csv").exists()
