"""Records persisted by the tracker: ledger entries and the two session slots."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from billtrack.errors import InvalidInputError
from billtrack.rounding import billed_minutes

# One ledger row per line, so client names cannot span lines
CLIENT_PATTERN = r"^[^\r\n]+$"


def clean_client(client: str) -> str:
    """Strip a client name and check it can be stored.

    Raises:
        InvalidInputError: If the name is empty or contains a line break.
    """
    client = client.strip()
    if not client:
        raise InvalidInputError("Please provide a client name.")
    if "\n" in client or "\r" in client:
        raise InvalidInputError("Client name cannot contain line breaks.")
    return client


def normalize_timestamp(dt: datetime) -> datetime:
    """Make a timestamp timezone-aware and cut it to millisecond precision.

    Naive datetimes are taken as local time. Milliseconds are the precision
    the ledger stores, so entries compare equal after a write/read cycle.
    """
    if dt.tzinfo is None:
        dt = dt.astimezone()
    return dt.replace(microsecond=dt.microsecond // 1000 * 1000)


class _Record(BaseModel):
    """Base for persisted records (camelCase keys on disk)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @field_validator("*", mode="after")
    @classmethod
    def _normalize_timestamps(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return normalize_timestamp(value)
        return value


class TimeEntry(_Record):
    """A finalized, billed interval of work for one client.

    `duration_minutes` holds billed minutes, not raw elapsed time.
    """

    model_config = ConfigDict(frozen=True)

    client: str = Field(min_length=1, pattern=CLIENT_PATTERN)
    start_time: datetime
    end_time: datetime
    duration_minutes: int = Field(ge=0)

    @model_validator(mode="after")
    def _check_order(self) -> TimeEntry:
        if self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        return self

    @classmethod
    def finalize(cls, client: str, start_time: datetime, end_time: datetime) -> TimeEntry:
        """Build an entry whose duration is the rounded elapsed time."""
        start_time = normalize_timestamp(start_time)
        end_time = normalize_timestamp(end_time)
        return cls(
            client=client,
            start_time=start_time,
            end_time=end_time,
            duration_minutes=billed_minutes(start_time, end_time),
        )

    @property
    def key(self) -> tuple[str, datetime, datetime]:
        """Composite identity used to match entries for update and delete."""
        return (self.client, self.start_time, self.end_time)


class ActiveTracking(_Record):
    """The session currently accruing time."""

    client: str = Field(min_length=1, pattern=CLIENT_PATTERN)
    start_time: datetime
    last_activity_time: datetime

    @model_validator(mode="before")
    @classmethod
    def _default_last_activity(cls, data: Any) -> Any:
        # Older records have no lastActivityTime; fall back to the start
        if isinstance(data, dict):
            if data.get("lastActivityTime") is None and data.get("last_activity_time") is None:
                start = data.get("startTime", data.get("start_time"))
                data = {**data, "lastActivityTime": start}
        return data


class IdleState(_Record):
    """A session paused after an idle gap, awaiting confirmation.

    The record existing is the pending flag; there is no separate field.
    """

    pause_time: datetime
    client: str = Field(min_length=1, pattern=CLIENT_PATTERN)
    original_start_time: datetime
    last_activity_time: datetime

    @property
    def key(self) -> tuple[str, datetime, datetime]:
        """Identity of the paused session."""
        return (self.client, self.original_start_time, self.pause_time)
