"""Entry ledger: the durable, ordered list of finalized time entries."""

from __future__ import annotations

import csv
import io
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from billtrack.errors import InvalidInputError
from billtrack.models import TimeEntry, clean_client, normalize_timestamp

logger = logging.getLogger(__name__)

HEADER = ["client", "startTime", "endTime", "durationMinutes"]

# Quoted rows written by older versions, possibly followed by junk
_LEGACY_QUOTED_ROW = re.compile(r'"([^"]*)","([^"]*)","([^"]*)",(\d+)')


def format_timestamp(dt: datetime) -> str:
    """Format as UTC ISO 8601 with milliseconds, e.g. 2025-01-28T09:00:00.000Z."""
    utc = dt.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def parse_timestamp(ts: str) -> datetime:
    """Parse ISO 8601 timestamp to datetime."""
    return normalize_timestamp(datetime.fromisoformat(ts.strip().replace("Z", "+00:00")))


def encode_entry(entry: TimeEntry) -> str:
    """Encode one entry as a canonical CSV row (without trailing newline)."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_NONNUMERIC, lineterminator="")
    writer.writerow([
        entry.client,
        format_timestamp(entry.start_time),
        format_timestamp(entry.end_time),
        entry.duration_minutes,
    ])
    return buffer.getvalue()


def _entry_from_fields(fields: list[str]) -> TimeEntry:
    client, start, end, duration = fields
    return TimeEntry(
        client=client,
        start_time=parse_timestamp(start),
        end_time=parse_timestamp(end),
        duration_minutes=int(duration),
    )


def decode_line(line: str) -> TimeEntry | None:
    """Decode one ledger line, or return None if it cannot be parsed.

    Accepts the canonical quoted encoding, the older unquoted encoding
    (`client,start,end,minutes`) and quoted rows with trailing text.
    """
    try:
        fields = next(csv.reader([line]))
    except (csv.Error, StopIteration):
        fields = []

    if len(fields) == 4:
        try:
            return _entry_from_fields(fields)
        except (ValueError, ValidationError):
            pass

    match = _LEGACY_QUOTED_ROW.search(line)
    if match:
        try:
            return _entry_from_fields(list(match.groups()))
        except (ValueError, ValidationError):
            pass

    return None


def decode_ledger(text: str) -> list[TimeEntry]:
    """Decode ledger file contents, skipping the header and malformed lines."""
    lines = text.replace("\r", "").strip().split("\n")[1:]
    entries: list[TimeEntry] = []
    for line_number, line in enumerate(lines, 2):
        if not line.strip():
            continue
        entry = decode_line(line)
        if entry is None:
            logger.debug("Skipping unparseable ledger line %d: %r", line_number, line)
            continue
        entries.append(entry)
    return entries


def encode_ledger(entries: list[TimeEntry]) -> str:
    lines = [",".join(HEADER)] + [encode_entry(entry) for entry in entries]
    return "\n".join(lines) + "\n"


def summary_by_client(entries: list[TimeEntry]) -> dict[str, int]:
    """Sum billed minutes per client, in order of first occurrence."""
    summary: dict[str, int] = {}
    for entry in entries:
        summary[entry.client] = summary.get(entry.client, 0) + entry.duration_minutes
    return summary


class EntryLedger(ABC):
    """Ordered collection of finalized entries.

    Subclasses provide storage; filtering and match-by-key live here.
    """

    @abstractmethod
    def _load(self) -> list[TimeEntry]:
        """Read every entry. Raises OSError on read failure; a missing store is empty."""

    @abstractmethod
    def extend(self, entries: list[TimeEntry]) -> None:
        """Durably add entries at the end of the ledger in a single write."""

    @abstractmethod
    def _save_all(self, entries: list[TimeEntry]) -> None:
        """Durably replace the whole ledger."""

    def all(self) -> list[TimeEntry]:
        """Get all entries in storage order.

        Read failures are logged and yield an empty list.
        """
        try:
            return self._load()
        except OSError as e:
            logger.warning("Could not read ledger: %s", e)
            return []

    def append(self, entry: TimeEntry) -> None:
        self.extend([entry])

    def add(self, client: str, start_time: datetime, end_time: datetime) -> TimeEntry:
        """Record a manual entry, rounding its duration.

        Raises:
            InvalidInputError: If the client is empty or multi-line, or end_time
                is not after start_time.
        """
        client = clean_client(client)
        if normalize_timestamp(end_time) <= normalize_timestamp(start_time):
            raise InvalidInputError("End time must be after start time.")
        entry = TimeEntry.finalize(client, start_time, end_time)
        self.append(entry)
        return entry

    def by_date_range(self, start: datetime, end: datetime) -> list[TimeEntry]:
        """Get entries whose start time falls in [start, end] (inclusive)."""
        start = normalize_timestamp(start)
        end = normalize_timestamp(end)
        return [e for e in self.all() if start <= e.start_time <= end]

    def today(self, now: datetime | None = None) -> list[TimeEntry]:
        """Get entries that started on the local calendar day of `now`."""
        if now is None:
            now = datetime.now()
        today = normalize_timestamp(now).astimezone().date()
        return [e for e in self.all() if e.start_time.astimezone().date() == today]

    def update(self, match: TimeEntry, replacement: TimeEntry) -> int:
        """Replace every entry matching `match` by (client, start, end).

        Returns:
            Number of entries replaced.
        """
        entries = self._load()
        count = 0
        updated: list[TimeEntry] = []
        for entry in entries:
            if entry.key == match.key:
                updated.append(replacement)
                count += 1
            else:
                updated.append(entry)
        if count:
            self._save_all(updated)
        logger.info("Updated %d entries for %s", count, match.client)
        return count

    def delete(self, match: TimeEntry) -> int:
        """Remove every entry matching `match` by (client, start, end).

        Returns:
            Number of entries removed.
        """
        entries = self._load()
        kept = [entry for entry in entries if entry.key != match.key]
        count = len(entries) - len(kept)
        if count:
            self._save_all(kept)
        logger.info("Deleted %d entries for %s", count, match.client)
        return count

    def count_matches(self, match: TimeEntry) -> int:
        return sum(1 for entry in self.all() if entry.key == match.key)

    @staticmethod
    def summary_by_client(entries: list[TimeEntry]) -> dict[str, int]:
        return summary_by_client(entries)


class CsvLedger(EntryLedger):
    """Ledger stored as a CSV file with a header row.

    Not safe for concurrent writers.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def _load(self) -> list[TimeEntry]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except UnicodeDecodeError as e:
            raise OSError(f"Ledger {self.path} is not valid UTF-8: {e}") from e
        return decode_ledger(text)

    def extend(self, entries: list[TimeEntry]) -> None:
        if not entries:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        rows = "".join(encode_entry(entry) + "\n" for entry in entries)
        if not self.path.exists() or self.path.stat().st_size == 0:
            rows = ",".join(HEADER) + "\n" + rows
        with self.path.open("a", encoding="utf-8") as f:
            f.write(rows)
        logger.debug("Appended %d entries for %s", len(entries), entries[0].client)

    def _save_all(self, entries: list[TimeEntry]) -> None:
        write_atomic(self.path, encode_ledger(entries))


class MemoryLedger(EntryLedger):
    """In-memory ledger for testing."""

    def __init__(self, entries: list[TimeEntry] | None = None) -> None:
        self._entries = list(entries or [])

    def _load(self) -> list[TimeEntry]:
        return list(self._entries)

    def extend(self, entries: list[TimeEntry]) -> None:
        self._entries.extend(entries)

    def _save_all(self, entries: list[TimeEntry]) -> None:
        self._entries = list(entries)


def write_atomic(path: Path, content: str) -> None:
    """Write content to path via a temporary file and rename.

    Either the new content is in place or the old file is untouched.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
