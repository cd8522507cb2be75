"""Single-record stores for the active session and the idle-pending session."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Generic, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from billtrack.ledger import write_atomic

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


class Slot(Protocol[T]):
    """A durable slot holding at most one record."""

    def get(self) -> T | None: ...

    def set(self, value: T) -> None: ...

    def clear(self) -> None: ...


class JsonSlot(Generic[T]):
    """Slot persisted as a pretty-printed JSON file.

    A missing file means the slot is empty. A corrupt or unreadable file is
    treated as empty too, so a damaged slot behaves like no session.
    """

    def __init__(self, path: Path, model: type[T]) -> None:
        self.path = Path(path)
        self.model = model

    def get(self) -> T | None:
        try:
            data = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Could not read %s: %s", self.path, e)
            return None

        try:
            return self.model.model_validate(json.loads(data))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("Ignoring corrupt record in %s: %s", self.path, e)
            return None

    def set(self, value: T) -> None:
        write_atomic(self.path, value.model_dump_json(by_alias=True, indent=2))

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class MemorySlot(Generic[T]):
    """In-memory slot for testing."""

    def __init__(self, value: T | None = None) -> None:
        self._value = value

    def get(self) -> T | None:
        return self._value

    def set(self, value: T) -> None:
        self._value = value

    def clear(self) -> None:
        self._value = None
