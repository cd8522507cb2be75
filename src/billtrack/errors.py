"""Exceptions raised by the tracker core."""

from __future__ import annotations


class TrackerError(Exception):
    """Base exception for tracker errors."""

    pass


class InvalidInputError(TrackerError, ValueError):
    """Raised when caller input is rejected before any store is touched."""

    pass


class InvalidTransitionError(TrackerError):
    """Raised when an operation is not allowed in the current tracking state."""

    pass


class NoActiveSessionError(InvalidTransitionError):
    """Raised when an operation needs an active session and there is none."""

    def __init__(self) -> None:
        super().__init__("No active tracking session.")


class IdlePendingError(InvalidTransitionError):
    """Raised when an idle-paused session must be resolved first."""

    def __init__(self, client: str) -> None:
        self.client = client
        super().__init__(
            f"Tracking for '{client}' is paused for idle; resume or stop it first."
        )


class NoIdlePendingError(InvalidTransitionError):
    """Raised when resolving an idle pause that does not exist."""

    def __init__(self) -> None:
        super().__init__("No idle-paused session to resolve.")
