"""Billing rounding policy and duration formatting."""

from __future__ import annotations

import math
from datetime import datetime

# Sessions this short are billed as-is
NO_ROUNDING_MAX_MINUTES = 5
BILLING_INCREMENT_MINUTES = 15


def round_duration(raw_minutes: int) -> int:
    """Round raw elapsed minutes to billed minutes.

    Up to 5 minutes is kept as-is (no minimum billing). Anything longer is
    rounded up to the next 15-minute increment: 6-15 -> 15, 16-30 -> 30, ...

    Raises:
        ValueError: If raw_minutes is negative.
    """
    if raw_minutes < 0:
        raise ValueError(f"Duration cannot be negative: {raw_minutes}")
    if raw_minutes <= NO_ROUNDING_MAX_MINUTES:
        return raw_minutes
    return math.ceil(raw_minutes / BILLING_INCREMENT_MINUTES) * BILLING_INCREMENT_MINUTES


def elapsed_minutes(start: datetime, end: datetime) -> int:
    """Whole minutes between two timestamps, half a minute rounding up."""
    seconds = (end - start).total_seconds()
    return math.floor(seconds / 60 + 0.5)


def billed_minutes(start: datetime, end: datetime) -> int:
    return round_duration(elapsed_minutes(start, end))


def format_duration(minutes: int) -> str:
    """Format minutes as 'Xh Ym' or 'Ym'.

    Args:
        minutes: Duration in minutes.

    Returns:
        Formatted duration string, e.g. '1h 5m' or '45m'.
    """
    hours = minutes // 60
    mins = minutes % 60
    if hours == 0:
        return f"{mins}m"
    return f"{hours}h {mins}m"
