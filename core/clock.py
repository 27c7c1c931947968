"""
core/clock.py -- Time source shared by every service.

Services take a `clock` callable instead of calling datetime.now() inline so
expiry, staleness and rate-limit windows can be driven deterministically in
tests. Stores persist timestamps as UTC epoch seconds; the two converters
below are the only place that translation happens.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch(moment: datetime) -> float:
    """Return epoch seconds for an aware datetime (naive values are taken as UTC)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


def from_epoch(value: float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)
