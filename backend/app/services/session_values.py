"""Billable value of a single therapy session.

Stored timestamps are not trusted: a missing, inverted or implausibly long
interval bills as one hour rather than inflating or zeroing the sum.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Protocol

DEFAULT_DURATION_HOURS = 1.0
MAX_DURATION = timedelta(hours=24)


class PricedSession(Protocol):
    starts_on: datetime | None
    ends_on: datetime | None
    price: float | None
    percent_psych: float | None


def duration_hours(session: PricedSession) -> float:
    starts_on = session.starts_on
    ends_on = session.ends_on
    if starts_on is None or ends_on is None:
        return DEFAULT_DURATION_HOURS
    try:
        delta = ends_on - starts_on
    except TypeError:
        # mixed naive/aware timestamps
        return DEFAULT_DURATION_HOURS
    if delta <= timedelta(0) or delta > MAX_DURATION:
        return DEFAULT_DURATION_HOURS
    return delta.total_seconds() / 3600


def total_price(session: PricedSession) -> float:
    return (session.price or 0) * duration_hours(session)


def psychologist_earnings(session: PricedSession) -> float:
    return total_price(session) * ((session.percent_psych or 0) / 100)


def clamp_percent(value: float | None) -> float:
    if value is None:
        return 0.0
    return min(max(float(value), 0.0), 100.0)
