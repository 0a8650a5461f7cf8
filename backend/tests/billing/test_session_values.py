from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from app.services.session_values import (
    DEFAULT_DURATION_HOURS,
    clamp_percent,
    duration_hours,
    psychologist_earnings,
    total_price,
)

START = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


def _session(hours=None, *, price=60.0, percent_psych=75.0, starts_on=START, ends_on=None):
    if ends_on is None and hours is not None and starts_on is not None:
        ends_on = starts_on + timedelta(hours=hours)
    return SimpleNamespace(
        starts_on=starts_on, ends_on=ends_on, price=price, percent_psych=percent_psych
    )


def test_ninety_minute_session_values():
    session = _session(1.5, price=60, percent_psych=75)
    assert duration_hours(session) == 1.5
    assert total_price(session) == 90
    assert psychologist_earnings(session) == pytest.approx(67.5)


def test_eighty_percent_share():
    starts_on = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
    session = _session(starts_on=starts_on, ends_on=starts_on + timedelta(minutes=90), price=50, percent_psych=80)
    assert duration_hours(session) == 1.5
    assert total_price(session) == 75
    assert psychologist_earnings(session) == pytest.approx(60)


@pytest.mark.parametrize(
    "session",
    [
        _session(None),
        _session(starts_on=None, ends_on=START),
        _session(-1),
        _session(0),
        _session(25),
        _session(starts_on=START.replace(tzinfo=None), ends_on=START + timedelta(hours=2)),
    ],
    ids=["no-end", "no-start", "negative", "zero", "over-a-day", "mixed-tz"],
)
def test_malformed_intervals_bill_one_hour(session):
    assert duration_hours(session) == DEFAULT_DURATION_HOURS
    assert total_price(session) == session.price


def test_exactly_one_day_is_accepted():
    assert duration_hours(_session(24)) == 24


def test_missing_share_earns_nothing():
    session = _session(1, price=80, percent_psych=None)
    assert psychologist_earnings(session) == 0
    assert total_price(_session(1, price=None)) == 0


@pytest.mark.parametrize(
    "value,expected",
    [(None, 0.0), (-10, 0.0), (0, 0.0), (42.5, 42.5), (100, 100.0), (150, 100.0)],
)
def test_clamp_percent(value, expected):
    assert clamp_percent(value) == expected
