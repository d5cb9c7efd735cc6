from __future__ import annotations

import random
from datetime import UTC, date, datetime, timedelta

import pytest

from identity_core.clock import ManualClock, ReferenceClock
from identity_core.errors import CONFIG_INVALID, ConfigError


def test_day_delta_of_same_instant_is_zero() -> None:
    clock = ReferenceClock("America/New_York")
    instant = datetime(2026, 3, 10, 12, 30, tzinfo=UTC)
    assert clock.day_delta(instant, instant) == 0


def test_day_delta_between_consecutive_midnights_is_one() -> None:
    clock = ReferenceClock("Europe/Berlin")
    for offset in range(0, 400, 7):
        day = date(2026, 1, 1) + timedelta(days=offset)
        assert clock.day_delta(clock.midnight_of(day), clock.midnight_of(day + timedelta(days=1))) == 1


def test_day_delta_counts_calendar_days_not_hours() -> None:
    clock = ReferenceClock("UTC")
    late = datetime(2026, 3, 10, 23, 30, tzinfo=UTC)
    early_next = datetime(2026, 3, 11, 0, 15, tzinfo=UTC)
    next_evening = datetime(2026, 3, 11, 22, 59, tzinfo=UTC)
    assert clock.day_delta(late, early_next) == 1
    assert clock.day_delta(early_next, next_evening) == 0
    assert clock.hours_between(late, early_next) == pytest.approx(0.75)


def test_day_delta_uses_reference_timezone_midnight() -> None:
    clock = ReferenceClock("America/Los_Angeles")
    # 06:00 UTC and 09:00 UTC on the same UTC date straddle Pacific midnight.
    before = datetime(2026, 6, 1, 6, 0, tzinfo=UTC)
    after = datetime(2026, 6, 1, 9, 0, tzinfo=UTC)
    assert clock.day_delta(before, after) == 1
    assert not clock.same_calendar_day(before, after)


def test_day_delta_across_dst_change_is_one_day() -> None:
    clock = ReferenceClock("America/New_York")
    # 2026-03-08 is a 23-hour local day.
    assert clock.day_delta(clock.midnight_of(date(2026, 3, 8)), clock.midnight_of(date(2026, 3, 9))) == 1
    assert clock.hours_between(clock.midnight_of(date(2026, 3, 8)), clock.midnight_of(date(2026, 3, 9))) == 23


def test_day_delta_is_monotone_in_second_argument() -> None:
    clock = ReferenceClock("Asia/Kolkata")
    rng = random.Random(1234)
    anchor = datetime(2026, 1, 1, tzinfo=UTC)
    points = sorted(anchor + timedelta(minutes=rng.randint(0, 60 * 24 * 90)) for _ in range(200))
    deltas = [clock.day_delta(anchor, point) for point in points]
    assert deltas == sorted(deltas)


def test_day_delta_without_prior_activity_is_none() -> None:
    assert ReferenceClock("UTC").day_delta(None, datetime(2026, 3, 10, tzinfo=UTC)) is None


@pytest.mark.parametrize("timezone", [None, "", "   ", "Mars/Olympus_Mons"])
def test_unset_or_unknown_timezone_is_a_config_error(timezone: str | None) -> None:
    with pytest.raises(ConfigError) as excinfo:
        ReferenceClock(timezone)
    assert excinfo.value.code == CONFIG_INVALID


def test_manual_clock_advances() -> None:
    clock = ManualClock("UTC", datetime(2026, 3, 10, 12, tzinfo=UTC))
    start = clock.now()
    clock.advance(days=1, hours=2)
    assert clock.now() - start == timedelta(days=1, hours=2)
    clock.set(datetime(2026, 1, 1, tzinfo=UTC))
    assert clock.now() == datetime(2026, 1, 1, tzinfo=UTC)
