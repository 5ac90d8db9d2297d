from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from nurture.contracts import DelayConfig, SendingWindow
from nurture.delays import compute_wake_time, next_window_opening

# a Monday
T0 = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


def _at(day, hour, minute=0):
    return datetime(2024, 1, day, hour, minute, tzinfo=timezone.utc)


def test_fixed_delay_sixty_minutes_is_exact():
    config = DelayConfig(delay_type="fixed", delay_value=60, delay_unit="minutes")
    assert compute_wake_time(config, T0) == T0 + timedelta(minutes=60)


@pytest.mark.parametrize(
    "unit, expected",
    [
        ("hours", timedelta(hours=2)),
        ("days", timedelta(days=2)),
        ("weeks", timedelta(weeks=2)),
    ],
)
def test_fixed_delay_units(unit, expected):
    config = DelayConfig(delay_type="fixed", delay_value=2, delay_unit=unit)
    assert compute_wake_time(config, T0) == T0 + expected


def test_until_time_later_today():
    config = DelayConfig(delay_type="until_time", until_time="14:30")
    assert compute_wake_time(config, T0) == _at(1, 14, 30)


def test_until_time_already_passed_moves_to_tomorrow():
    config = DelayConfig(delay_type="until_time", until_time="09:00")
    assert compute_wake_time(config, T0) == _at(2, 9)


def test_until_time_equal_to_now_is_today():
    config = DelayConfig(delay_type="until_time", until_time="10:00")
    assert compute_wake_time(config, T0) == T0


def test_until_time_in_workflow_timezone():
    config = DelayConfig(delay_type="until_time", until_time="09:00")
    # 10:00 UTC is 05:00 in New York; 09:00 there is 14:00 UTC
    wake = compute_wake_time(config, T0, ZoneInfo("America/New_York"))
    assert wake == _at(1, 14)


def test_until_day_defaults_to_midnight():
    config = DelayConfig(delay_type="until_day", until_day=2)
    assert compute_wake_time(config, T0) == _at(3, 0)


def test_until_day_same_weekday_later_today():
    config = DelayConfig(delay_type="until_day", until_day=0, until_time="12:00")
    assert compute_wake_time(config, T0) == _at(1, 12)


def test_until_day_same_weekday_already_passed():
    config = DelayConfig(delay_type="until_day", until_day=0, until_time="09:00")
    assert compute_wake_time(config, T0) == _at(8, 9)


def test_until_date():
    target = datetime(2024, 2, 14, 8, 0, tzinfo=timezone.utc)
    config = DelayConfig(delay_type="until_date", until_date=target)
    assert compute_wake_time(config, T0) == target


def test_window_disabled_never_defers():
    assert next_window_opening(SendingWindow(), _at(1, 23)) is None


def test_inside_window_runs_now():
    window = SendingWindow(enabled=True, start_hour=9, end_hour=17)
    assert next_window_opening(window, T0) is None


def test_after_hours_waits_for_next_morning():
    window = SendingWindow(enabled=True, start_hour=9, end_hour=17)
    assert next_window_opening(window, _at(1, 18)) == _at(2, 9)


def test_before_hours_waits_for_same_morning():
    window = SendingWindow(enabled=True, start_hour=9, end_hour=17)
    assert next_window_opening(window, _at(1, 7)) == _at(1, 9)


def test_weekend_waits_for_monday():
    window = SendingWindow(enabled=True, start_hour=9, end_hour=17, days_of_week=[0, 1, 2, 3, 4])
    # 2024-01-06 is a Saturday
    assert next_window_opening(window, _at(6, 10)) == _at(8, 9)


def test_window_rejects_inverted_hours():
    with pytest.raises(ValueError):
        SendingWindow(enabled=True, start_hour=17, end_hour=9)
