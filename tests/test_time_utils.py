from datetime import datetime, timezone

from supply_process import compute_timeslot_window
from time_utils import (
    add_moscow_days, describe_timeslot, end_of_moscow_day, format_timeslot_range, parse_last_day,
    start_of_moscow_day, to_ozon_iso,
)


def test_window_counts_days_from_now_in_utc():
    now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
    window = compute_timeslot_window(2, 5, now)
    assert window == {"from_iso": "2025-01-03T12:00:00Z", "to_iso": "2025-01-06T12:00:00Z"}


def test_add_moscow_days_keeps_utc_instant_shape():
    now = datetime(2025, 3, 30, 22, 30, tzinfo=timezone.utc)
    assert to_ozon_iso(add_moscow_days(now, 1)) == "2025-03-31T22:30:00Z"


def test_last_day_is_end_of_moscow_day():
    assert parse_last_day("2025-01-10") == datetime(2025, 1, 10, 20, 59, 59, tzinfo=timezone.utc)
    assert parse_last_day("10.01.2025") == parse_last_day("2025-01-10")
    assert parse_last_day("не дата") is None
    assert parse_last_day("") is None


def test_timeslot_text():
    assert describe_timeslot({"from_in_timezone": "a", "to_in_timezone": "b"}) == "a — b"
    assert describe_timeslot({"from_in_timezone": "a"}) is None
    text = format_timeslot_range("2025-01-05T07:00:00Z", "2025-01-05T08:00:00Z")
    assert text == "05.01, 10:00 — 05.01, 11:00"


def test_moscow_day_bounds():
    # 22:30 UTC is already the next day in Moscow
    now = datetime(2025, 1, 1, 22, 30, tzinfo=timezone.utc)
    assert start_of_moscow_day(now) == datetime(2025, 1, 1, 21, 0, tzinfo=timezone.utc)
    assert end_of_moscow_day(now) == datetime(2025, 1, 2, 20, 59, 59, tzinfo=timezone.utc)
