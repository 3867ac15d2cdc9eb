from datetime import datetime, timedelta

import pytest

from paani.services.schedule import (
    FALLBACK_DELAY,
    advance_from_previous,
    clean_days,
    compute_next_run,
    normalize_time,
    sunday_weekday,
)

OFFSET = 300  # business-local = UTC+5


def _rule(kind, time="09:00", days=(), date="", next_run=None):
    return {"id": 1, "type": kind, "time": time, "days": list(days), "date": date, "next_run": next_run}


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("09:00", "09:00"),
        ("9:05", "09:05"),
        ("14:30:59", "14:30"),
        ("2:15 PM", "14:15"),
        ("12:00 AM", "00:00"),
        ("12:30 pm", "12:30"),
        ("27:75", "23:59"),
        ("", "09:00"),
        (None, "09:00"),
        ("soon", "09:00"),
    ],
)
def test_normalize_time(raw, expected):
    assert normalize_time(raw) == expected


def test_weekday_numbering_starts_on_sunday():
    assert sunday_weekday(datetime(2026, 10, 18).date()) == 0  # Sunday
    assert sunday_weekday(datetime(2026, 10, 22).date()) == 4  # Thursday
    assert sunday_weekday(datetime(2026, 10, 24).date()) == 6  # Saturday


def test_clean_days_drops_junk():
    assert clean_days([3, "1", 1, 9, -1, "x", None]) == [1, 3]


def test_daily_later_today():
    now = datetime(2026, 10, 19, 3, 0)  # 08:00 local
    assert compute_next_run(_rule("daily"), OFFSET, now) == datetime(2026, 10, 19, 4, 0)


def test_daily_time_passed_rolls_to_tomorrow():
    now = datetime(2026, 10, 19, 5, 0)  # 10:00 local
    assert compute_next_run(_rule("daily"), OFFSET, now) == datetime(2026, 10, 20, 4, 0)


def test_daily_exactly_now_is_not_returned():
    now = datetime(2026, 10, 19, 4, 0)
    assert compute_next_run(_rule("daily"), OFFSET, now) == datetime(2026, 10, 20, 4, 0)


def test_alternating_days_skips_one_day():
    now = datetime(2026, 10, 19, 5, 0)
    assert compute_next_run(_rule("alternating_days"), OFFSET, now) == datetime(2026, 10, 21, 4, 0)


def test_weekly_wraps_to_next_week():
    # Thursday 10:00 local, rule on Monday and Wednesday
    now = datetime(2026, 10, 22, 5, 0)
    nxt = compute_next_run(_rule("weekly", days=[1, 3]), OFFSET, now)
    assert nxt == datetime(2026, 10, 26, 4, 0)
    assert sunday_weekday((nxt + timedelta(minutes=OFFSET)).date()) == 1


def test_weekly_same_day_still_ahead():
    now = datetime(2026, 10, 22, 2, 0)  # Thursday 07:00 local
    nxt = compute_next_run(_rule("weekly", days=[4]), OFFSET, now)
    assert nxt == datetime(2026, 10, 22, 4, 0)


def test_weekly_without_days_repeats_weekly():
    now = datetime(2026, 10, 22, 5, 0)
    assert compute_next_run(_rule("weekly"), OFFSET, now) == datetime(2026, 10, 29, 4, 0)


def test_one_time_uses_date_and_time():
    nxt = compute_next_run(_rule("one_time", time="10:00", date="2026-11-02"), OFFSET, datetime(2026, 10, 18))
    assert nxt == datetime(2026, 11, 2, 5, 0)


def test_local_midnight_crossing():
    # 02:00 local is the previous UTC day
    nxt = compute_next_run(_rule("daily", time="02:00"), OFFSET, datetime(2026, 10, 19, 12, 0))
    assert nxt == datetime(2026, 10, 19, 21, 0)


def test_unreadable_rule_falls_back_one_hour():
    now = datetime(2026, 10, 19, 12, 0)
    assert compute_next_run(_rule("fortnightly"), OFFSET, now) == now + FALLBACK_DELAY
    assert compute_next_run(_rule("one_time", date="not-a-date"), OFFSET, now) == now + FALLBACK_DELAY


def test_advance_keeps_time_of_day_over_many_runs():
    prev = datetime(2026, 10, 19, 4, 0)
    for i in range(10):
        # the sweep runs a little late every time
        nxt = advance_from_previous(_rule("daily", next_run=prev), OFFSET, prev + timedelta(minutes=2))
        assert nxt == prev + timedelta(days=1)
        assert (nxt.hour, nxt.minute) == (4, 0)
        prev = nxt
    assert prev == datetime(2026, 10, 29, 4, 0)


def test_advance_alternating_keeps_afternoon_slot():
    prev = datetime(2026, 10, 19, 9, 0)  # 14:00 local
    rule = _rule("alternating_days", time="14:00", next_run=prev)
    assert advance_from_previous(rule, OFFSET, prev + timedelta(minutes=1)) == datetime(2026, 10, 21, 9, 0)


def test_advance_skips_missed_occurrences():
    prev = datetime(2026, 10, 15, 4, 0)
    now = datetime(2026, 10, 19, 6, 0)
    nxt = advance_from_previous(_rule("daily", next_run=prev), OFFSET, now)
    assert nxt == datetime(2026, 10, 20, 4, 0)


def test_advance_alternating_keeps_parity_after_outage():
    prev = datetime(2026, 10, 1, 4, 0)
    now = datetime(2026, 10, 10, 5, 0)
    nxt = advance_from_previous(_rule("alternating_days", next_run=prev), OFFSET, now)
    assert nxt == datetime(2026, 10, 11, 4, 0)
    assert (nxt - prev).days % 2 == 0


def test_advance_weekly_moves_to_next_allowed_day():
    prev = datetime(2026, 10, 26, 4, 0)  # Monday 09:00 local
    rule = _rule("weekly", days=[1, 3], next_run=prev)
    assert advance_from_previous(rule, OFFSET, prev) == datetime(2026, 10, 28, 4, 0)
    rule["next_run"] = datetime(2026, 10, 28, 4, 0)
    assert advance_from_previous(rule, OFFSET, rule["next_run"]) == datetime(2026, 11, 2, 4, 0)


def test_advance_one_time_has_no_next():
    rule = _rule("one_time", date="2026-11-02", next_run=datetime(2026, 11, 2, 4, 0))
    assert advance_from_previous(rule, OFFSET, datetime(2026, 11, 2, 4, 1)) is None


def test_advance_without_previous_computes_from_now():
    now = datetime(2026, 10, 19, 5, 0)
    assert advance_from_previous(_rule("daily"), OFFSET, now) == datetime(2026, 10, 20, 4, 0)


def test_advance_after_very_long_outage_falls_back_to_now():
    prev = datetime(2020, 1, 1, 4, 0)
    now = datetime(2026, 10, 19, 5, 0)
    nxt = advance_from_previous(_rule("daily", next_run=prev), OFFSET, now)
    assert nxt == datetime(2026, 10, 20, 4, 0)
