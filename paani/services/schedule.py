# -*- coding: utf-8 -*-
"""
Next-run arithmetic for recurrence rules.

All instants going in and out are naive UTC. Time-of-day semantics live in
business-local time, which is UTC shifted by a fixed offset in minutes (no DST).
Weekdays are numbered Sunday=0 .. Saturday=6.
"""
from __future__ import annotations

import logging
import re
from datetime import date, datetime, timedelta
from typing import Any, Iterable, Mapping

from paani.core.clock import ensure_naive_utc, utc_naive_now

log = logging.getLogger(__name__)

DEFAULT_TIME = "09:00"
FALLBACK_DELAY = timedelta(hours=1)

_AMPM_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?\s*([AaPp][Mm])$")
_HM_RE = re.compile(r"^(\d{1,2}):(\d{1,2})(?::(\d{1,2}))?$")

_STEP_DAYS = {"daily": 1, "alternating_days": 2}


def normalize_time(raw: Any) -> str:
    """
    Normalize a time-of-day to strict 24h HH:MM.
    Accepts "HH:MM", "HH:MM:SS", "h:mm AM/PM"; anything unreadable becomes 09:00.
    """
    if raw is None:
        return DEFAULT_TIME
    s = str(raw).strip()
    if not s:
        return DEFAULT_TIME

    m = _AMPM_RE.match(s)
    if m:
        hh, mm = int(m.group(1)), int(m.group(2))
        suffix = m.group(4).upper()
        if suffix == "PM" and hh < 12:
            hh += 12
        if suffix == "AM" and hh == 12:
            hh = 0
        return f"{min(hh, 23):02d}:{min(mm, 59):02d}"

    m = _HM_RE.match(s)
    if m:
        hh = max(0, min(23, int(m.group(1))))
        mm = max(0, min(59, int(m.group(2))))
        return f"{hh:02d}:{mm:02d}"

    return DEFAULT_TIME


def _hour_minute(raw: Any) -> tuple[int, int]:
    hh, mm = normalize_time(raw).split(":")
    return int(hh), int(mm)


def sunday_weekday(d: date) -> int:
    """date.weekday() is Monday=0; rules count from Sunday=0."""
    return (d.weekday() + 1) % 7


def clean_days(days: Iterable[Any] | None) -> list[int]:
    """Sorted unique weekday indices in 0..6; junk entries are dropped."""
    out: set[int] = set()
    for d in days or ():
        try:
            n = int(d)
        except (TypeError, ValueError):
            continue
        if 0 <= n <= 6:
            out.add(n)
    return sorted(out)


def parse_rule_date(raw: str) -> date:
    y, m, d = (int(x) for x in str(raw).strip().split("-"))
    return date(y, m, d)


def to_local(dt_utc: datetime, offset_minutes: int) -> datetime:
    return ensure_naive_utc(dt_utc) + timedelta(minutes=offset_minutes)


def to_utc(dt_local: datetime, offset_minutes: int) -> datetime:
    return dt_local - timedelta(minutes=offset_minutes)


def _field(rule: Any, name: str, default: Any = None) -> Any:
    if isinstance(rule, Mapping):
        return rule.get(name, default)
    return getattr(rule, name, default)


def compute_next_run(rule: Any, offset_minutes: int, now: datetime) -> datetime:
    """
    Next UTC instant a rule should fire, counted from `now`.

    `rule` is anything with type/days/date/time (a RecurrenceRule or a dict).
    Never raises: an unreadable rule is pushed one hour out so it can't stall
    the scheduler.
    """
    now = ensure_naive_utc(now).replace(microsecond=0)
    try:
        return _compute_from_now(rule, offset_minutes, now)
    except (TypeError, ValueError) as e:
        log.warning("next_run fallback rule=%s err=%s", _field(rule, "id"), e)
        return now + FALLBACK_DELAY


def _compute_from_now(rule: Any, offset_minutes: int, now: datetime) -> datetime:
    kind = _field(rule, "type")
    h, m = _hour_minute(_field(rule, "time"))
    local_now = to_local(now, offset_minutes)
    today_at = local_now.replace(hour=h, minute=m, second=0, microsecond=0)

    if kind == "one_time":
        d = parse_rule_date(_field(rule, "date") or "")
        local = datetime(d.year, d.month, d.day, h, m)
        return to_utc(local, offset_minutes)

    if kind in _STEP_DAYS:
        candidate = today_at
        if candidate <= local_now:
            candidate += timedelta(days=_STEP_DAYS[kind])
        return to_utc(candidate, offset_minutes)

    if kind == "weekly":
        allowed = clean_days(_field(rule, "days"))
        if not allowed:
            candidate = today_at
            if candidate <= local_now:
                candidate += timedelta(days=7)
            return to_utc(candidate, offset_minutes)
        for i in range(8):
            candidate = today_at + timedelta(days=i)
            if sunday_weekday(candidate.date()) in allowed and candidate > local_now:
                return to_utc(candidate, offset_minutes)
        return to_utc(today_at + timedelta(days=7), offset_minutes)

    raise ValueError(f"unknown rule type {kind!r}")


def _step_from(rule: Any, prev_local: datetime) -> datetime:
    kind = _field(rule, "type")
    if kind in _STEP_DAYS:
        return prev_local + timedelta(days=_STEP_DAYS[kind])
    if kind == "weekly":
        allowed = clean_days(_field(rule, "days"))
        if allowed:
            prev_dow = sunday_weekday(prev_local.date())
            for i in range(1, 8):
                if (prev_dow + i) % 7 in allowed:
                    return prev_local + timedelta(days=i)
        return prev_local + timedelta(days=7)
    raise ValueError(f"unknown rule type {kind!r}")


def advance_from_previous(
    rule: Any,
    offset_minutes: int,
    now: datetime | None = None,
) -> datetime | None:
    """
    Next occurrence counted from the rule's previous next_run instead of from now,
    so the wall-clock time of day never drifts when a sweep runs late.

    one_time rules have no next occurrence (None). With `now`, whole intervals
    are added until the result is strictly after `now`; skipped occurrences are
    not back-filled and alternating rules keep their day parity.
    """
    kind = _field(rule, "type")
    if kind == "one_time":
        return None

    prev = _field(rule, "next_run")
    if prev is None:
        return compute_next_run(rule, offset_minutes, now or utc_naive_now())

    try:
        prev_local = to_local(prev, offset_minutes).replace(second=0, microsecond=0)
        hour, minute = prev_local.hour, prev_local.minute
        limit = to_local(now, offset_minutes) if now is not None else None

        nxt = _step_from(rule, prev_local)
        # a multi-year outage is not worth stepping through one day at a time
        for _ in range(800):
            if limit is None or nxt > limit:
                break
            nxt = _step_from(rule, nxt)
        else:
            return compute_next_run(rule, offset_minutes, now)
        return to_utc(nxt.replace(hour=hour, minute=minute), offset_minutes)
    except (TypeError, ValueError) as e:
        log.warning("advance fallback rule=%s err=%s", _field(rule, "id"), e)
        base = ensure_naive_utc(now) if now is not None else ensure_naive_utc(prev)
        return base.replace(microsecond=0) + FALLBACK_DELAY
