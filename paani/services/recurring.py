# -*- coding: utf-8 -*-
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paani.core.clock import ensure_naive_utc, utc_naive_now
from paani.core.errors import CustomerNotFound, NotFound, StorageConflict, ValidationError
from paani.models.delivery import DeliveryRequest
from paani.models.recurring import PRIORITIES, RULE_TYPES, RecurrenceRule
from paani.repo import recurring_rules as rules_repo
from paani.repo.customers import get_customer
from paani.services.guard import DuplicateRequestGuard
from paani.services.requests import snapshot_customer
from paani.services.schedule import (
    advance_from_previous,
    clean_days,
    compute_next_run,
    normalize_time,
    parse_rule_date,
)

log = logging.getLogger(__name__)

SCHEDULE_FIELDS = ("type", "days", "date", "time")
TRIGGER_COOLDOWN = timedelta(minutes=5)


# ---------------------------------------------------------------------------
# rule CRUD (admin side)
# ---------------------------------------------------------------------------

def _rule_fields(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Validate and normalize the writable rule fields present in `payload`."""
    out: dict[str, Any] = {}
    if "type" in payload:
        if payload["type"] not in RULE_TYPES:
            raise ValidationError(f"type must be one of: {', '.join(RULE_TYPES)}")
        out["type"] = payload["type"]
    if "days" in payload:
        days = payload["days"] or []
        if not isinstance(days, (list, tuple, set)):
            raise ValidationError("days must be a list of weekday numbers (0=Sunday)")
        out["days"] = clean_days(days)
    if "date" in payload:
        out["date"] = str(payload["date"] or "").strip()
    if "time" in payload:
        out["time"] = normalize_time(payload["time"])
    if "cans" in payload:
        try:
            cans = int(payload["cans"])
        except (TypeError, ValueError):
            raise ValidationError("cans must be an integer") from None
        if cans <= 0:
            raise ValidationError("cans must be positive")
        out["cans"] = cans
    if "priority" in payload:
        priority = str(payload["priority"] or "normal").lower()
        if priority not in PRIORITIES:
            raise ValidationError("priority must be normal or urgent")
        out["priority"] = priority
    return out


def _check_one_time_date(kind: str, raw_date: str) -> None:
    if kind != "one_time":
        return
    try:
        parse_rule_date(raw_date)
    except (TypeError, ValueError):
        raise ValidationError("one_time rules need a date as YYYY-MM-DD") from None


def _parse_next_run(raw: Any) -> datetime | None:
    if raw in (None, ""):
        return None
    if isinstance(raw, datetime):
        return ensure_naive_utc(raw).replace(microsecond=0)
    try:
        dt = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"nextRun is not an ISO timestamp: {raw!r}") from None
    return ensure_naive_utc(dt).replace(microsecond=0)


async def create_rule(
    session: AsyncSession,
    payload: Mapping[str, Any],
    *,
    offset_minutes: int,
    now: datetime | None = None,
) -> RecurrenceRule:
    try:
        customer_id = int(payload.get("customerId"))
    except (TypeError, ValueError):
        raise ValidationError("customerId is required") from None
    customer = await get_customer(session, customer_id)
    if customer is None:
        raise CustomerNotFound(customer_id)

    data = {"time": "09:00", "priority": "normal", "days": [], "date": ""}
    data.update(_rule_fields(payload))
    if "type" not in data:
        raise ValidationError(f"type must be one of: {', '.join(RULE_TYPES)}")
    if "cans" not in data:
        data["cans"] = customer.default_cans
    _check_one_time_date(data["type"], data["date"])

    now = ensure_naive_utc(now) if now else utc_naive_now()
    explicit = _parse_next_run(payload.get("nextRun"))
    data["next_run"] = explicit or compute_next_run(data, offset_minutes, now)

    rule = await rules_repo.create_rule(
        session,
        customer_id=customer.id,
        customer_name=customer.name,
        address=customer.address,
        **data,
    )
    log.info("rule_created id=%s type=%s customer=%s next_run=%s", rule.id, rule.type, customer.id, rule.next_run)
    return rule


async def update_rule(
    session: AsyncSession,
    rule_id: int,
    payload: Mapping[str, Any],
    *,
    offset_minutes: int,
    now: datetime | None = None,
) -> RecurrenceRule:
    """
    Partial update. Any change to type/days/date/time recomputes next_run from now;
    otherwise an explicit nextRun in the payload is stored as given.
    A parked rule (next_run cleared) is rescheduled when it gets a new customer.
    """
    rule = await rules_repo.get_rule(session, rule_id)
    if rule is None:
        raise NotFound("recurring rule", rule_id)

    customer_changed = False
    if payload.get("customerId") is not None:
        try:
            customer_id = int(payload["customerId"])
        except (TypeError, ValueError):
            raise ValidationError("customerId must be an integer") from None
        if customer_id != rule.customer_id:
            customer = await get_customer(session, customer_id)
            if customer is None:
                raise CustomerNotFound(customer_id)
            rule.customer_id = customer.id
            rule.customer_name = customer.name
            rule.address = customer.address
            customer_changed = True

    for key, value in _rule_fields(payload).items():
        setattr(rule, key, value)
    _check_one_time_date(rule.type, rule.date)

    now = ensure_naive_utc(now) if now else utc_naive_now()
    if any(k in payload for k in SCHEDULE_FIELDS):
        rule.next_run = compute_next_run(rule, offset_minutes, now)
    elif "nextRun" in payload:
        rule.next_run = _parse_next_run(payload["nextRun"])
    elif customer_changed and rule.next_run is None:
        rule.next_run = compute_next_run(rule, offset_minutes, now)
    rule.updated_at = now

    await session.flush()
    log.info("rule_updated id=%s next_run=%s", rule.id, rule.next_run)
    return rule


async def delete_rule(session: AsyncSession, rule_id: int) -> None:
    if not await rules_repo.delete_rule(session, rule_id):
        raise NotFound("recurring rule", rule_id)
    log.info("rule_deleted id=%s", rule_id)


async def list_rules(session: AsyncSession) -> list[RecurrenceRule]:
    return await rules_repo.list_rules(session)


# ---------------------------------------------------------------------------
# sweep
# ---------------------------------------------------------------------------

def is_debounced(
    last_triggered_at: datetime | None,
    next_run: datetime | None,
    now: datetime,
    cooldown: timedelta = TRIGGER_COOLDOWN,
) -> bool:
    """
    True while a rule fired recently and its next_run hasn't moved past that
    fire yet, i.e. an overlapping sweep is looking at the same occurrence.
    """
    if last_triggered_at is None or next_run is None:
        return False
    return (now - last_triggered_at) < cooldown and next_run <= last_triggered_at


@dataclass
class SweepReport:
    due: int = 0
    fired: int = 0
    deferred: int = 0
    orphaned: int = 0
    debounced: int = 0
    lost: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


class RecurringSweep:
    """
    Turns due recurrence rules into pending delivery requests.

    Safe to run concurrently with itself and with manual creation: every rule is
    claimed with a compare-and-swap on next_run, and the request insert is
    backed by the unique index on active requests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        guard: DuplicateRequestGuard,
        *,
        offset_minutes: int,
        cooldown: timedelta = TRIGGER_COOLDOWN,
        rule_timeout: float = 20.0,
    ) -> None:
        self._sessions = session_factory
        self.guard = guard
        self.offset_minutes = offset_minutes
        self.cooldown = cooldown
        self.rule_timeout = rule_timeout

    async def sweep(self, now: datetime | None = None) -> SweepReport:
        now = ensure_naive_utc(now).replace(microsecond=0) if now else utc_naive_now()

        async with self._sessions() as session:
            rules = await rules_repo.due_rules(session, now)

        report = SweepReport(due=len(rules))
        for rule in rules:
            if is_debounced(rule.last_triggered_at, rule.next_run, now, self.cooldown):
                report.debounced += 1
                continue
            try:
                outcome = await asyncio.wait_for(self._process(rule, now), timeout=self.rule_timeout)
            except asyncio.TimeoutError:
                log.error("sweep_timeout rule=%s customer=%s", rule.id, rule.customer_id)
                report.failed += 1
            except Exception:
                log.exception("sweep_failed rule=%s customer=%s", rule.id, rule.customer_id)
                report.failed += 1
            else:
                setattr(report, outcome, getattr(report, outcome) + 1)

        if report.due:
            log.info("sweep_done %s", " ".join(f"{k}={v}" for k, v in report.as_dict().items()))
        return report

    async def _process(self, rule: RecurrenceRule, now: datetime) -> str:
        try:
            async with self._sessions() as session:
                outcome = await self._fire(session, rule, now)
                await session.commit()
                return outcome
        except StorageConflict as e:
            log.info(
                "sweep_conflict rule=%s customer=%s existing=%s",
                rule.id, rule.customer_id, e.existing_id,
            )

        async with self._sessions() as session:
            moved = await self._defer(session, rule, now)
            await session.commit()
        return "deferred" if moved else "lost"

    async def _fire(self, session: AsyncSession, rule: RecurrenceRule, now: datetime) -> str:
        customer = await get_customer(session, rule.customer_id)
        if customer is None:
            # park the rule so it doesn't come back every cycle
            nxt = advance_from_previous(rule, self.offset_minutes, now)
            ok = await rules_repo.bump_next_run(session, rule.id, nxt, seen=rule.next_run, stamp=now)
            log.warning("sweep_orphan rule=%s customer=%s next_run=%s", rule.id, rule.customer_id, nxt)
            return "orphaned" if ok else "lost"

        reservation = await self.guard.try_reserve(session, rule.customer_id, throttle=False)
        if not reservation.allowed:
            moved = await self._defer(session, rule, now)
            return "deferred" if moved else "lost"

        if rule.type == "one_time":
            claimed = await rules_repo.delete_rule(session, rule.id, seen=rule.next_run)
            nxt = None
        else:
            nxt = advance_from_previous(rule, self.offset_minutes, now)
            claimed = await rules_repo.bump_next_run(session, rule.id, nxt, seen=rule.next_run, stamp=now)
        if not claimed:
            log.info("sweep_lost rule=%s (claimed by another sweep)", rule.id)
            return "lost"

        req = DeliveryRequest(
            cans=rule.cans,
            priority=rule.priority or "normal",
            status="pending",
            order_details="",
            requested_at=utc_naive_now(),
            created_by="scheduler",
        )
        snapshot_customer(req, customer)
        await self.guard.insert(session, req)
        log.info(
            "sweep_fired rule=%s type=%s customer=%s request=%s next_run=%s",
            rule.id, rule.type, customer.id, req.id, nxt,
        )
        return "fired"

    async def _defer(self, session: AsyncSession, rule: RecurrenceRule, now: datetime) -> bool:
        """Customer is busy: keep one_time rules waiting, move recurring ones along."""
        if rule.type == "one_time":
            return True
        nxt = advance_from_previous(rule, self.offset_minutes, now)
        moved = await rules_repo.bump_next_run(session, rule.id, nxt, seen=rule.next_run)
        log.info("sweep_deferred rule=%s customer=%s next_run=%s", rule.id, rule.customer_id, nxt)
        return moved
