# paani/handlers/recurring.py
from __future__ import annotations

import html
import re
from typing import Any

from aiogram import Router
from aiogram.filters import Command
from aiogram.types import Message

from paani.core.config import settings
from paani.core.db import session_scope
from paani.core.errors import NotFound, ValidationError
from paani.core.scheduler import SchedulerDriver
from paani.handlers import is_staff
from paani.services import recurring as recurring_svc
from paani.services.schedule import to_local

router = Router(name=__name__)

_HELP = (
    "Recurring deliveries:\n"
    "/recurring_add <customer_id> daily HH:MM [cans] [urgent]\n"
    "/recurring_add <customer_id> alternating HH:MM [cans] [urgent]\n"
    "/recurring_add <customer_id> weekly <days> HH:MM [cans] [urgent]\n"
    "/recurring_add <customer_id> once YYYY-MM-DD HH:MM [cans] [urgent]\n\n"
    "Notes:\n"
    "  • days are comma separated, Sunday=0 … Saturday=6 (1,3 = Mon and Wed)\n"
    "  • times are business-local\n"
    "Examples:\n"
    "  /recurring_add 12 daily 09:00\n"
    "  /recurring_add 7 weekly 1,3 14:30 4\n"
    "  /recurring_add 3 once 2026-11-02 10:00 2 urgent\n\n"
    "/recurring_list — all rules\n"
    "/recurring_del <id> — delete a rule\n"
    "/sweep — fire due rules now"
)

_KINDS = {
    "daily": "daily",
    "alternating": "alternating_days",
    "weekly": "weekly",
    "once": "one_time",
}
_TIME_RE = re.compile(r"^\d{1,2}:\d{2}$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DAYS_RE = re.compile(r"^[0-6](,[0-6])*$")


def parse_recurring_args(text: str) -> dict[str, Any]:
    """
    `/recurring_add` arguments → rule payload for services.recurring.create_rule.
    Raises ValidationError with a short hint on malformed input.
    """
    parts = text.split()
    if parts and parts[0].startswith("/"):
        parts = parts[1:]
    if len(parts) < 3:
        raise ValidationError("not enough arguments")
    if not parts[0].isdigit():
        raise ValidationError("customer_id must be a number")

    kind = _KINDS.get(parts[1].lower())
    if kind is None:
        raise ValidationError(f"schedule must be one of: {', '.join(_KINDS)}")
    payload: dict[str, Any] = {"customerId": int(parts[0]), "type": kind, "days": [], "date": ""}

    idx = 2
    if kind == "weekly":
        if not _DAYS_RE.match(parts[idx]):
            raise ValidationError("days look like 1,3 (Sunday=0 … Saturday=6)")
        payload["days"] = sorted({int(d) for d in parts[idx].split(",")})
        idx += 1
    elif kind == "one_time":
        if not _DATE_RE.match(parts[idx]):
            raise ValidationError("date must be YYYY-MM-DD")
        payload["date"] = parts[idx]
        idx += 1

    if idx >= len(parts) or not _TIME_RE.match(parts[idx]):
        raise ValidationError("time must be HH:MM")
    payload["time"] = parts[idx]
    idx += 1

    for token in parts[idx:]:
        if token.isdigit():
            payload["cans"] = int(token)
        elif token.lower() == "urgent":
            payload["priority"] = "urgent"
        else:
            raise ValidationError(f"unexpected argument {token!r}")
    return payload


def _schedule(r) -> str:
    if r.type == "weekly":
        return f"weekly [{','.join(str(d) for d in r.days or [])}] {r.time}"
    if r.type == "one_time":
        return f"once {r.date} {r.time}"
    return f"{r.type} {r.time}"


@router.message(Command("recurring_add"))
async def cmd_recurring_add(m: Message) -> None:
    if not is_staff(m.from_user.id):
        return
    args = (m.text or "").split(maxsplit=1)
    if len(args) < 2:
        await m.answer(html.escape(_HELP))
        return
    try:
        payload = parse_recurring_args(args[1])
        async with session_scope() as s:
            r = await recurring_svc.create_rule(
                s, payload, offset_minutes=settings.business_tz_offset_minutes,
            )
            rule_id, sched, cans, nxt = r.id, _schedule(r), r.cans, r.next_run
    except (ValidationError, NotFound) as e:
        await m.answer(html.escape(f"⚠️ {e}\n\n{_HELP}"))
        return

    lr = to_local(nxt, settings.business_tz_offset_minutes).strftime("%Y-%m-%d %H:%M")
    await m.answer(f"♻️ Rule #{rule_id}: {html.escape(sched)}, {cans} cans\nNext run: {lr}")


@router.message(Command("recurring_list"))
async def cmd_recurring_list(m: Message) -> None:
    if not is_staff(m.from_user.id):
        return
    async with session_scope() as s:
        recs = await recurring_svc.list_rules(s)

    if not recs:
        await m.answer("No rules yet. See /recurring_add")
        return

    offset = settings.business_tz_offset_minutes
    lines = ["♻️ <b>Recurring deliveries</b>", ""]
    for r in recs:
        nxt = to_local(r.next_run, offset).strftime("%Y-%m-%d %H:%M") if r.next_run else "—"
        flag = " 🔴" if r.priority == "urgent" else ""
        lines.append(
            f"#{r.id}: {html.escape(r.customer_name or '')} | {html.escape(_schedule(r))} | "
            f"{r.cans} cans{flag} | next: {nxt}"
        )
    await m.answer("\n".join(lines), parse_mode="HTML")


@router.message(Command("recurring_del"))
async def cmd_recurring_del(m: Message) -> None:
    if not is_staff(m.from_user.id):
        return
    parts = (m.text or "").split()
    if len(parts) != 2 or not parts[1].isdigit():
        await m.answer(html.escape("Format: /recurring_del <id>"))
        return
    try:
        async with session_scope() as s:
            await recurring_svc.delete_rule(s, int(parts[1]))
    except NotFound:
        await m.answer("Rule not found.")
        return
    await m.answer("Deleted.")


@router.message(Command("sweep"))
async def cmd_sweep(m: Message, driver: SchedulerDriver) -> None:
    if not is_staff(m.from_user.id):
        return
    report = await driver.tick()
    if report is None:
        await m.answer("Sweep failed, see logs. The next tick retries.")
        return
    summary = ", ".join(f"{k}={v}" for k, v in report.as_dict().items())
    await m.answer(f"Sweep done: {summary}")
