# paani/handlers/requests.py
# Staff queue: list, create, take, deliver, cancel.

from __future__ import annotations

import html

from aiogram import Router
from aiogram.filters import Command
from aiogram.types import Message

from paani.core.config import settings
from paani.core.db import session_scope
from paani.core.errors import (
    DuplicateActiveRequest,
    InvalidTransition,
    NotFound,
    RateLimitExceeded,
    ValidationError,
)
from paani.core.scheduler import SchedulerDriver
from paani.handlers import is_staff
from paani.models.delivery import CANCELLATION_REASONS, DeliveryRequest
from paani.repo.delivery_requests import list_queue
from paani.services import requests as requests_svc
from paani.services.guard import DuplicateRequestGuard
from paani.services.schedule import to_local

router = Router(name=__name__)


def _local(dt) -> str:
    if dt is None:
        return "—"
    return to_local(dt, settings.business_tz_offset_minutes).strftime("%Y-%m-%d %H:%M")


def format_request(r: DeliveryRequest) -> str:
    flag = "🔴" if r.priority == "urgent" else "🔵"
    return (
        f"{flag} #{r.id} <b>{html.escape(r.customer_name or '')}</b> · {r.cans} cans · {r.status}\n"
        f"   {html.escape(r.address or '')} · since {_local(r.requested_at)}"
    )


def _error_text(e: Exception) -> str:
    if isinstance(e, DuplicateActiveRequest):
        if e.existing_id is not None:
            return f"⛔ Customer already has an active request #{e.existing_id} ({e.existing_status})."
        return "⛔ Customer already has an active request."
    if isinstance(e, RateLimitExceeded):
        return f"⏳ Too fast. Try again in {max(1, round(e.retry_after))}s."
    return f"⚠️ {html.escape(str(e))}"


_USER_ERRORS = (DuplicateActiveRequest, RateLimitExceeded, NotFound, InvalidTransition, ValidationError)


def _request_id(m: Message) -> int | None:
    parts = (m.text or "").split()
    if len(parts) != 2 or not parts[1].isdigit():
        return None
    return int(parts[1])


@router.message(Command("queue"))
async def cmd_queue(m: Message, driver: SchedulerDriver) -> None:
    if not is_staff(m.from_user.id):
        return
    # catch up on due rules before showing the queue
    await driver.tick()
    async with session_scope() as s:
        rows = await list_queue(s)
    if not rows:
        await m.answer("Queue is empty ✅")
        return
    lines = [f"🚚 <b>Queue</b> ({len(rows)})", ""]
    lines.extend(format_request(r) for r in rows)
    await m.answer("\n".join(lines), parse_mode="HTML")


@router.message(Command("request"))
async def cmd_request(m: Message, guard: DuplicateRequestGuard) -> None:
    if not is_staff(m.from_user.id):
        return
    parts = (m.text or "").split()[1:]
    if not parts or not parts[0].isdigit():
        await m.answer(html.escape("Format: /request <customer_id> [cans] [urgent]"))
        return
    payload: dict = {"customerId": int(parts[0])}
    for token in parts[1:]:
        if token.isdigit():
            payload["cans"] = int(token)
        elif token.lower() == "urgent":
            payload["priority"] = "urgent"
        else:
            await m.answer(html.escape("Format: /request <customer_id> [cans] [urgent]"))
            return

    try:
        async with session_scope() as s:
            req = await requests_svc.create_delivery_request(
                s, guard, payload, created_by=f"tg:{m.from_user.id}",
            )
            text = "✅ Created\n" + format_request(req)
    except _USER_ERRORS as e:
        await m.answer(_error_text(e), parse_mode="HTML")
        return
    await m.answer(text, parse_mode="HTML")


async def _move(m: Message, status: str, usage: str) -> None:
    if not is_staff(m.from_user.id):
        return
    request_id = _request_id(m)
    if request_id is None:
        await m.answer(html.escape(usage))
        return
    try:
        async with session_scope() as s:
            req = await requests_svc.set_status(s, request_id, status)
            text = format_request(req)
    except _USER_ERRORS as e:
        await m.answer(_error_text(e), parse_mode="HTML")
        return
    await m.answer(text, parse_mode="HTML")


@router.message(Command("take"))
async def cmd_take(m: Message) -> None:
    await _move(m, "processing", "Format: /take <id>")


@router.message(Command("done"))
async def cmd_done(m: Message) -> None:
    await _move(m, "delivered", "Format: /done <id>")


@router.message(Command("cancel"))
async def cmd_cancel(m: Message) -> None:
    if not is_staff(m.from_user.id):
        return
    parts = (m.text or "").split(maxsplit=3)
    usage = f"Format: /cancel <id> <{'|'.join(CANCELLATION_REASONS)}> [notes]"
    if len(parts) < 3 or not parts[1].isdigit():
        await m.answer(html.escape(usage))
        return
    notes = parts[3] if len(parts) > 3 else ""
    try:
        async with session_scope() as s:
            req = await requests_svc.cancel_delivery_request(
                s, int(parts[1]), parts[2].lower(), "staff", notes,
            )
            text = "🚫 Cancelled\n" + format_request(req)
    except _USER_ERRORS as e:
        await m.answer(_error_text(e), parse_mode="HTML")
        return
    await m.answer(text, parse_mode="HTML")
