# paani/services/requests.py
# Manual delivery-request entry points and the request state machine.

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from paani.core.clock import ensure_naive_utc, utc_naive_now
from paani.core.errors import (
    CustomerNotFound,
    DuplicateActiveRequest,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from paani.models.customer import Customer
from paani.models.delivery import (
    CANCELLATION_REASONS,
    CANCELLED_BY,
    STATUSES,
    DeliveryRequest,
)
from paani.models.recurring import PRIORITIES
from paani.repo.customers import get_customer
from paani.repo.delivery_requests import get_request, list_active_for_customer, list_requests
from paani.services.guard import DuplicateRequestGuard

log = logging.getLogger(__name__)

# forward-only; terminal states have no way out
TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"processing", "cancelled"}),
    "pending_confirmation": frozenset({"processing", "cancelled"}),
    "processing": frozenset({"delivered", "cancelled"}),
    "delivered": frozenset(),
    "cancelled": frozenset(),
}


def check_transition(current: str, target: str) -> None:
    if target not in STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(STATUSES)}")
    if target not in TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition(current, target)


def _positive_int(raw: Any, name: str) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer") from None
    if value <= 0:
        raise ValidationError(f"{name} must be positive")
    return value


def _priority(raw: Any) -> str:
    value = str(raw or "normal").strip().lower()
    if value not in PRIORITIES:
        raise ValidationError("priority must be normal or urgent")
    return value


def snapshot_customer(req: DeliveryRequest, customer: Customer) -> None:
    """Copy customer fields onto the request; later customer edits don't touch it."""
    req.customer_id = customer.id
    req.customer_name = customer.name
    req.address = customer.address
    req.price_per_can = customer.price_per_can
    req.payment_type = customer.payment_type


async def create_delivery_request(
    session: AsyncSession,
    guard: DuplicateRequestGuard,
    payload: Mapping[str, Any],
    *,
    created_by: str = "",
    throttle: bool = True,
) -> DeliveryRequest:
    """
    Manual creation. Raises DuplicateActiveRequest (or its StorageConflict
    flavour) when the customer already has an active request.
    """
    customer_id = _positive_int(payload.get("customerId"), "customerId")
    customer = await get_customer(session, customer_id)
    if customer is None:
        raise CustomerNotFound(customer_id)

    reservation = await guard.try_reserve(session, customer_id, throttle=throttle)
    if not reservation.allowed:
        existing = reservation.existing
        raise DuplicateActiveRequest(customer_id, existing.id, existing.status)

    cans = payload.get("cans")
    req = DeliveryRequest(
        cans=_positive_int(cans, "cans") if cans is not None else customer.default_cans,
        priority=_priority(payload.get("priority")),
        status="pending",
        order_details=str(payload.get("orderDetails") or ""),
        internal_notes=str(payload.get("internalNotes") or ""),
        scheduled_for=_parse_instant(payload.get("scheduledFor")),
        requested_at=utc_naive_now(),
        created_by=created_by or str(payload.get("createdBy") or ""),
    )
    snapshot_customer(req, customer)
    await guard.insert(session, req)
    log.info("request_created id=%s customer=%s by=%s", req.id, customer_id, req.created_by)
    return req


def _parse_instant(raw: Any) -> datetime | None:
    if raw in (None, ""):
        return None
    if isinstance(raw, datetime):
        return ensure_naive_utc(raw)
    try:
        return ensure_naive_utc(datetime.fromisoformat(str(raw).replace("Z", "+00:00")))
    except ValueError:
        raise ValidationError(f"not an ISO timestamp: {raw!r}") from None


async def _load(session: AsyncSession, request_id: int) -> DeliveryRequest:
    req = await get_request(session, request_id)
    if req is None:
        raise NotFound("delivery request", request_id)
    return req


async def update_delivery_request(
    session: AsyncSession,
    guard: DuplicateRequestGuard,
    request_id: int,
    payload: Mapping[str, Any],
) -> DeliveryRequest:
    req = await _load(session, request_id)

    if "cans" in payload:
        req.cans = _positive_int(payload["cans"], "cans")
    if "priority" in payload:
        req.priority = _priority(payload["priority"])
    if "orderDetails" in payload:
        req.order_details = str(payload["orderDetails"] or "")
    if "internalNotes" in payload:
        req.internal_notes = str(payload["internalNotes"] or "")
    if "scheduledFor" in payload:
        req.scheduled_for = _parse_instant(payload["scheduledFor"])

    new_customer = payload.get("customerId")
    customer_id = _positive_int(new_customer, "customerId") if new_customer is not None else req.customer_id
    if customer_id != req.customer_id:
        customer = await get_customer(session, customer_id)
        if customer is None:
            raise CustomerNotFound(customer_id)
        if req.is_active:
            reservation = await guard.try_reserve(session, customer_id, throttle=False)
            if not reservation.allowed:
                existing = reservation.existing
                raise DuplicateActiveRequest(customer_id, existing.id, existing.status)
        snapshot_customer(req, customer)

    await guard.flush(session, req.customer_id)
    return req


async def set_status(
    session: AsyncSession,
    request_id: int,
    status: str,
    *,
    now: datetime | None = None,
) -> DeliveryRequest:
    """Forward moves only: pending → processing → delivered. Cancelling has its own entry point."""
    req = await _load(session, request_id)
    check_transition(req.status, status)
    if status == "cancelled":
        raise ValidationError("use the cancel entry point: reason and cancelledBy are required")

    now = ensure_naive_utc(now) if now else utc_naive_now()
    req.status = status
    if status == "delivered":
        req.delivered_at = now
        req.completed_at = now
    await session.flush()
    log.info("request_status id=%s status=%s", req.id, status)
    return req


async def cancel_delivery_request(
    session: AsyncSession,
    request_id: int,
    reason: str,
    cancelled_by: str,
    notes: str = "",
    *,
    now: datetime | None = None,
) -> DeliveryRequest:
    if not reason or not cancelled_by:
        raise ValidationError("cancellation reason and cancelledBy are required")
    if reason not in CANCELLATION_REASONS:
        raise ValidationError(f"reason must be one of: {', '.join(CANCELLATION_REASONS)}")
    if cancelled_by not in CANCELLED_BY:
        raise ValidationError(f"cancelledBy must be one of: {', '.join(CANCELLED_BY)}")

    req = await _load(session, request_id)
    check_transition(req.status, "cancelled")

    now = ensure_naive_utc(now) if now else utc_naive_now()
    req.status = "cancelled"
    req.cancelled_at = now
    req.completed_at = now
    req.cancelled_by = cancelled_by
    req.cancellation_reason = reason
    req.cancellation_notes = notes or ""
    await session.flush()
    log.info("request_cancelled id=%s by=%s reason=%s", req.id, cancelled_by, reason)
    return req


async def delete_delivery_request(session: AsyncSession, request_id: int) -> None:
    req = await _load(session, request_id)
    await session.delete(req)
    await session.flush()


async def list_delivery_requests(session: AsyncSession, status: str | None = None) -> list[DeliveryRequest]:
    if status and status not in STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(STATUSES)}")
    return await list_requests(session, status)


async def active_requests_for_customer(session: AsyncSession, customer_id: int) -> list[DeliveryRequest]:
    return await list_active_for_customer(session, customer_id)

