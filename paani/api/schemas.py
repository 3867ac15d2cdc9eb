# paani/api/schemas.py
# ORM rows → JSON dicts (camelCase, instants as ISO-8601 UTC with a trailing Z).

from __future__ import annotations

from typing import Any

from paani.core.clock import iso
from paani.models.customer import Customer
from paani.models.delivery import DeliveryRequest
from paani.models.recurring import RecurrenceRule


def customer_to_dict(c: Customer) -> dict[str, Any]:
    return {
        "id": c.id,
        "name": c.name,
        "phone": c.phone,
        "address": c.address,
        "defaultCans": c.default_cans,
        "pricePerCan": c.price_per_can,
        "paymentType": c.payment_type,
        "notes": c.notes,
        "createdAt": iso(c.created_at),
        "updatedAt": iso(c.updated_at),
    }


def rule_to_dict(r: RecurrenceRule) -> dict[str, Any]:
    return {
        "id": r.id,
        "customerId": r.customer_id,
        "customerName": r.customer_name,
        "address": r.address,
        "type": r.type,
        "days": list(r.days or []),
        "date": r.date or "",
        "time": r.time,
        "cans": r.cans,
        "priority": r.priority,
        "nextRun": iso(r.next_run),
        "lastTriggeredAt": iso(r.last_triggered_at),
        "createdAt": iso(r.created_at),
        "updatedAt": iso(r.updated_at),
    }


def request_to_dict(q: DeliveryRequest) -> dict[str, Any]:
    return {
        "id": q.id,
        "customerId": q.customer_id,
        "customerName": q.customer_name,
        "address": q.address,
        "cans": q.cans,
        "orderDetails": q.order_details,
        "priority": q.priority,
        "status": q.status,
        "requestedAt": iso(q.requested_at),
        "scheduledFor": iso(q.scheduled_for),
        "deliveredAt": iso(q.delivered_at),
        "completedAt": iso(q.completed_at),
        "cancelledAt": iso(q.cancelled_at),
        "cancelledBy": q.cancelled_by,
        "cancellationReason": q.cancellation_reason,
        "cancellationNotes": q.cancellation_notes,
        "createdBy": q.created_by,
        "internalNotes": q.internal_notes,
        "pricePerCan": q.price_per_can,
        "paymentType": q.payment_type,
    }
