# paani/repo/delivery_requests.py
from __future__ import annotations

from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession

from paani.models.delivery import DeliveryRequest, ACTIVE_STATUSES


async def get_request(session: AsyncSession, request_id: int) -> DeliveryRequest | None:
    q = await session.execute(select(DeliveryRequest).where(DeliveryRequest.id == request_id))
    return q.scalar_one_or_none()


async def find_active_for_customer(session: AsyncSession, customer_id: int) -> DeliveryRequest | None:
    q = await session.execute(
        select(DeliveryRequest)
        .where(DeliveryRequest.customer_id == customer_id)
        .where(DeliveryRequest.status.in_(ACTIVE_STATUSES))
        .order_by(DeliveryRequest.requested_at.asc())
        .limit(1)
    )
    return q.scalar_one_or_none()


async def list_active_for_customer(session: AsyncSession, customer_id: int) -> list[DeliveryRequest]:
    q = await session.execute(
        select(DeliveryRequest)
        .where(DeliveryRequest.customer_id == customer_id)
        .where(DeliveryRequest.status.in_(ACTIVE_STATUSES))
    )
    return list(q.scalars().all())


async def list_requests(session: AsyncSession, status: str | None = None) -> list[DeliveryRequest]:
    stmt = select(DeliveryRequest)
    if status:
        stmt = stmt.where(DeliveryRequest.status == status)
    q = await session.execute(stmt.order_by(desc(DeliveryRequest.requested_at), desc(DeliveryRequest.id)))
    return list(q.scalars().all())


async def list_queue(session: AsyncSession) -> list[DeliveryRequest]:
    """Active requests for the staff queue: urgent first, then oldest first."""
    q = await session.execute(
        select(DeliveryRequest)
        .where(DeliveryRequest.status.in_(ACTIVE_STATUSES))
        .order_by(
            (DeliveryRequest.priority == "urgent").desc(),
            DeliveryRequest.requested_at.asc(),
            DeliveryRequest.id.asc(),
        )
    )
    return list(q.scalars().all())
