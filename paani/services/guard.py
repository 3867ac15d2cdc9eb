# paani/services/guard.py
"""
Single-active-request guard.

Three layers, each enough on its own:
  1. the partial unique index uq_active_customer_request (authoritative);
  2. a pre-check query for an existing active request;
  3. a short per-customer rate limit for manual creation.

A duplicate-key rejection from the store comes back as StorageConflict, which
callers handle exactly like DuplicateActiveRequest.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from paani.core.errors import StorageConflict
from paani.models.delivery import DeliveryRequest
from paani.repo.delivery_requests import find_active_for_customer
from paani.services.rate_limit import WindowRateLimiter

log = logging.getLogger(__name__)

_PG_UNIQUE_VIOLATION = "23505"


@dataclass(frozen=True)
class Reservation:
    allowed: bool
    existing: DeliveryRequest | None = None


def is_duplicate_key(exc: IntegrityError) -> bool:
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code == _PG_UNIQUE_VIOLATION:
        return True
    text = str(orig)
    return "UNIQUE constraint failed" in text or "duplicate key" in text


class DuplicateRequestGuard:
    def __init__(self, rate_limiter: WindowRateLimiter | None = None) -> None:
        self.rate_limiter = rate_limiter

    async def try_reserve(
        self,
        session: AsyncSession,
        customer_id: int,
        *,
        throttle: bool = True,
    ) -> Reservation:
        """
        Cheap fast path before any write. Raises RateLimitExceeded when `throttle`
        is on and the customer was just tried; never decides a race on its own.
        """
        if throttle and self.rate_limiter is not None:
            self.rate_limiter.hit(f"delivery_{customer_id}")
        existing = await find_active_for_customer(session, customer_id)
        if existing is not None:
            log.info(
                "duplicate_prevented customer=%s existing=%s status=%s",
                customer_id, existing.id, existing.status,
            )
            return Reservation(allowed=False, existing=existing)
        return Reservation(allowed=True)

    async def insert(self, session: AsyncSession, request: DeliveryRequest) -> DeliveryRequest:
        session.add(request)
        await self.flush(session, request.customer_id)
        return request

    async def flush(self, session: AsyncSession, customer_id: int) -> None:
        """
        Flush pending writes touching a delivery request. On a duplicate-key
        rejection the whole unit of work is rolled back and StorageConflict is
        raised with the request that won.
        """
        try:
            await session.flush()
        except IntegrityError as e:
            if not is_duplicate_key(e):
                raise
            await session.rollback()
            existing = await find_active_for_customer(session, customer_id)
            log.info(
                "duplicate_key customer=%s existing=%s",
                customer_id, existing.id if existing else None,
            )
            raise StorageConflict(
                customer_id,
                existing.id if existing else None,
                existing.status if existing else None,
            ) from e
