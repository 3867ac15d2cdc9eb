# paani/models/delivery.py
# A delivery request snapshots the customer's name/address/price at creation time.

from __future__ import annotations

from sqlalchemy import Column, Integer, String, Float, DateTime, Index, text

from paani.core.clock import utc_naive_now
from paani.models.customer import Base

ACTIVE_STATUSES = ("pending", "pending_confirmation", "processing")
TERMINAL_STATUSES = ("delivered", "cancelled")
STATUSES = ACTIVE_STATUSES + TERMINAL_STATUSES

CANCELLED_BY = ("admin", "staff", "customer", "system")
CANCELLATION_REASONS = ("door_closed", "duplicate", "other")

_ACTIVE_SQL = "status IN ('pending', 'pending_confirmation', 'processing')"


class DeliveryRequest(Base):
    __tablename__ = "delivery_requests"
    __table_args__ = (
        # at most one active request per customer, enforced by the store itself
        Index(
            "uq_active_customer_request",
            "customer_id",
            unique=True,
            postgresql_where=text(_ACTIVE_SQL),
            sqlite_where=text(_ACTIVE_SQL),
        ),
    )

    id = Column(Integer, primary_key=True)
    customer_id = Column(Integer, index=True, nullable=False)

    # denormalized snapshot
    customer_name = Column(String(120), nullable=False)
    address = Column(String(255), nullable=False)
    price_per_can = Column(Float, nullable=True)
    payment_type = Column(String(10), nullable=True)

    cans = Column(Integer, nullable=False)
    order_details = Column(String(500), nullable=False, default="")
    priority = Column(String(10), nullable=False, default="normal")
    status = Column(String(24), nullable=False, default="pending", index=True)

    requested_at = Column(DateTime, default=utc_naive_now, nullable=False, index=True)
    scheduled_for = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(String(10), nullable=True)
    cancellation_reason = Column(String(20), nullable=True)
    cancellation_notes = Column(String(500), nullable=True)

    created_by = Column(String(64), nullable=False, default="")
    internal_notes = Column(String(500), nullable=False, default="")
    updated_at = Column(DateTime, default=utc_naive_now, onupdate=utc_naive_now, nullable=False)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES
