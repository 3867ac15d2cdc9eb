# paani/models/recurring.py
from __future__ import annotations

from sqlalchemy import Column, Integer, String, DateTime, JSON

from paani.core.clock import utc_naive_now
from paani.models.customer import Base

RULE_TYPES = ("daily", "weekly", "one_time", "alternating_days")
PRIORITIES = ("normal", "urgent")


class RecurrenceRule(Base):
    __tablename__ = "recurring_rules"

    id = Column(Integer, primary_key=True)
    # no FK on purpose: a rule may outlive the customer it points at
    customer_id = Column(Integer, index=True, nullable=False)
    customer_name = Column(String(120), nullable=False, default="")
    address = Column(String(255), nullable=False, default="")

    # payload copied onto generated requests
    cans = Column(Integer, nullable=False)
    priority = Column(String(10), nullable=False, default="normal")

    # schedule
    type = Column(String(20), nullable=False)             # see RULE_TYPES
    days = Column(JSON, nullable=False, default=list)     # 0-6, Sunday=0, weekly only
    date = Column(String(10), nullable=False, default="")  # YYYY-MM-DD, one_time only
    time = Column(String(5), nullable=False, default="09:00")  # business-local HH:MM

    next_run = Column(DateTime, nullable=True, index=True)  # naive UTC
    last_triggered_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utc_naive_now, nullable=False)
    updated_at = Column(DateTime, default=utc_naive_now, onupdate=utc_naive_now, nullable=False)
