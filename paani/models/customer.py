# paani/models/customer.py
# Declares Base and Customer. Customers are owned by the admin side; the engine only reads them.

from __future__ import annotations

from sqlalchemy import Column, Integer, String, Float, DateTime
from sqlalchemy.orm import declarative_base

from paani.core.clock import utc_naive_now

Base = declarative_base()


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True)
    name = Column(String(120), nullable=False)
    phone = Column(String(40), nullable=True)
    address = Column(String(255), nullable=False)
    default_cans = Column(Integer, default=1, nullable=False)
    price_per_can = Column(Float, nullable=True)
    payment_type = Column(String(10), default="cash", nullable=False)  # "cash" | "account"
    notes = Column(String(500), default="", nullable=False)

    created_at = Column(DateTime, default=utc_naive_now, nullable=False)
    updated_at = Column(DateTime, default=utc_naive_now, onupdate=utc_naive_now, nullable=False)
