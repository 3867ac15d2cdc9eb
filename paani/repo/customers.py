# paani/repo/customers.py
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paani.models.customer import Customer


async def get_customer(session: AsyncSession, customer_id: int) -> Customer | None:
    q = await session.execute(select(Customer).where(Customer.id == customer_id))
    return q.scalar_one_or_none()


async def list_customers(session: AsyncSession) -> list[Customer]:
    q = await session.execute(select(Customer).order_by(Customer.name.asc()))
    return list(q.scalars().all())


async def create_customer(
    session: AsyncSession,
    name: str,
    address: str,
    *,
    phone: str | None = None,
    default_cans: int = 1,
    price_per_can: float | None = None,
    payment_type: str = "cash",
    notes: str = "",
) -> Customer:
    c = Customer(
        name=name,
        address=address,
        phone=phone,
        default_cans=default_cans,
        price_per_can=price_per_can,
        payment_type=payment_type,
        notes=notes,
    )
    session.add(c)
    await session.flush()
    return c


async def delete_customer(session: AsyncSession, customer_id: int) -> bool:
    c = await get_customer(session, customer_id)
    if not c:
        return False
    await session.delete(c)
    await session.flush()
    return True
