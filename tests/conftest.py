from __future__ import annotations

from datetime import datetime

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from paani.core.db import init_db, session_scope
from paani.models import RecurrenceRule
from paani.repo.customers import create_customer


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'paani.db'}")
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def sessions(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def add_customer(sessions):
    async def _add(name: str = "Bilal Ahmed", address: str = "House 12, Street 4", **kw):
        kw.setdefault("default_cans", 2)
        async with session_scope(sessions) as s:
            return await create_customer(s, name, address, **kw)
    return _add


@pytest.fixture
def add_rule(sessions):
    async def _add(customer_id: int, next_run: datetime | None, **kw):
        fields = {
            "customer_id": customer_id,
            "customer_name": "Bilal Ahmed",
            "address": "House 12, Street 4",
            "cans": 2,
            "priority": "normal",
            "type": "daily",
            "days": [],
            "date": "",
            "time": "09:00",
            "next_run": next_run,
        }
        fields.update(kw)
        async with session_scope(sessions) as s:
            rule = RecurrenceRule(**fields)
            s.add(rule)
            await s.flush()
            return rule
    return _add
