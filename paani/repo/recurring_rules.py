# -*- coding: utf-8 -*-
from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from paani.models.recurring import RecurrenceRule


async def create_rule(session: AsyncSession, **fields: Any) -> RecurrenceRule:
    rule = RecurrenceRule(**fields)
    session.add(rule)
    await session.flush()
    return rule


async def get_rule(session: AsyncSession, rule_id: int) -> RecurrenceRule | None:
    q = await session.execute(select(RecurrenceRule).where(RecurrenceRule.id == rule_id))
    return q.scalar_one_or_none()


async def list_rules(session: AsyncSession) -> list[RecurrenceRule]:
    stmt = select(RecurrenceRule).order_by(
        RecurrenceRule.next_run.asc(), RecurrenceRule.updated_at.desc()
    )
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def due_rules(session: AsyncSession, now: datetime) -> Sequence[RecurrenceRule]:
    """
    Every rule whose next_run <= now, oldest first.
    next_run is TIMESTAMP WITHOUT TIME ZONE, so 'now' has to be naive.
    """
    now = now.replace(tzinfo=None)
    stmt = (
        select(RecurrenceRule)
        .where(RecurrenceRule.next_run.is_not(None))
        .where(RecurrenceRule.next_run <= now)
        .order_by(RecurrenceRule.next_run.asc())
    )
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def bump_next_run(
    session: AsyncSession,
    rule_id: int,
    next_run: datetime | None,
    *,
    seen: datetime | None = None,
    stamp: datetime | None = None,
) -> bool:
    """
    Move next_run of a rule. With `seen` the update only lands if next_run still
    equals the value the caller read (compare-and-swap); returns whether a row changed.
    """
    values: dict[str, Any] = {"next_run": next_run.replace(tzinfo=None, microsecond=0) if next_run else None}
    if stamp is not None:
        values["last_triggered_at"] = stamp
    stmt = update(RecurrenceRule).where(RecurrenceRule.id == rule_id)
    if seen is not None:
        stmt = stmt.where(RecurrenceRule.next_run == seen)
    res = await session.execute(stmt.values(**values).execution_options(synchronize_session=False))
    return res.rowcount > 0


async def delete_rule(session: AsyncSession, rule_id: int, *, seen: datetime | None = None) -> bool:
    stmt = delete(RecurrenceRule).where(RecurrenceRule.id == rule_id)
    if seen is not None:
        stmt = stmt.where(RecurrenceRule.next_run == seen)
    res = await session.execute(stmt.execution_options(synchronize_session=False))
    return res.rowcount > 0
