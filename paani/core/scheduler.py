# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from paani.core.clock import ensure_naive_utc, utc_naive_now
from paani.services.rate_limit import WindowRateLimiter
from paani.services.recurring import RecurringSweep, SweepReport

log = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1)


def next_boundary(now: datetime, interval_minutes: int) -> datetime:
    """
    Next wall-clock multiple of the interval (epoch aligned, naive UTC).
    A `now` sitting exactly on a boundary gets the following one, so restarts
    always land on the same grid.
    """
    now = ensure_naive_utc(now)
    step = interval_minutes * 60
    elapsed = (now - _EPOCH).total_seconds()
    return _EPOCH + timedelta(seconds=(elapsed // step + 1) * step)


class SchedulerDriver:
    """Owns the sweep cadence and the on-demand tick used by read paths."""

    def __init__(
        self,
        sweep: RecurringSweep,
        rate_limiter: WindowRateLimiter | None = None,
        *,
        interval_minutes: int = 3,
        evict_every_seconds: int = 60,
    ) -> None:
        self.sweep = sweep
        self.rate_limiter = rate_limiter
        self.interval_minutes = interval_minutes
        self.evict_every_seconds = evict_every_seconds
        self.scheduler: AsyncIOScheduler | None = None

    async def tick(self, now: datetime | None = None) -> SweepReport | None:
        """
        One sweep, safe to call from anywhere and concurrently with the timer.
        Never raises: a failed sweep is logged and the next tick retries.
        """
        try:
            return await self.sweep.sweep(now or utc_naive_now())
        except Exception:
            log.exception("recurring sweep failed")
            return None

    def evict(self) -> None:
        if self.rate_limiter is not None:
            self.rate_limiter.evict_expired()

    def start(self, now: datetime | None = None) -> AsyncIOScheduler:
        first = next_boundary(now or utc_naive_now(), self.interval_minutes)
        scheduler = AsyncIOScheduler(timezone=timezone.utc)
        scheduler.add_job(
            self.tick,
            IntervalTrigger(
                minutes=self.interval_minutes,
                start_date=first.replace(tzinfo=timezone.utc),
                timezone=timezone.utc,
            ),
            id="recurring_sweep",
            coalesce=True,
            max_instances=1,
            misfire_grace_time=60,
        )
        if self.rate_limiter is not None:
            scheduler.add_job(
                self.evict,
                IntervalTrigger(seconds=self.evict_every_seconds, timezone=timezone.utc),
                id="rate_limit_evict",
            )
        scheduler.start()
        self.scheduler = scheduler
        log.info("Scheduler started interval=%smin first_run=%s", self.interval_minutes, first.isoformat())
        return scheduler

    def shutdown(self) -> None:
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.scheduler = None
