# paani/fallback.py
# Standalone fallback trigger: `python -m paani.fallback` next to a sleepy server.
from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from paani.core.config import settings
from paani.core.logging import setup_logging
from paani.services.fallback import FallbackTrigger, HttpDeliveryApi


async def main() -> None:
    setup_logging(settings.log_level)
    if not settings.fallback_api_base_url:
        raise RuntimeError("FALLBACK_API_BASE_URL is not set in .env")

    async with HttpDeliveryApi(settings.fallback_api_base_url) as api:
        trigger = FallbackTrigger(
            api,
            offset_minutes=settings.business_tz_offset_minutes,
            debounce=timedelta(seconds=settings.fallback_debounce_seconds),
            cooldown=timedelta(seconds=settings.trigger_cooldown_seconds),
            cache_path=settings.fallback_cache_path or None,
        )
        logging.info(
            "Fallback trigger polling %s every %ss",
            settings.fallback_api_base_url, settings.fallback_interval_seconds,
        )
        await trigger.run_forever(settings.fallback_interval_seconds)


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
