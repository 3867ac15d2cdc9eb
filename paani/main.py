# paani/main.py
from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from datetime import timedelta

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.types import BotCommand

from paani.api.server import build_app, start_api
from paani.core.config import settings
from paani.core.db import Session, engine, init_db
from paani.core.logging import setup_logging
from paani.core.scheduler import SchedulerDriver
from paani.services.guard import DuplicateRequestGuard
from paani.services.rate_limit import WindowRateLimiter
from paani.services.recurring import RecurringSweep


async def _set_bot_commands(bot: Bot) -> None:
    commands = [
        BotCommand(command="queue", description="Active delivery queue"),
        BotCommand(command="request", description="New delivery request for a customer"),
        BotCommand(command="take", description="Start a delivery (processing)"),
        BotCommand(command="done", description="Mark a delivery delivered"),
        BotCommand(command="cancel", description="Cancel a delivery request"),
        BotCommand(command="recurring_list", description="Recurring delivery rules"),
        BotCommand(command="recurring_add", description="Add a recurring rule"),
        BotCommand(command="recurring_del", description="Delete a recurring rule"),
        BotCommand(command="sweep", description="Run the recurring sweep now"),
        BotCommand(command="help", description="What I can do"),
    ]
    await bot.set_my_commands(commands)


def _register_handlers(dp: Dispatcher) -> None:
    try:
        from paani.handlers import setup as setup_handlers
        setup_handlers(dp)
    except Exception as e:
        logging.warning("Handlers are not wired yet: %s", e)


async def main() -> None:
    setup_logging(settings.log_level)
    await init_db()

    limiter = WindowRateLimiter(
        max_requests=settings.rate_limit_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
    guard = DuplicateRequestGuard(limiter)
    sweep = RecurringSweep(
        Session,
        guard,
        offset_minutes=settings.business_tz_offset_minutes,
        cooldown=timedelta(seconds=settings.trigger_cooldown_seconds),
        rule_timeout=settings.rule_timeout_seconds,
    )
    driver = SchedulerDriver(sweep, limiter, interval_minutes=settings.scheduler_interval_minutes)
    driver.start()

    app = build_app(Session, guard, driver, offset_minutes=settings.business_tz_offset_minutes)
    runner = await start_api(app, settings.api_host, settings.api_port)

    try:
        if settings.bot_token:
            bot = Bot(
                token=settings.bot_token,
                default=DefaultBotProperties(parse_mode=ParseMode.HTML),
            )
            # guard/driver reach handlers as keyword arguments
            dp = Dispatcher(guard=guard, driver=driver)
            _register_handlers(dp)
            await _set_bot_commands(bot)

            logging.info("Bot starting polling…")
            try:
                await dp.start_polling(bot, allowed_updates=dp.resolve_used_update_types())
            finally:
                with suppress(Exception):
                    await bot.session.close()
                logging.info("Bot stopped.")
        else:
            logging.info("BOT_TOKEN not set: running API and scheduler only")
            await asyncio.Event().wait()
    finally:
        driver.shutdown()
        await runner.cleanup()
        await engine.dispose()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
