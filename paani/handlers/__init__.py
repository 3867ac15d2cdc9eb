# paani/handlers/__init__.py
from __future__ import annotations

from typing import Iterable
from aiogram import Dispatcher, Router
import logging
import traceback

from paani.core.config import settings

LOADED_HANDLERS: list[str] = []
FAILED_HANDLERS: dict[str, str] = {}


def is_staff(user_id: int) -> bool:
    # no STAFF_IDS configured means the bot is open to anyone who can reach it
    if not settings.staff_ids:
        return True
    return user_id in settings.staff_ids


def _module_names() -> Iterable[str]:
    return (
        "start",
        "requests",
        "recurring",
    )


def setup(dp: Dispatcher) -> None:
    for name in _module_names():
        try:
            mod = __import__(f"paani.handlers.{name}", fromlist=["router"])
            router: Router = getattr(mod, "router")
            dp.include_router(router)
            LOADED_HANDLERS.append(name)
            logging.info('handler_loaded name="%s"', name)
        except Exception as e:
            tb = traceback.format_exc()
            FAILED_HANDLERS[name] = f"{e.__class__.__name__}: {e}\n{tb}"
            logging.exception('handler_failed name="%s"', name)
