# paani/handlers/start.py
# Onboarding (/start) and help (/help)

from __future__ import annotations

from aiogram import Router
from aiogram.filters import Command, CommandStart
from aiogram.types import Message

router = Router(name=__name__)

_HELP = (
    "📘 <b>Help</b>\n\n"
    "<b>Queue</b>\n"
    "/queue — active requests, urgent first\n"
    "/request &lt;customer_id&gt; [cans] [urgent] — new request\n"
    "/take &lt;id&gt; — start delivering\n"
    "/done &lt;id&gt; — delivered\n"
    "/cancel &lt;id&gt; &lt;door_closed|duplicate|other&gt; [notes]\n\n"
    "<b>Recurring</b>\n"
    "/recurring_list — rules and their next run\n"
    "/recurring_add — see /recurring_add without arguments\n"
    "/recurring_del &lt;id&gt; — delete a rule\n"
    "/sweep — fire due rules now"
)


@router.message(CommandStart())
async def cmd_start(m: Message) -> None:
    text = (
        "👋 Hi! I keep the water delivery queue.\n\n"
        "One active request per customer: a second one is refused until the "
        "first is delivered or cancelled.\n\n" + _HELP
    )
    await m.answer(text, parse_mode="HTML")


@router.message(Command("help"))
async def cmd_help(m: Message) -> None:
    await m.answer(_HELP, parse_mode="HTML")
