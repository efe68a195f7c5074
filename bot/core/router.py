from telegram import Update

from bot.context import BotContext
from bot.core.registry import MODULES


async def dispatch_callback(ctx: BotContext, update: Update, data: str) -> bool:
    for m in MODULES:
        handled = await m.on_callback(ctx, update, data)
        if handled:
            return True
    return False


async def dispatch_message(ctx: BotContext, update: Update) -> bool:
    for m in MODULES:
        handled = await m.on_message(ctx, update)
        if handled:
            return True
    return False


async def dispatch_update(ctx: BotContext, payload: dict) -> bool:
    """Queue handler. Exceptions propagate so the queue can back off and retry."""
    update = Update.de_json(payload, None)
    if update is None:
        return False
    if update.callback_query is not None:
        return await dispatch_callback(ctx, update, update.callback_query.data or "")
    if update.message is not None:
        return await dispatch_message(ctx, update)
    return False
