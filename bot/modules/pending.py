import structlog
from sqlalchemy.exc import SQLAlchemyError
from telegram import Update

from app import pending_actions as pa
from bot import messages
from bot.context import BotContext
from bot.keyboards import CANCEL_PREFIX, CONFIRM_PREFIX, parse_pending_id
from bot.notify import notify_admins, notify_auto_closed

logger = structlog.get_logger("shiftbot.bot.pending")

_SIMPLE_REPLIES = {
    pa.OPEN_SHIFT_EXISTS: messages.OPEN_SHIFT_EXISTS,
    pa.NO_OPEN_SHIFT: messages.ALREADY_CLOSED,
    pa.EXPIRED: messages.PENDING_EXPIRED,
    pa.ALREADY_HANDLED: messages.PENDING_ALREADY_HANDLED,
    pa.FORBIDDEN: messages.NO_ACCESS,
    pa.NOT_FOUND: messages.PENDING_NOT_FOUND,
    pa.CANCELLED: messages.PENDING_CANCELLED,
}


async def on_message(ctx: BotContext, update: Update) -> bool:
    return False


async def on_callback(ctx: BotContext, update: Update, data: str) -> bool:
    if data.startswith(CONFIRM_PREFIX):
        confirm = True
    elif data.startswith(CANCEL_PREFIX):
        confirm = False
    else:
        return False

    query = update.callback_query
    await ctx.telegram.answer_callback_query(query.id)

    pending_id = parse_pending_id(data)
    user_id = query.from_user.id if query.from_user else None
    if not pending_id or not user_id:
        return True
    chat_id = query.message.chat.id if query.message is not None else user_id

    try:
        if confirm:
            outcome = ctx.pending_actions.confirm_action(pending_id, user_id, now=ctx.clock.now())
        else:
            outcome = ctx.pending_actions.cancel_action(pending_id, user_id, now=ctx.clock.now())
    except SQLAlchemyError as exc:
        ctx.event_log.error(
            "pending_action_error",
            exc,
            chat_id=chat_id,
            from_id=user_id,
            update_id=update.update_id,
            update_type="callback_query",
            meta={"callback_data_prefix": data[:20]},
        )
        await ctx.telegram.send_message(chat_id, messages.CONFIRM_FAILED if confirm else messages.CANCEL_FAILED)
        return True

    logger.info("pending_action_resolved", pending_id=pending_id, outcome=outcome.type)
    # the buttons stay usable for their owner
    if query.message is not None and outcome.type != pa.FORBIDDEN:
        await ctx.telegram.edit_message_reply_markup(chat_id, query.message.message_id)
    await _reply(ctx, chat_id, outcome)
    return True


async def _reply(ctx: BotContext, chat_id: int, outcome: pa.PendingOutcome) -> None:
    if outcome.type == pa.CONFIRMED_START:
        if outcome.auto_closed is not None:
            await notify_auto_closed(ctx, outcome.auto_closed)
        time_label = messages.format_time(outcome.shift.start_time, ctx.timezone)
        await ctx.telegram.send_message(chat_id, messages.shift_started(time_label))
        await notify_admins(ctx, messages.boss_shift_started(outcome.employee.display_name, time_label))
        return

    if outcome.type == pa.CONFIRMED_END:
        time_label = messages.format_time(outcome.shift.end_time, ctx.timezone)
        duration = messages.format_duration(outcome.duration_minutes)
        await ctx.telegram.send_message(chat_id, messages.shift_closed(time_label, duration))
        await notify_admins(ctx, messages.boss_shift_closed(outcome.employee.display_name, duration))
        return

    if outcome.type == pa.AUTO_CLOSED:
        # the employee hears about it here, in the chat they confirmed from
        await notify_auto_closed(ctx, outcome.auto_closed, notify_employee=False)
        if ctx.notify_employee_on_autoclose:
            await ctx.telegram.send_message(chat_id, messages.auto_closed_employee(ctx.policy.max_shift_hours))
        else:
            await ctx.telegram.send_message(chat_id, messages.ALREADY_CLOSED)
        return

    await ctx.telegram.send_message(chat_id, _SIMPLE_REPLIES.get(outcome.type, messages.PENDING_NOT_FOUND))
