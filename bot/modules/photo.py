import structlog
from sqlalchemy.exc import SQLAlchemyError
from telegram import Update

from app import employees
from app.employees import TelegramUserInput
from app.models import ActionType
from app.pending_actions import DUPLICATE
from bot import messages
from bot.context import BotContext, to_naive_utc
from bot.keyboards import pending_action_kb

logger = structlog.get_logger("shiftbot.bot.photo")


async def on_callback(ctx: BotContext, update: Update, data: str) -> bool:
    return False


async def on_message(ctx: BotContext, update: Update) -> bool:
    message = update.message
    if message is None or not message.photo or message.from_user is None:
        return False

    user = message.from_user
    chat_id = message.chat.id
    largest = message.photo[-1]

    with ctx.session_factory() as db:
        role = employees.resolve_role(db, user.id, ctx.admin_user_ids)
    if not role.is_employee:
        text = messages.ADMIN_PHOTO_IGNORED if role.is_admin else messages.NOT_EMPLOYEE
        await ctx.telegram.send_message(chat_id, text)
        return True

    try:
        result = ctx.pending_actions.create_from_photo(
            user=TelegramUserInput(
                id=user.id,
                username=user.username,
                first_name=user.first_name,
                last_name=user.last_name,
            ),
            chat_id=chat_id,
            message_id=message.message_id,
            photo_file_id=largest.file_id,
            message_date=to_naive_utc(message.date),
        )
    except SQLAlchemyError as exc:
        ctx.event_log.error(
            "photo_handler_error",
            exc,
            chat_id=chat_id,
            from_id=user.id,
            message_id=message.message_id,
            update_id=update.update_id,
            update_type="message",
        )
        await ctx.telegram.send_message(chat_id, messages.TRY_LATER)
        return True

    if result.type == DUPLICATE:
        logger.info("photo_duplicate_ignored", chat_id=chat_id, message_id=message.message_id)
        return True

    prompt = messages.CONFIRM_START_PROMPT if result.action_type == ActionType.START else messages.CONFIRM_END_PROMPT
    await ctx.telegram.send_message(
        chat_id,
        prompt,
        reply_markup=pending_action_kb(result.action.id).to_dict(),
        reply_to_message_id=message.message_id,
    )
    return True
