import structlog

from app import employees
from app.models import Shift
from bot import messages
from bot.context import BotContext

logger = structlog.get_logger("shiftbot.notify")


async def notify_admins(ctx: BotContext, text: str) -> int:
    """Best effort: returns how many admin chats accepted the message."""
    with ctx.session_factory() as db:
        chat_ids = employees.admin_chat_ids(db, boss_chat_id=ctx.boss_chat_id, admin_user_ids=ctx.admin_user_ids)

    delivered = 0
    for chat_id in chat_ids:
        result = await ctx.telegram.send_message(chat_id, text)
        if result.ok:
            delivered += 1
        else:
            logger.warning("admin_notify_failed", chat_id=chat_id, reason=result.reason)
    return delivered


async def notify_auto_closed(ctx: BotContext, shift: Shift, *, notify_employee: bool | None = None) -> tuple[int, int]:
    employee = shift.employee
    end_label = messages.format_time(shift.end_time, ctx.timezone)
    admins = await notify_admins(
        ctx, messages.auto_closed_boss(employee.display_name, end_label, ctx.policy.max_shift_hours)
    )

    if notify_employee is None:
        notify_employee = ctx.notify_employee_on_autoclose
    employees_notified = 0
    if notify_employee:
        result = await ctx.telegram.send_message(
            employee.telegram_user_id, messages.auto_closed_employee(ctx.policy.max_shift_hours)
        )
        employees_notified = 1 if result.ok else 0
    return admins, employees_notified
