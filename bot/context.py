from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.orm import Session, sessionmaker

from app.clock import Clock
from app.event_log import EventLog
from app.pending_actions import PendingActionService
from app.shifts import ShiftPolicy
from app.telegram_client import SafeTelegram


@dataclass
class BotContext:
    session_factory: sessionmaker[Session]
    pending_actions: PendingActionService
    telegram: SafeTelegram
    event_log: EventLog
    clock: Clock
    policy: ShiftPolicy
    admin_user_ids: tuple[int, ...] = field(default_factory=tuple)
    boss_chat_id: int | None = None
    timezone: str = "UTC"
    notify_employee_on_autoclose: bool = True


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
