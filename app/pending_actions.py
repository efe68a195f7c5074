"""
Photo confirmation flow.

A photo creates a PENDING action; the employee then confirms or cancels it.
Confirm/cancel claim the row with a conditional status update, which is the
only thing standing between a double tap (or a redelivered callback) and a
second shift mutation. Business results come back as outcome values.
"""

import math
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from . import employees, shifts
from .clock import Clock, SystemClock
from .employees import TelegramUserInput
from .models import ActionType, Employee, PendingAction, PendingStatus, Shift
from .shifts import ShiftPolicy

logger = structlog.get_logger("shiftbot.pending_actions")

DUPLICATE = "duplicate"
PENDING = "pending"

CONFIRMED_START = "confirmed_start"
CONFIRMED_END = "confirmed_end"
AUTO_CLOSED = "auto_closed"
NO_OPEN_SHIFT = "no_open_shift"
OPEN_SHIFT_EXISTS = "open_shift_exists"
EXPIRED = "expired"
NOT_FOUND = "not_found"
FORBIDDEN = "forbidden"
ALREADY_HANDLED = "already_handled"
CANCELLED = "cancelled"


@dataclass
class CreateOutcome:
    type: str
    action: PendingAction | None = None
    action_type: ActionType | None = None
    employee: Employee | None = None


@dataclass
class PendingOutcome:
    type: str
    shift: Shift | None = None
    employee: Employee | None = None
    auto_closed: Shift | None = None
    duration_minutes: int | None = None
    status: str | None = None


# repository

def find_by_id(db: Session, action_id: int, *, refresh: bool = False) -> PendingAction | None:
    stmt = select(PendingAction).where(PendingAction.id == action_id)
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    return db.execute(stmt).scalar_one_or_none()


def find_by_chat_message(db: Session, chat_id: int, message_id: int) -> PendingAction | None:
    return db.execute(
        select(PendingAction).where(
            PendingAction.chat_id == chat_id,
            PendingAction.photo_message_id == message_id,
        )
    ).scalar_one_or_none()


def create_pending_action(
    db: Session,
    *,
    employee_id: int,
    telegram_user_id: int,
    chat_id: int,
    action_type: ActionType,
    photo_file_id: str,
    photo_message_id: int,
    created_at: datetime,
    expires_at: datetime,
) -> PendingAction:
    action = PendingAction(
        employee_id=employee_id,
        telegram_user_id=telegram_user_id,
        chat_id=chat_id,
        action_type=action_type.value,
        photo_file_id=photo_file_id,
        photo_message_id=photo_message_id,
        status=PendingStatus.PENDING.value,
        created_at=created_at,
        expires_at=expires_at,
        updated_at=created_at,
    )
    db.add(action)
    db.flush()
    return action


def transition_if_pending(
    db: Session,
    action_id: int,
    status: PendingStatus,
    *,
    now: datetime,
    require_unexpired: bool = True,
) -> bool:
    conditions = [PendingAction.id == action_id, PendingAction.status == PendingStatus.PENDING.value]
    if require_unexpired:
        conditions.append(PendingAction.expires_at > now)
    result = db.execute(
        update(PendingAction)
        .where(*conditions)
        .values(status=status.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) > 0


def finalize_status(db: Session, action_id: int, *, claimed: PendingStatus, status: PendingStatus, now: datetime) -> None:
    # only valid inside the transaction that claimed the row
    db.execute(
        update(PendingAction)
        .where(PendingAction.id == action_id, PendingAction.status == claimed.value)
        .values(status=status.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )


def expire_pending_actions(db: Session, *, now: datetime, limit: int | None = None) -> int:
    conditions = [PendingAction.status == PendingStatus.PENDING.value, PendingAction.expires_at <= now]
    if limit:
        ids = db.execute(
            select(PendingAction.id).where(*conditions).order_by(PendingAction.expires_at.asc()).limit(limit)
        ).scalars().all()
        if not ids:
            return 0
        conditions = [PendingAction.id.in_(ids), PendingAction.status == PendingStatus.PENDING.value]
    result = db.execute(
        update(PendingAction)
        .where(*conditions)
        .values(status=PendingStatus.EXPIRED.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


def has_active_for_user(db: Session, telegram_user_id: int, *, now: datetime) -> bool:
    row = db.execute(
        select(PendingAction.id)
        .where(
            PendingAction.telegram_user_id == telegram_user_id,
            PendingAction.status == PendingStatus.PENDING.value,
            PendingAction.expires_at > now,
        )
        .limit(1)
    ).first()
    return row is not None


def _round_minutes(start: datetime, end: datetime) -> int:
    minutes = (end - start).total_seconds() / 60
    return max(0, int(math.floor(minutes + 0.5)))


class PendingActionService:
    def __init__(self, session_factory: sessionmaker[Session], policy: ShiftPolicy, clock: Clock | None = None):
        self.session_factory = session_factory
        self.policy = policy
        self.clock = clock or SystemClock()

    def create_from_photo(
        self,
        *,
        user: TelegramUserInput,
        chat_id: int,
        message_id: int,
        photo_file_id: str,
        message_date: datetime,
    ) -> CreateOutcome:
        try:
            with self.session_factory.begin() as db:
                if shifts.is_message_processed(db, chat_id, message_id):
                    return CreateOutcome(type=DUPLICATE)
                if find_by_chat_message(db, chat_id, message_id) is not None:
                    return CreateOutcome(type=DUPLICATE)

                employee = employees.upsert_from_telegram(db, user, now=message_date)
                open_shift = shifts.find_open_shift(db, employee.id)
                if open_shift is None or self.policy.is_overdue(open_shift.start_time, message_date):
                    action_type = ActionType.START
                else:
                    action_type = ActionType.END

                action = create_pending_action(
                    db,
                    employee_id=employee.id,
                    telegram_user_id=employee.telegram_user_id,
                    chat_id=chat_id,
                    action_type=action_type,
                    photo_file_id=photo_file_id,
                    photo_message_id=message_id,
                    created_at=message_date,
                    expires_at=message_date + self.policy.pending_ttl,
                )
                return CreateOutcome(type=PENDING, action=action, action_type=action_type, employee=employee)
        except IntegrityError:
            # the same photo raced us past the duplicate checks
            logger.info("pending_action_duplicate_race", chat_id=chat_id, message_id=message_id)
            return CreateOutcome(type=DUPLICATE)

    def confirm_action(self, action_id: int, telegram_user_id: int, now: datetime | None = None) -> PendingOutcome:
        now = now or self.clock.now()
        try:
            with self.session_factory.begin() as db:
                return self._confirm(db, action_id, telegram_user_id, now)
        except IntegrityError:
            # another START for this employee committed first
            logger.info("confirm_open_shift_conflict", action_id=action_id)
            with self.session_factory.begin() as db:
                if transition_if_pending(db, action_id, PendingStatus.CANCELLED, now=now, require_unexpired=False):
                    return PendingOutcome(type=OPEN_SHIFT_EXISTS)
                return self._settled_outcome(db, action_id, now)

    def cancel_action(self, action_id: int, telegram_user_id: int, now: datetime | None = None) -> PendingOutcome:
        now = now or self.clock.now()
        with self.session_factory.begin() as db:
            action, rejection = self._load_for_update(db, action_id, telegram_user_id, now)
            if rejection is not None:
                return rejection
            if not transition_if_pending(db, action.id, PendingStatus.CANCELLED, now=now):
                return self._settled_outcome(db, action.id, now)
            return PendingOutcome(type=CANCELLED)

    def expire_pending_actions(self, now: datetime | None = None, limit: int | None = None) -> int:
        now = now or self.clock.now()
        with self.session_factory.begin() as db:
            return expire_pending_actions(db, now=now, limit=limit)

    def has_active_pending_action(self, telegram_user_id: int, now: datetime | None = None) -> bool:
        now = now or self.clock.now()
        with self.session_factory() as db:
            return has_active_for_user(db, telegram_user_id, now=now)

    def _load_for_update(self, db: Session, action_id: int, telegram_user_id: int, now: datetime):
        action = find_by_id(db, action_id)
        if action is None:
            return None, PendingOutcome(type=NOT_FOUND)
        if action.telegram_user_id != telegram_user_id:
            return None, PendingOutcome(type=FORBIDDEN)
        if action.status != PendingStatus.PENDING.value:
            return None, PendingOutcome(type=ALREADY_HANDLED, status=action.status)
        if action.expires_at <= now:
            if transition_if_pending(db, action.id, PendingStatus.EXPIRED, now=now, require_unexpired=False):
                return None, PendingOutcome(type=EXPIRED)
            return None, self._settled_outcome(db, action.id, now)
        return action, None

    def _settled_outcome(self, db: Session, action_id: int, now: datetime) -> PendingOutcome:
        refreshed = find_by_id(db, action_id, refresh=True)
        if refreshed is None:
            return PendingOutcome(type=NOT_FOUND)
        if refreshed.status == PendingStatus.PENDING.value and refreshed.expires_at <= now:
            if transition_if_pending(db, action_id, PendingStatus.EXPIRED, now=now, require_unexpired=False):
                return PendingOutcome(type=EXPIRED)
            refreshed = find_by_id(db, action_id, refresh=True)
        return PendingOutcome(type=ALREADY_HANDLED, status=refreshed.status)

    def _reject(self, db: Session, action: PendingAction, outcome_type: str, now: datetime) -> PendingOutcome:
        finalize_status(db, action.id, claimed=PendingStatus.CONFIRMED, status=PendingStatus.CANCELLED, now=now)
        return PendingOutcome(type=outcome_type)

    def _confirm(self, db: Session, action_id: int, telegram_user_id: int, now: datetime) -> PendingOutcome:
        action, rejection = self._load_for_update(db, action_id, telegram_user_id, now)
        if rejection is not None:
            return rejection
        if not transition_if_pending(db, action.id, PendingStatus.CONFIRMED, now=now):
            return self._settled_outcome(db, action.id, now)

        employee = employees.find_by_id(db, action.employee_id)
        if employee is None:
            return self._reject(db, action, NOT_FOUND, now)

        if action.action_type == ActionType.START.value:
            return self._confirm_start(db, action, employee, now)
        return self._confirm_end(db, action, employee, now)

    def _confirm_start(self, db: Session, action: PendingAction, employee: Employee, now: datetime) -> PendingOutcome:
        message_time = action.created_at
        open_shift = shifts.find_open_shift(db, employee.id)
        auto_closed = None
        if open_shift is not None:
            if not self.policy.is_overdue(open_shift.start_time, message_time):
                return self._reject(db, action, OPEN_SHIFT_EXISTS, now)
            auto_closed = shifts.auto_close_for_policy(db, open_shift, self.policy, now=now)
            if auto_closed is not None:
                shifts.apply_short_shift_violation(
                    db, auto_closed.id, auto_closed.duration_minutes, self.policy, now=now
                )

        shift = shifts.create_shift_start(
            db,
            employee_id=employee.id,
            start_time=message_time,
            start_photo_file_id=action.photo_file_id,
            start_chat_id=action.chat_id,
            start_message_id=action.photo_message_id,
            now=now,
        )
        logger.info("shift_started", shift_id=shift.id, employee_id=employee.id, auto_closed=bool(auto_closed))
        return PendingOutcome(type=CONFIRMED_START, shift=shift, employee=employee, auto_closed=auto_closed)

    def _confirm_end(self, db: Session, action: PendingAction, employee: Employee, now: datetime) -> PendingOutcome:
        message_time = action.created_at
        open_shift = shifts.find_open_shift(db, employee.id)
        if open_shift is None:
            return self._reject(db, action, NO_OPEN_SHIFT, now)

        if self.policy.is_overdue(open_shift.start_time, message_time):
            auto_closed = shifts.auto_close_for_policy(db, open_shift, self.policy, now=now)
            if auto_closed is None:
                return self._reject(db, action, NO_OPEN_SHIFT, now)
            shifts.apply_short_shift_violation(db, auto_closed.id, auto_closed.duration_minutes, self.policy, now=now)
            logger.info("shift_auto_closed_on_end", shift_id=auto_closed.id, employee_id=employee.id)
            return PendingOutcome(
                type=AUTO_CLOSED,
                employee=employee,
                auto_closed=auto_closed,
                duration_minutes=auto_closed.duration_minutes,
            )

        duration_minutes = _round_minutes(open_shift.start_time, message_time)
        shift = shifts.close_shift_by_photo(
            db,
            open_shift.id,
            end_time=message_time,
            end_photo_file_id=action.photo_file_id,
            end_chat_id=action.chat_id,
            end_message_id=action.photo_message_id,
            duration_minutes=duration_minutes,
            now=now,
        )
        if shift is None:
            return self._reject(db, action, NO_OPEN_SHIFT, now)
        shifts.apply_short_shift_violation(db, shift.id, duration_minutes, self.policy, now=now)
        shift = shifts.find_shift(db, shift.id)
        logger.info("shift_closed", shift_id=shift.id, employee_id=employee.id, duration_minutes=duration_minutes)
        return PendingOutcome(type=CONFIRMED_END, shift=shift, employee=employee, duration_minutes=duration_minutes)
