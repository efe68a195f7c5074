from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session, selectinload, sessionmaker

from .db import insert_ignore
from .models import ClosedReason, Shift, ShiftViolation, ViolationType

logger = structlog.get_logger("shiftbot.shifts")


@dataclass(frozen=True)
class ShiftPolicy:
    max_shift_hours: int = 12
    min_shift_hours: int = 8
    short_shift_grace_minutes: int = 0
    pending_action_ttl_minutes: int = 10

    @property
    def max_shift(self) -> timedelta:
        return timedelta(hours=self.max_shift_hours)

    @property
    def auto_close_duration_minutes(self) -> int:
        return self.max_shift_hours * 60

    @property
    def short_shift_threshold_minutes(self) -> int:
        return self.min_shift_hours * 60 - self.short_shift_grace_minutes

    @property
    def pending_ttl(self) -> timedelta:
        return timedelta(minutes=self.pending_action_ttl_minutes)

    def is_overdue(self, shift_start: datetime, at: datetime) -> bool:
        return at >= shift_start + self.max_shift


def find_open_shift(db: Session, employee_id: int) -> Shift | None:
    return db.execute(
        select(Shift)
        .where(Shift.employee_id == employee_id, Shift.end_time.is_(None))
        .order_by(Shift.start_time.desc())
        .limit(1)
    ).scalar_one_or_none()


def find_shift(db: Session, shift_id: int) -> Shift | None:
    return db.execute(
        select(Shift)
        .options(selectinload(Shift.employee), selectinload(Shift.violations))
        .where(Shift.id == shift_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def is_message_processed(db: Session, chat_id: int, message_id: int) -> bool:
    row = db.execute(
        select(Shift.id)
        .where(
            or_(
                (Shift.start_chat_id == chat_id) & (Shift.start_message_id == message_id),
                (Shift.end_chat_id == chat_id) & (Shift.end_message_id == message_id),
            )
        )
        .limit(1)
    ).first()
    return row is not None


def create_shift_start(
    db: Session,
    *,
    employee_id: int,
    start_time: datetime,
    start_photo_file_id: str,
    start_chat_id: int,
    start_message_id: int,
    now: datetime,
) -> Shift:
    """Raises IntegrityError when the employee already has an open shift."""
    shift = Shift(
        employee_id=employee_id,
        start_time=start_time,
        start_photo_file_id=start_photo_file_id,
        start_chat_id=start_chat_id,
        start_message_id=start_message_id,
        created_at=now,
        updated_at=now,
    )
    db.add(shift)
    db.flush()
    return shift


def close_shift_by_photo(
    db: Session,
    shift_id: int,
    *,
    end_time: datetime,
    end_photo_file_id: str,
    end_chat_id: int,
    end_message_id: int,
    duration_minutes: int,
    now: datetime,
) -> Shift | None:
    """Returns None when the shift was closed by someone else in the meantime."""
    result = db.execute(
        update(Shift)
        .where(Shift.id == shift_id, Shift.end_time.is_(None))
        .values(
            end_time=end_time,
            end_photo_file_id=end_photo_file_id,
            end_chat_id=end_chat_id,
            end_message_id=end_message_id,
            closed_reason=ClosedReason.BY_PHOTO.value,
            duration_minutes=duration_minutes,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if int(result.rowcount or 0) == 0:
        return None
    return find_shift(db, shift_id)


def add_violation(db: Session, shift_id: int, violation_type: ViolationType, *, now: datetime) -> bool:
    created = insert_ignore(
        db,
        ShiftViolation,
        {"shift_id": shift_id, "type": violation_type.value, "created_at": now},
        ["shift_id", "type"],
    )
    return created > 0


def apply_short_shift_violation(db: Session, shift_id: int, duration_minutes: int | None,
                                policy: ShiftPolicy, *, now: datetime) -> bool:
    if duration_minutes is None:
        return False
    if duration_minutes < policy.short_shift_threshold_minutes:
        return add_violation(db, shift_id, ViolationType.SHORT_SHIFT, now=now)
    return False


def auto_close_shift(
    db: Session,
    shift_id: int,
    *,
    end_time: datetime,
    duration_minutes: int,
    now: datetime,
) -> Shift | None:
    """
    Closes an open shift as AUTO_TIMEOUT and records NOT_CLOSED_IN_TIME.

    The update only matches while end_time and alerted_at are both NULL, so
    concurrent callers race on a single row and exactly one of them gets the
    shift back. Everyone else gets None.
    """
    result = db.execute(
        update(Shift)
        .where(Shift.id == shift_id, Shift.end_time.is_(None), Shift.alerted_at.is_(None))
        .values(
            end_time=end_time,
            closed_reason=ClosedReason.AUTO_TIMEOUT.value,
            duration_minutes=duration_minutes,
            auto_closed_at=now,
            alerted_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if int(result.rowcount or 0) == 0:
        return None

    add_violation(db, shift_id, ViolationType.NOT_CLOSED_IN_TIME, now=now)
    return find_shift(db, shift_id)


def auto_close_for_policy(db: Session, shift: Shift, policy: ShiftPolicy, *, now: datetime) -> Shift | None:
    return auto_close_shift(
        db,
        shift.id,
        end_time=shift.start_time + policy.max_shift,
        duration_minutes=policy.auto_close_duration_minutes,
        now=now,
    )


def find_overdue_shifts(db: Session, *, cutoff: datetime, limit: int | None = None) -> list[Shift]:
    stmt = (
        select(Shift)
        .options(selectinload(Shift.employee))
        .where(Shift.end_time.is_(None), Shift.alerted_at.is_(None), Shift.start_time <= cutoff)
        .order_by(Shift.start_time.asc())
    )
    if limit:
        stmt = stmt.limit(limit)
    return list(db.execute(stmt).scalars().all())


def auto_close_overdue_shifts(
    session_factory: sessionmaker[Session],
    policy: ShiftPolicy,
    *,
    now: datetime,
    limit: int | None = None,
) -> list[Shift]:
    with session_factory() as db:
        candidates = find_overdue_shifts(db, cutoff=now - policy.max_shift, limit=limit)
        candidate_ids = [shift.id for shift in candidates]

    closed: list[Shift] = []
    for shift_id in candidate_ids:
        with session_factory.begin() as db:
            shift = db.get(Shift, shift_id)
            if shift is None:
                continue
            result = auto_close_for_policy(db, shift, policy, now=now)
        if result is None:
            logger.info("auto_close_skipped", shift_id=shift_id)
            continue
        logger.info("shift_auto_closed", shift_id=shift_id, employee_id=result.employee_id)
        closed.append(result)
    return closed


def purge_old_photos(db: Session, *, cutoff: datetime, now: datetime, limit: int | None = None) -> int:
    condition = (Shift.start_time < cutoff, Shift.photos_purged_at.is_(None))
    if limit:
        ids = db.execute(
            select(Shift.id).where(*condition).order_by(Shift.start_time.asc()).limit(limit)
        ).scalars().all()
        if not ids:
            return 0
        condition = (Shift.id.in_(ids), Shift.photos_purged_at.is_(None))

    result = db.execute(
        update(Shift)
        .where(*condition)
        .values(start_photo_file_id=None, end_photo_file_id=None, photos_purged_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
