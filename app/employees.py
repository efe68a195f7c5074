from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import insert_ignore
from .models import Admin, Employee, RoleOverride, utc_now_naive


@dataclass(frozen=True)
class TelegramUserInput:
    id: int
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None


@dataclass
class RoleContext:
    telegram_user_id: int
    is_admin: bool
    is_employee: bool
    role_override: str
    employee: Employee | None = None

    @property
    def is_both(self) -> bool:
        return self.is_admin and self.is_employee and self.role_override == RoleOverride.BOTH.value


def build_display_name(user: TelegramUserInput) -> str:
    parts = [p.strip() for p in (user.first_name, user.last_name) if p and p.strip()]
    if parts:
        return " ".join(parts)
    if user.username:
        return f"@{user.username}"
    return f"user:{user.id}"


def find_by_id(db: Session, employee_id: int) -> Employee | None:
    return db.get(Employee, employee_id)


def find_by_telegram_user_id(db: Session, telegram_user_id: int) -> Employee | None:
    return db.execute(
        select(Employee).where(Employee.telegram_user_id == telegram_user_id)
    ).scalar_one_or_none()


def upsert_from_telegram(db: Session, user: TelegramUserInput, *, now: datetime | None = None) -> Employee:
    now = now or utc_now_naive()
    display_name = build_display_name(user)
    insert_ignore(
        db,
        Employee,
        {
            "telegram_user_id": user.id,
            "username": user.username,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "display_name": display_name,
            "is_active": True,
            "role_override": RoleOverride.DEFAULT.value,
            "created_at": now,
            "updated_at": now,
        },
        ["telegram_user_id"],
    )
    employee = find_by_telegram_user_id(db, user.id)
    if (employee.username, employee.first_name, employee.last_name, employee.display_name) != (
        user.username, user.first_name, user.last_name, display_name
    ):
        employee.username = user.username
        employee.first_name = user.first_name
        employee.last_name = user.last_name
        employee.display_name = display_name
        employee.updated_at = now
        db.flush()
    return employee


def is_admin(db: Session, telegram_user_id: int, admin_user_ids: list[int] | tuple[int, ...] = ()) -> bool:
    if telegram_user_id in set(admin_user_ids or ()):
        return True
    row = db.execute(select(Admin.id).where(Admin.telegram_user_id == telegram_user_id)).first()
    return row is not None


def add_admin(db: Session, telegram_user_id: int) -> bool:
    return insert_ignore(
        db, Admin, {"telegram_user_id": telegram_user_id, "created_at": utc_now_naive()}, ["telegram_user_id"]
    ) > 0


def resolve_role(db: Session, telegram_user_id: int, admin_user_ids: list[int] | tuple[int, ...] = ()) -> RoleContext:
    admin = is_admin(db, telegram_user_id, admin_user_ids)
    employee = find_by_telegram_user_id(db, telegram_user_id)
    role_override = employee.role_override if employee else RoleOverride.DEFAULT.value
    active = bool(employee.is_active) if employee else False

    if not admin:
        # unknown users become employees on their first photo
        is_employee = active if employee else True
    elif role_override in (RoleOverride.BOTH.value, RoleOverride.FORCE_EMPLOYEE.value):
        is_employee = active
    else:
        is_employee = False

    if role_override == RoleOverride.FORCE_ADMIN.value:
        is_employee = False

    return RoleContext(
        telegram_user_id=telegram_user_id,
        is_admin=admin,
        is_employee=is_employee,
        role_override=role_override,
        employee=employee,
    )


def admin_chat_ids(db: Session, *, boss_chat_id: int | None, admin_user_ids: list[int] | tuple[int, ...] = ()) -> list[int]:
    ids: list[int] = []
    for value in [boss_chat_id, *admin_user_ids, *db.execute(select(Admin.telegram_user_id)).scalars().all()]:
        if value and value not in ids:
            ids.append(int(value))
    return ids
