from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

CONFIRM_START_PROMPT = "Start a shift with this photo?"
CONFIRM_END_PROMPT = "End your shift with this photo?"
PENDING_CANCELLED = "Cancelled."
PENDING_EXPIRED = "This confirmation has expired. Send the photo again."
PENDING_ALREADY_HANDLED = "This photo was already handled."
PENDING_NOT_FOUND = "Confirmation not found."
NO_ACCESS = "This button is not for you."
OPEN_SHIFT_EXISTS = "You already have an open shift."
ALREADY_CLOSED = "Your shift is already closed."
NOT_EMPLOYEE = "You are not registered as an employee."
ADMIN_PHOTO_IGNORED = "Photos from admins are not tracked."
TRY_LATER = "Could not process the photo. Please try again later."
CONFIRM_FAILED = "Could not confirm the action. Please try again later."
CANCEL_FAILED = "Could not cancel the action. Please try again later."


def _zone(tz_name: str):
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def format_time(value: datetime | None, tz_name: str) -> str:
    if value is None:
        return "-"
    aware = value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value
    return aware.astimezone(_zone(tz_name)).strftime("%H:%M")


def format_duration(minutes: int | None) -> str:
    minutes = max(0, int(minutes or 0))
    hours, rest = divmod(minutes, 60)
    if hours and rest:
        return f"{hours}h {rest}m"
    if hours:
        return f"{hours}h"
    return f"{rest}m"


def shift_started(time_label: str) -> str:
    return f"Shift started at {time_label}."


def shift_closed(time_label: str, duration_label: str) -> str:
    return f"Shift closed at {time_label}. Duration: {duration_label}."


def boss_shift_started(name: str, time_label: str) -> str:
    return f"{name} started a shift at {time_label}."


def boss_shift_closed(name: str, duration_label: str) -> str:
    return f"{name} closed a shift. Duration: {duration_label}."


def auto_closed_boss(name: str, end_label: str, max_hours: int) -> str:
    return f"{name}'s shift was closed automatically at {end_label} after {max_hours}h without an end photo."


def auto_closed_employee(max_hours: int) -> str:
    return f"Your shift was closed automatically after {max_hours}h. Remember to send an end photo next time."
