import os

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except Exception:
        return int(default)


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default)).strip()
    try:
        return float(raw)
    except Exception:
        return float(default)


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "1" if default else "0").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return bool(default)


def _get_int_list(name: str, default: str = "") -> list[int]:
    values: list[int] = []
    for part in os.getenv(name, default).split(","):
        part = part.strip()
        if not part:
            continue
        try:
            values.append(int(part))
        except ValueError:
            continue
    return values


class Settings:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./shiftbot.db")
    DB_AUTO_CREATE_ALL = _get_bool("DB_AUTO_CREATE_ALL", True)
    REDIS_URL = os.getenv("REDIS_URL", "").strip()
    CACHE_DIR = os.getenv("CACHE_DIR", "./.cache").strip()
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    HOST = os.getenv("HOST", "0.0.0.0").strip()
    PORT = _get_int("PORT", 8000)

    TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "").strip()
    TELEGRAM_API_BASE_URL = os.getenv("TELEGRAM_API_BASE_URL", "https://api.telegram.org").strip().rstrip("/")
    TELEGRAM_TIMEOUT_SECONDS = _get_float("TELEGRAM_TIMEOUT_SECONDS", 10.0)
    TELEGRAM_RETRY_DELAYS_MS = _get_int_list("TELEGRAM_RETRY_DELAYS_MS", "300,800,1600")
    TELEGRAM_BOSS_CHAT_ID = _get_int("TELEGRAM_BOSS_CHAT_ID", 0)
    ADMIN_USER_IDS = _get_int_list("ADMIN_USER_IDS")

    WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "").strip()
    TELEGRAM_WEBHOOK_SECRET_TOKEN = os.getenv("TELEGRAM_WEBHOOK_SECRET_TOKEN", "").strip()
    INTERNAL_SECRET = os.getenv("INTERNAL_SECRET", "").strip()
    PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "").strip().rstrip("/")

    TIMEZONE = os.getenv("TIMEZONE", "Asia/Bishkek").strip()
    MAX_SHIFT_HOURS = _get_int("MAX_SHIFT_HOURS", 12)
    MIN_SHIFT_HOURS = _get_int("MIN_SHIFT_HOURS", 8)
    SHORT_SHIFT_GRACE_MINUTES = _get_int("SHORT_SHIFT_GRACE_MINUTES", 0)
    PENDING_ACTION_TTL_MINUTES = _get_int("PENDING_ACTION_TTL_MINUTES", 10)
    PHOTO_RETENTION_DAYS = _get_int("PHOTO_RETENTION_DAYS", 3)
    NOTIFY_EMPLOYEE_ON_AUTOCLOSE = _get_bool("NOTIFY_EMPLOYEE_ON_AUTOCLOSE", True)

    TICK_MAX_AUTOCLOSE = _get_int("TICK_MAX_AUTOCLOSE", 50)
    TICK_MAX_EXPIRE_PENDING = _get_int("TICK_MAX_EXPIRE_PENDING", 200)
    TICK_MAX_QUEUE = _get_int("TICK_MAX_QUEUE", 50)
    TICK_MAX_PURGE = _get_int("TICK_MAX_PURGE", 500)

    QUEUE_MAX_ATTEMPTS = _get_int("QUEUE_MAX_ATTEMPTS", 10)
    QUEUE_BASE_BACKOFF_SECONDS = _get_int("QUEUE_BASE_BACKOFF_SECONDS", 10)
    QUEUE_MAX_BACKOFF_SECONDS = _get_int("QUEUE_MAX_BACKOFF_SECONDS", 600)
    QUEUE_STALE_PROCESSING_MINUTES = _get_int("QUEUE_STALE_PROCESSING_MINUTES", 15)

    ERROR_NOTIFY_BOSS = _get_bool("ERROR_NOTIFY_BOSS", False)
    ERROR_NOTIFY_COOLDOWN_SEC = _get_int("ERROR_NOTIFY_COOLDOWN_SEC", 60)
    EVENT_LOG_RETENTION_DAYS = _get_int("EVENT_LOG_RETENTION_DAYS", 14)
    EVENT_LOG_DEDUPE_WINDOW_MINUTES = _get_int("EVENT_LOG_DEDUPE_WINDOW_MINUTES", 10)


settings = Settings()
