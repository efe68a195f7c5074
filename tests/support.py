import itertools
from datetime import datetime, timezone

from app.config import Settings
from app.employees import TelegramUserInput, upsert_from_telegram
from app.telegram_client import TelegramApiError

T0 = datetime(2026, 3, 2, 3, 0, 0)
BOSS_CHAT_ID = -100500


class FakeTelegram:
    """Stands in for the Bot API transport; records every call."""

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.failures: dict[str, list[Exception]] = {}
        self._message_ids = itertools.count(1000)

    def fail(self, method: str, *errors: Exception) -> None:
        self.failures.setdefault(method, []).extend(errors)

    async def __call__(self, method: str, payload: dict):
        self.calls.append((method, payload))
        queued = self.failures.get(method)
        if queued:
            raise queued.pop(0)
        if method == "sendMessage":
            return {"message_id": next(self._message_ids), "chat": {"id": payload.get("chat_id")}}
        return True

    def methods(self) -> list[str]:
        return [method for method, _ in self.calls]

    def sent_messages(self, chat_id=None) -> list[dict]:
        return [
            payload
            for method, payload in self.calls
            if method == "sendMessage" and (chat_id is None or payload.get("chat_id") == chat_id)
        ]


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def make_settings(tmp_path, **overrides) -> Settings:
    cfg = Settings()
    cfg.DATABASE_URL = f"sqlite:///{tmp_path / 'test_shiftbot.db'}"
    cfg.DB_AUTO_CREATE_ALL = True
    cfg.REDIS_URL = ""
    cfg.CACHE_DIR = str(tmp_path / "cache")
    cfg.TELEGRAM_BOT_TOKEN = "123:test-token"
    cfg.TELEGRAM_BOSS_CHAT_ID = BOSS_CHAT_ID
    cfg.ADMIN_USER_IDS = []
    cfg.WEBHOOK_SECRET = "hook-secret"
    cfg.TELEGRAM_WEBHOOK_SECRET_TOKEN = "header-token"
    cfg.INTERNAL_SECRET = "internal-secret"
    cfg.TIMEZONE = "Asia/Bishkek"
    cfg.MAX_SHIFT_HOURS = 12
    cfg.MIN_SHIFT_HOURS = 8
    cfg.SHORT_SHIFT_GRACE_MINUTES = 0
    cfg.PENDING_ACTION_TTL_MINUTES = 10
    cfg.PHOTO_RETENTION_DAYS = 30
    cfg.EVENT_LOG_RETENTION_DAYS = 14
    cfg.ERROR_NOTIFY_BOSS = False
    cfg.NOTIFY_EMPLOYEE_ON_AUTOCLOSE = True
    cfg.TELEGRAM_RETRY_DELAYS_MS = [300, 800, 1600]
    for key, value in overrides.items():
        setattr(cfg, key, value)
    return cfg


def make_employee(session_factory, telegram_user_id: int, first_name: str = "Aigul", last_name: str | None = None) -> int:
    with session_factory.begin() as db:
        employee = upsert_from_telegram(
            db, TelegramUserInput(id=telegram_user_id, first_name=first_name, last_name=last_name), now=T0
        )
        return employee.id


def unix(value: datetime) -> int:
    return int(value.replace(tzinfo=timezone.utc).timestamp())


def photo_update(update_id: int, *, user_id: int, message_id: int, date: datetime, chat_id: int | None = None,
                 first_name: str = "Aigul", last_name: str = "Toktosunova") -> dict:
    chat_id = chat_id if chat_id is not None else user_id
    return {
        "update_id": update_id,
        "message": {
            "message_id": message_id,
            "date": unix(date),
            "chat": {"id": chat_id, "type": "private", "first_name": first_name},
            "from": {"id": user_id, "is_bot": False, "first_name": first_name, "last_name": last_name},
            "photo": [
                {"file_id": f"small-{message_id}", "file_unique_id": f"s{message_id}", "width": 90, "height": 90},
                {"file_id": f"large-{message_id}", "file_unique_id": f"l{message_id}", "width": 1280, "height": 960},
            ],
        },
    }


def callback_update(update_id: int, *, user_id: int, data: str, message_id: int, date: datetime,
                    chat_id: int | None = None) -> dict:
    chat_id = chat_id if chat_id is not None else user_id
    return {
        "update_id": update_id,
        "callback_query": {
            "id": f"cb-{update_id}",
            "chat_instance": "ci-1",
            "data": data,
            "from": {"id": user_id, "is_bot": False, "first_name": "Aigul"},
            "message": {
                "message_id": message_id,
                "date": unix(date),
                "chat": {"id": chat_id, "type": "private"},
                "text": "Start a shift with this photo?",
            },
        },
    }


def rate_limited(seconds: int) -> TelegramApiError:
    return TelegramApiError(429, f"Too Many Requests: retry after {seconds}", retry_after=seconds)
