from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from bot.context import BotContext
from bot.core.router import dispatch_update

from .clock import Clock, SystemClock
from .config import Settings, settings as default_settings
from .core.cache import CooldownCache
from .db import build_engine, build_session_factory, init_db
from .event_log import AlertSink, EventLog, TelegramAlertSink
from .pending_actions import PendingActionService
from .shifts import ShiftPolicy
from .telegram_client import RawCall, SafeTelegram, TelegramTransport


@dataclass
class AppContainer:
    settings: Settings
    policy: ShiftPolicy
    clock: Clock
    engine: Engine
    session_factory: sessionmaker[Session]
    cooldown: CooldownCache
    event_log: EventLog
    telegram: SafeTelegram
    pending_actions: PendingActionService
    bot: BotContext
    transport: TelegramTransport | None = None

    async def handle_update(self, payload: dict) -> bool:
        return await dispatch_update(self.bot, payload)

    async def aclose(self) -> None:
        if self.transport is not None:
            await self.transport.aclose()
        sink = self.event_log.alert_sink
        if isinstance(sink, TelegramAlertSink):
            sink.close()
        self.cooldown.close()
        self.engine.dispose()


def policy_from_settings(cfg: Settings) -> ShiftPolicy:
    return ShiftPolicy(
        max_shift_hours=cfg.MAX_SHIFT_HOURS,
        min_shift_hours=cfg.MIN_SHIFT_HOURS,
        short_shift_grace_minutes=cfg.SHORT_SHIFT_GRACE_MINUTES,
        pending_action_ttl_minutes=cfg.PENDING_ACTION_TTL_MINUTES,
    )


def build_container(
    cfg: Settings | None = None,
    *,
    clock: Clock | None = None,
    engine: Engine | None = None,
    raw_call: RawCall | None = None,
    alert_sink: AlertSink | None = None,
    cooldown: CooldownCache | None = None,
    sleep=None,
) -> AppContainer:
    cfg = cfg or default_settings
    clock = clock or SystemClock()
    engine = engine or build_engine(cfg.DATABASE_URL)
    if cfg.DB_AUTO_CREATE_ALL:
        init_db(engine)
    session_factory = build_session_factory(engine)
    policy = policy_from_settings(cfg)

    cooldown = cooldown or CooldownCache(directory=cfg.CACHE_DIR, redis_url=cfg.REDIS_URL)
    if alert_sink is None and cfg.ERROR_NOTIFY_BOSS:
        alert_sink = TelegramAlertSink(
            bot_token=cfg.TELEGRAM_BOT_TOKEN,
            chat_id=cfg.TELEGRAM_BOSS_CHAT_ID,
            api_base_url=cfg.TELEGRAM_API_BASE_URL,
        )
    event_log = EventLog(
        session_factory,
        alert_sink=alert_sink,
        cooldown=cooldown,
        notify_enabled=cfg.ERROR_NOTIFY_BOSS,
        cooldown_seconds=cfg.ERROR_NOTIFY_COOLDOWN_SEC,
        dedupe_window=timedelta(minutes=cfg.EVENT_LOG_DEDUPE_WINDOW_MINUTES),
        clock=clock,
    )

    transport = None
    if raw_call is None:
        transport = TelegramTransport(
            bot_token=cfg.TELEGRAM_BOT_TOKEN,
            api_base_url=cfg.TELEGRAM_API_BASE_URL,
            timeout=cfg.TELEGRAM_TIMEOUT_SECONDS,
        )
    telegram_kwargs = {"event_log": event_log, "retry_delays_ms": cfg.TELEGRAM_RETRY_DELAYS_MS}
    if sleep is not None:
        telegram_kwargs["sleep"] = sleep
    telegram = SafeTelegram(transport or raw_call, **telegram_kwargs)

    pending_actions = PendingActionService(session_factory, policy, clock)
    bot = BotContext(
        session_factory=session_factory,
        pending_actions=pending_actions,
        telegram=telegram,
        event_log=event_log,
        clock=clock,
        policy=policy,
        admin_user_ids=tuple(cfg.ADMIN_USER_IDS),
        boss_chat_id=cfg.TELEGRAM_BOSS_CHAT_ID or None,
        timezone=cfg.TIMEZONE,
        notify_employee_on_autoclose=cfg.NOTIFY_EMPLOYEE_ON_AUTOCLOSE,
    )
    return AppContainer(
        settings=cfg,
        policy=policy,
        clock=clock,
        engine=engine,
        session_factory=session_factory,
        cooldown=cooldown,
        event_log=event_log,
        telegram=telegram,
        pending_actions=pending_actions,
        bot=bot,
        transport=transport,
    )
