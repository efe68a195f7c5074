from datetime import datetime, timedelta

import structlog

from bot.notify import notify_auto_closed

from . import shifts, update_queue
from .container import AppContainer
from .event_log import purge_event_logs

logger = structlog.get_logger("shiftbot.tasks")

TICK_MODES = ("regular", "daily", "queue")


async def run_process_queue_once(container: AppContainer, *, now: datetime | None = None,
                                 limit: int | None = None) -> dict:
    settings = container.settings
    now = now or container.clock.now()
    with container.session_factory.begin() as db:
        requeued = update_queue.requeue_stale_processing(
            db, now=now, older_than=timedelta(minutes=settings.QUEUE_STALE_PROCESSING_MINUTES)
        )
    if requeued:
        logger.warning("queue_stale_rows_requeued", count=requeued)

    summary = await update_queue.process_batch(
        container.session_factory,
        container.handle_update,
        now=now,
        limit=limit or settings.TICK_MAX_QUEUE,
        event_log=container.event_log,
        max_attempts=settings.QUEUE_MAX_ATTEMPTS,
        base_backoff_seconds=settings.QUEUE_BASE_BACKOFF_SECONDS,
        max_backoff_seconds=settings.QUEUE_MAX_BACKOFF_SECONDS,
    )
    if summary["picked"]:
        logger.info("queue_batch_processed", **summary)
    return summary


async def run_auto_close_once(container: AppContainer, *, now: datetime | None = None,
                              limit: int | None = None) -> dict:
    now = now or container.clock.now()
    closed = shifts.auto_close_overdue_shifts(
        container.session_factory,
        container.policy,
        now=now,
        limit=limit or container.settings.TICK_MAX_AUTOCLOSE,
    )
    summary = {"auto_closed": len(closed), "notified_admins": 0, "notified_employees": 0}
    for shift in closed:
        admins, employees_notified = await notify_auto_closed(container.bot, shift)
        summary["notified_admins"] += admins
        summary["notified_employees"] += employees_notified
    return summary


def run_pending_cleanup_once(container: AppContainer, *, now: datetime | None = None,
                             limit: int | None = None) -> int:
    now = now or container.clock.now()
    expired = container.pending_actions.expire_pending_actions(
        now, limit or container.settings.TICK_MAX_EXPIRE_PENDING
    )
    if expired:
        logger.info("pending_actions_expired", count=expired)
    return expired


def run_photo_retention_once(container: AppContainer, *, now: datetime | None = None,
                             limit: int | None = None) -> int:
    now = now or container.clock.now()
    cutoff = now - timedelta(days=container.settings.PHOTO_RETENTION_DAYS)
    with container.session_factory.begin() as db:
        purged = shifts.purge_old_photos(db, cutoff=cutoff, now=now, limit=limit or container.settings.TICK_MAX_PURGE)
    if purged:
        logger.info("shift_photos_purged", count=purged)
    return purged


def run_event_log_retention_once(container: AppContainer, *, now: datetime | None = None,
                                 limit: int | None = None) -> int:
    now = now or container.clock.now()
    cutoff = now - timedelta(days=container.settings.EVENT_LOG_RETENTION_DAYS)
    with container.session_factory.begin() as db:
        deleted = purge_event_logs(db, cutoff=cutoff, limit=limit or container.settings.TICK_MAX_PURGE)
    if deleted:
        logger.info("event_logs_purged", count=deleted)
    return deleted


async def run_tick(container: AppContainer, mode: str = "regular", *, now: datetime | None = None) -> dict:
    if mode not in TICK_MODES:
        mode = "regular"
    ran_at = now or container.clock.now()

    result: dict = {"ok": True, "mode": mode}
    if mode == "queue":
        result["queue"] = await run_process_queue_once(container, now=ran_at)

    result["expired_pending"] = run_pending_cleanup_once(container, now=ran_at)
    auto_close = await run_auto_close_once(container, now=ran_at)
    result["auto_closed"] = auto_close["auto_closed"]

    result["photos_purged"] = 0
    result["event_logs_purged"] = 0
    if mode == "daily":
        result["photos_purged"] = run_photo_retention_once(container, now=ran_at)
        result["event_logs_purged"] = run_event_log_retention_once(container, now=ran_at)

    result["ran_at"] = ran_at.isoformat()
    return result
