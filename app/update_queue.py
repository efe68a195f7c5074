import json
import random
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .db import insert_ignore
from .event_log import EventLog, LogEventInput
from .models import QueueStatus, TelegramUpdate

logger = structlog.get_logger("shiftbot.update_queue")

MAX_ATTEMPTS = 10
BASE_BACKOFF_SECONDS = 10
MAX_BACKOFF_SECONDS = 600
MAX_JITTER_MS = 1000

KNOWN_UPDATE_TYPES = (
    "message",
    "edited_message",
    "callback_query",
    "inline_query",
    "chosen_inline_result",
    "channel_post",
    "edited_channel_post",
    "chat_member",
    "my_chat_member",
    "chat_join_request",
    "shipping_query",
    "pre_checkout_query",
    "poll",
    "poll_answer",
)

UpdateHandler = Callable[[dict], Awaitable[Any]]


def enqueue(db: Session, update_id: int, payload: dict, *, now: datetime) -> bool:
    """Stores an inbound update once. Redelivery of a known update_id is a no-op."""
    created = insert_ignore(
        db,
        TelegramUpdate,
        {
            "update_id": int(update_id),
            "payload_json": json.dumps(payload, ensure_ascii=False),
            "status": QueueStatus.PENDING.value,
            "attempts": 0,
            "next_run_at": now,
            "created_at": now,
            "updated_at": now,
        },
        ["update_id"],
    )
    return created > 0


def backoff_seconds(attempts: int, *, base: int = BASE_BACKOFF_SECONDS, cap: int = MAX_BACKOFF_SECONDS) -> int:
    return min((2 ** max(0, int(attempts))) * base, cap)


def detect_update_type(payload: dict) -> str | None:
    for key in KNOWN_UPDATE_TYPES:
        if key in payload:
            return key
    return None


def extract_queue_meta(payload: dict) -> tuple[str | None, dict]:
    update_type = detect_update_type(payload)
    callback = payload.get("callback_query") or {}
    message = (
        payload.get("message")
        or payload.get("edited_message")
        or payload.get("channel_post")
        or payload.get("edited_channel_post")
        or callback.get("message")
        or payload.get("chat_join_request")
        or payload.get("chat_member")
        or payload.get("my_chat_member")
    )
    message = message if isinstance(message, dict) else None
    callback_data = callback.get("data")
    meta = {
        "top_keys": list(payload.keys()),
        "message_keys": list(message.keys()) if message else None,
        "has_photo": bool(message and message.get("photo")),
        "has_text": bool(message and message.get("text")),
        "has_caption": bool(message and message.get("caption")),
        "media_group_id": str(message["media_group_id"]) if message and message.get("media_group_id") else None,
        "callback_data_prefix": callback_data[:20] if isinstance(callback_data, str) else None,
    }
    return update_type, meta


def _correlation(payload: dict) -> dict:
    callback = payload.get("callback_query") or {}
    message = payload.get("message") or payload.get("edited_message") or callback.get("message") or {}
    sender = callback.get("from") or message.get("from") or {}
    return {
        "chat_id": (message.get("chat") or {}).get("id"),
        "from_id": sender.get("id"),
        "message_id": message.get("message_id"),
    }


def _error_message(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def _load_payload(row: TelegramUpdate) -> dict:
    try:
        payload = json.loads(row.payload_json or "{}")
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def claim(db: Session, row_id: int, *, now: datetime) -> bool:
    result = db.execute(
        update(TelegramUpdate)
        .where(
            TelegramUpdate.id == row_id,
            TelegramUpdate.status == QueueStatus.PENDING.value,
            TelegramUpdate.next_run_at <= now,
        )
        .values(status=QueueStatus.PROCESSING.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) > 0


def find_due(db: Session, *, now: datetime, limit: int) -> list[TelegramUpdate]:
    return list(
        db.execute(
            select(TelegramUpdate)
            .where(TelegramUpdate.status == QueueStatus.PENDING.value, TelegramUpdate.next_run_at <= now)
            .order_by(TelegramUpdate.created_at.asc(), TelegramUpdate.id.asc())
            .limit(max(1, int(limit)))
        ).scalars().all()
    )


def _mark_done(session_factory: sessionmaker[Session], row_id: int, *, now: datetime) -> None:
    with session_factory.begin() as db:
        db.execute(
            update(TelegramUpdate)
            .where(TelegramUpdate.id == row_id)
            .values(status=QueueStatus.DONE.value, last_error=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )


def _mark_failed(session_factory: sessionmaker[Session], row_id: int, *, attempts: int, terminal: bool,
                 error: str, next_run_at: datetime, now: datetime) -> None:
    with session_factory.begin() as db:
        db.execute(
            update(TelegramUpdate)
            .where(TelegramUpdate.id == row_id)
            .values(
                status=QueueStatus.FAILED.value if terminal else QueueStatus.PENDING.value,
                attempts=attempts,
                last_error=error[:500],
                next_run_at=next_run_at,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )


async def process_batch(
    session_factory: sessionmaker[Session],
    handler: UpdateHandler,
    *,
    now: datetime,
    limit: int = 50,
    event_log: EventLog | None = None,
    max_attempts: int = MAX_ATTEMPTS,
    base_backoff_seconds: int = BASE_BACKOFF_SECONDS,
    max_backoff_seconds: int = MAX_BACKOFF_SECONDS,
    rng: random.Random | None = None,
) -> dict:
    rng = rng or random.Random()
    with session_factory() as db:
        rows = find_due(db, now=now, limit=limit)

    summary = {"picked": len(rows), "processed": 0, "done": 0, "failed": 0, "skipped": 0}

    for row in rows:
        try:
            with session_factory.begin() as db:
                claimed = claim(db, row.id, now=now)
        except SQLAlchemyError:
            logger.exception("queue_claim_failed", update_id=row.update_id)
            summary["skipped"] += 1
            continue
        if not claimed:
            summary["skipped"] += 1
            continue

        summary["processed"] += 1
        payload = _load_payload(row)
        update_type, meta = extract_queue_meta(payload)
        structlog.contextvars.bind_contextvars(update_id=row.update_id, update_type=update_type)
        try:
            # a failed DONE mark retries the update like a handler failure
            await handler(payload)
            _mark_done(session_factory, row.id, now=now)
        except Exception as exc:
            attempts = int(row.attempts or 0) + 1
            terminal = attempts >= max_attempts
            delay_ms = backoff_seconds(attempts, base=base_backoff_seconds, cap=max_backoff_seconds) * 1000
            delay_ms += int(rng.random() * MAX_JITTER_MS)
            next_run_at = now + timedelta(milliseconds=delay_ms)
            logger.warning(
                "queue_update_failed",
                attempts=attempts,
                terminal=terminal,
                next_run_at=next_run_at.isoformat(),
                error=_error_message(exc)[:500],
            )
            if event_log is not None:
                event_log.log_event(
                    LogEventInput(
                        level="error",
                        kind="queue_update_error",
                        update_id=row.update_id,
                        update_type=update_type,
                        meta={**meta, "attempts": attempts},
                        err=exc,
                        **_correlation(payload),
                    )
                )
            try:
                _mark_failed(
                    session_factory, row.id, attempts=attempts, terminal=terminal,
                    error=_error_message(exc), next_run_at=next_run_at, now=now,
                )
            except SQLAlchemyError as mark_exc:
                # the row stays in processing until the stale requeue picks it up
                logger.exception("queue_mark_failed", attempts=attempts)
                if event_log is not None:
                    event_log.log_event(
                        LogEventInput(
                            level="error",
                            kind="queue_mark_error",
                            update_id=row.update_id,
                            update_type=update_type,
                            meta={"attempts": attempts},
                            err=mark_exc,
                        )
                    )
                continue
            if terminal:
                summary["failed"] += 1
        else:
            summary["done"] += 1
        finally:
            structlog.contextvars.unbind_contextvars("update_id", "update_type")

    return summary


def requeue_stale_processing(db: Session, *, now: datetime, older_than: timedelta) -> int:
    """Rows a crashed worker left in `processing` go back to `pending`."""
    result = db.execute(
        update(TelegramUpdate)
        .where(
            TelegramUpdate.status == QueueStatus.PROCESSING.value,
            TelegramUpdate.updated_at <= now - older_than,
        )
        .values(status=QueueStatus.PENDING.value, next_run_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


def get_queue_health(db: Session, *, now: datetime) -> dict:
    counts = {status.value: 0 for status in QueueStatus}
    for status, count in db.execute(
        select(TelegramUpdate.status, func.count(TelegramUpdate.id)).group_by(TelegramUpdate.status)
    ).all():
        counts[str(status)] = int(count)

    oldest = db.execute(
        select(func.min(TelegramUpdate.created_at)).where(TelegramUpdate.status == QueueStatus.PENDING.value)
    ).scalar_one_or_none()
    oldest_age = int((now - oldest).total_seconds()) if oldest else 0
    return {"counts": counts, "oldest_pending_age_seconds": max(0, oldest_age)}
