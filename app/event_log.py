"""
Persistent operational log with fingerprint dedupe and throttled boss alerts.

`EventLog.log_event` is called from the queue worker, the Telegram wrapper and
the bot handlers. It must never raise: anything that goes wrong while writing
the row or notifying is reported to the process log and dropped.
"""

import asyncio
import hashlib
import json
import traceback
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

import httpx
import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from .clock import Clock, SystemClock
from .core.cache import CooldownCache
from .models import EventLogEntry

logger = structlog.get_logger("shiftbot.event_log")

MAX_ERROR_MSG = 1000
MAX_ERROR_STACK = 12000
MAX_META_JSON = 4000
MAX_META_STRING = 200
MAX_NESTED_STRING = 120
MAX_SAMPLE_ITEMS = 10
MAX_NESTED_KEYS = 10
MAX_TRUNCATED_KEYS = 12
MAX_ALERT_TEXT = 1000

AlertSink = Callable[[str], None]


@dataclass
class LogEventInput:
    level: str
    kind: str
    update_id: int | None = None
    chat_id: Any = None
    from_id: Any = None
    message_id: int | None = None
    update_type: str | None = None
    meta: dict | None = None
    err: Any = None


@dataclass
class ErrorDetails:
    name: str | None = None
    message: str | None = None
    stack: str | None = None


@dataclass
class _Prepared:
    error: ErrorDetails
    meta: dict | None
    fingerprint: str | None = None


def _truncate(value: str | None, limit: int) -> str | None:
    if not value:
        return None
    return value[:limit]


def first_line(value: str | None) -> str:
    if not value:
        return ""
    return value.split("\n", 1)[0].strip()


def _to_id(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def normalize_error(err: Any) -> ErrorDetails:
    if err is None or err == "":
        return ErrorDetails()
    if isinstance(err, BaseException):
        stack = "".join(traceback.format_exception(type(err), err, err.__traceback__))
        return ErrorDetails(name=type(err).__name__, message=str(err), stack=stack)
    if isinstance(err, str):
        return ErrorDetails(name="Error", message=err)
    try:
        return ErrorDetails(name="Error", message=json.dumps(err, ensure_ascii=False))
    except (TypeError, ValueError):
        return ErrorDetails(name=type(err).__name__, message=str(err))


def _sanitize_scalar(value: Any, limit: int) -> Any:
    if isinstance(value, str):
        return value[:limit]
    if isinstance(value, (bool, int, float)):
        return value
    return None


def _sanitize_value(value: Any) -> Any:
    if value is None:
        return None
    scalar = _sanitize_scalar(value, MAX_META_STRING)
    if scalar is not None:
        return scalar

    if isinstance(value, (list, tuple)):
        sample = []
        for item in value[:MAX_SAMPLE_ITEMS]:
            if item is None:
                sample.append("[null]")
                continue
            item_scalar = _sanitize_scalar(item, MAX_META_STRING)
            sample.append(item_scalar if item_scalar is not None else "[complex]")
        if len(value) > MAX_SAMPLE_ITEMS:
            return {"length": len(value), "sample": sample}
        return sample

    if isinstance(value, dict):
        if len(value) > MAX_NESTED_KEYS:
            return {"keys": [str(k) for k in list(value.keys())[:MAX_NESTED_KEYS]]}
        nested = {}
        for key, nested_value in value.items():
            if nested_value is None:
                continue
            nested_scalar = _sanitize_scalar(nested_value, MAX_NESTED_STRING)
            nested[str(key)] = nested_scalar if nested_scalar is not None else "[complex]"
        return nested

    return str(value)[:MAX_META_STRING]


def sanitize_meta(meta: Any) -> dict | None:
    """Shallow copy of `meta` bounded to MAX_META_JSON characters once serialized."""
    if not isinstance(meta, dict) or not meta:
        return None
    output = {}
    for key, value in meta.items():
        sanitized = _sanitize_value(value)
        if sanitized is not None:
            output[str(key)] = sanitized

    try:
        size = len(json.dumps(output, ensure_ascii=False))
    except (TypeError, ValueError):
        return None
    if size <= MAX_META_JSON:
        return output
    return {"note": "meta_truncated", "keys": list(output.keys())[:MAX_TRUNCATED_KEYS]}


def build_fingerprint(
    *,
    kind: str,
    update_type: str | None,
    error_name: str | None,
    error_msg: str | None,
    meta: dict | None,
) -> str:
    callback_prefix = ""
    if isinstance(meta, dict):
        callback_prefix = str(meta.get("callback_data_prefix") or "")
    payload = "|".join(
        [kind, update_type or "", error_name or "", first_line(error_msg), callback_prefix]
    )
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()


def build_alert_text(data: LogEventInput, error: ErrorDetails) -> str:
    summary = first_line(error.message) or "-"
    parts = [
        "Error",
        f"Kind: {data.kind}",
        f"Update: {data.update_type or '-'}",
        f"fromId: {data.from_id if data.from_id is not None else '-'}",
        f"chatId: {data.chat_id if data.chat_id is not None else '-'}",
        f"{error.name or 'Error'}: {summary}",
    ]
    return "\n".join(parts)[:MAX_ALERT_TEXT]


class TelegramAlertSink:
    """Posts alert text straight to the boss chat, outside the retry wrapper."""

    def __init__(self, *, bot_token: str, chat_id: int, api_base_url: str = "https://api.telegram.org",
                 timeout: float = 5.0, client: httpx.Client | None = None):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.api_base_url = api_base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)

    def __call__(self, text: str) -> None:
        if not self.bot_token or not self.chat_id:
            return
        url = f"{self.api_base_url}/bot{self.bot_token}/sendMessage"
        resp = self._client.post(url, json={"chat_id": self.chat_id, "text": text})
        if resp.status_code >= 400:
            raise RuntimeError(f"Telegram notify failed: {resp.status_code} {resp.text[:200]}")

    def close(self) -> None:
        self._client.close()


class EventLog:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        alert_sink: AlertSink | None = None,
        cooldown: CooldownCache | None = None,
        notify_enabled: bool = False,
        cooldown_seconds: int = 60,
        dedupe_window: timedelta = timedelta(minutes=10),
        clock: Clock | None = None,
    ):
        self.session_factory = session_factory
        self.alert_sink = alert_sink
        self.cooldown = cooldown
        self.notify_enabled = notify_enabled
        self.cooldown_seconds = cooldown_seconds
        self.dedupe_window = dedupe_window
        self.clock = clock or SystemClock()

    def log_event(self, data: LogEventInput) -> bool:
        """Returns True when a row was written, False when suppressed or failed."""
        try:
            prepared = self._prepare(data)
            written = self._persist(data, prepared)
        except Exception:
            logger.exception("event_log_persist_failed", kind=data.kind, level=data.level)
            return False

        if written and data.level == "error":
            self._maybe_notify(data, prepared.error)
        return written

    def error(self, kind: str, err: Any = None, **fields) -> bool:
        return self.log_event(LogEventInput(level="error", kind=kind, err=err, **fields))

    def warn(self, kind: str, **fields) -> bool:
        return self.log_event(LogEventInput(level="warn", kind=kind, **fields))

    def info(self, kind: str, **fields) -> bool:
        return self.log_event(LogEventInput(level="info", kind=kind, **fields))

    def _prepare(self, data: LogEventInput) -> _Prepared:
        details = normalize_error(data.err)
        error = ErrorDetails(
            name=_truncate(details.name, 120),
            message=_truncate(details.message, MAX_ERROR_MSG),
            stack=_truncate(details.stack, MAX_ERROR_STACK),
        )
        meta = sanitize_meta(data.meta)
        fingerprint = None
        if data.level == "error":
            fingerprint = build_fingerprint(
                kind=data.kind,
                update_type=data.update_type,
                error_name=error.name,
                error_msg=error.message,
                meta=meta,
            )
        return _Prepared(error=error, meta=meta, fingerprint=fingerprint)

    def _persist(self, data: LogEventInput, prepared: _Prepared) -> bool:
        now = self.clock.now()
        with self.session_factory.begin() as db:
            if prepared.fingerprint:
                cutoff = now - self.dedupe_window
                existing = db.execute(
                    select(EventLogEntry.id)
                    .where(
                        EventLogEntry.fingerprint == prepared.fingerprint,
                        EventLogEntry.created_at >= cutoff,
                    )
                    .limit(1)
                ).first()
                if existing is not None:
                    return False
                db.execute(
                    update(EventLogEntry)
                    .where(
                        EventLogEntry.fingerprint == prepared.fingerprint,
                        EventLogEntry.created_at < cutoff,
                    )
                    .values(fingerprint=None)
                )

            db.add(
                EventLogEntry(
                    level=data.level,
                    kind=data.kind[:80],
                    update_id=data.update_id,
                    chat_id=_to_id(data.chat_id),
                    from_id=_to_id(data.from_id),
                    message_id=data.message_id,
                    update_type=(data.update_type or None),
                    meta_json=json.dumps(prepared.meta, ensure_ascii=False) if prepared.meta else None,
                    error_name=prepared.error.name,
                    error_msg=prepared.error.message,
                    error_stack=prepared.error.stack,
                    fingerprint=prepared.fingerprint,
                    created_at=now,
                )
            )
        return True

    def _maybe_notify(self, data: LogEventInput, error: ErrorDetails) -> None:
        if not self.notify_enabled or self.alert_sink is None:
            return
        try:
            if self.cooldown is not None:
                if not self.cooldown.acquire(f"event_log:notify:{data.kind}", self.cooldown_seconds,
                                              now=self.clock.now()):
                    return
            text = build_alert_text(data, error)
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            if loop is None:
                self._send_alert(data.kind, text)
            else:
                # the sink is blocking; keep it off the event loop
                loop.run_in_executor(None, self._send_alert, data.kind, text)
        except Exception as exc:
            logger.warning("event_log_notify_failed", kind=data.kind, error=str(exc)[:500])

    def _send_alert(self, kind: str, text: str) -> None:
        try:
            self.alert_sink(text)
        except Exception as exc:
            logger.warning("event_log_notify_failed", kind=kind, error=str(exc)[:500])


def purge_event_logs(db: Session, *, cutoff: datetime, limit: int = 1000) -> int:
    ids = db.execute(
        select(EventLogEntry.id)
        .where(EventLogEntry.created_at < cutoff)
        .order_by(EventLogEntry.id.asc())
        .limit(max(1, int(limit)))
    ).scalars().all()
    if not ids:
        return 0
    result = db.execute(
        EventLogEntry.__table__.delete().where(EventLogEntry.id.in_(ids))
    )
    return int(result.rowcount or 0)


def list_recent_errors(db: Session, *, limit: int = 20, since: datetime | None = None) -> list[EventLogEntry]:
    stmt = select(EventLogEntry).where(EventLogEntry.level == "error")
    if since is not None:
        stmt = stmt.where(EventLogEntry.created_at >= since)
    stmt = stmt.order_by(EventLogEntry.created_at.desc(), EventLogEntry.id.desc()).limit(max(1, min(int(limit), 100)))
    return list(db.execute(stmt).scalars().all())
