import asyncio
import errno
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Union

import httpx
import structlog

from .event_log import EventLog, LogEventInput

logger = structlog.get_logger("shiftbot.telegram")

DEFAULT_RETRY_DELAYS_MS = (300, 800, 1600)
NETWORK_ERROR_CODES = frozenset({"ETIMEDOUT", "ECONNRESET", "EAI_AGAIN", "ENOTFOUND", "ECONNREFUSED"})
NON_RETRYABLE_CODES = frozenset({400, 401, 403, 404})
RATE_LIMIT_JITTER_MS = 250
BACKOFF_JITTER_MS = 150


class TelegramApiError(Exception):
    """A Bot API response with ok=false."""

    def __init__(self, error_code: int | None, description: str = "", retry_after: int | None = None):
        self.error_code = error_code
        self.description = description or ""
        self.retry_after = retry_after
        super().__init__(f"{error_code}: {self.description}" if error_code else self.description)


@dataclass(frozen=True)
class RateLimited:
    retry_after: float


@dataclass(frozen=True)
class ServerError:
    code: int
    description: str = ""


@dataclass(frozen=True)
class ClientError:
    code: int
    description: str = ""


@dataclass(frozen=True)
class RecipientUnavailable:
    description: str


@dataclass(frozen=True)
class NetworkError:
    kind: str


@dataclass(frozen=True)
class Unknown:
    description: str


SendFailure = Union[RateLimited, ServerError, ClientError, RecipientUnavailable, NetworkError, Unknown]


@dataclass
class SendResult:
    ok: bool
    result: Any = None
    reason: str | None = None
    failure: SendFailure | None = None


def _is_recipient_unavailable(description: str) -> bool:
    lowered = (description or "").lower()
    return "chat not found" in lowered or "bot was blocked by the user" in lowered


def _network_kind(exc: BaseException) -> str | None:
    if isinstance(exc, httpx.TimeoutException):
        return "ETIMEDOUT"
    if isinstance(exc, httpx.ConnectError):
        cause = exc.__cause__ or exc.__context__
        if isinstance(cause, OSError):
            return _network_kind(cause) or "ECONNREFUSED"
        return "ECONNREFUSED"
    if isinstance(exc, (httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError)):
        return "ECONNRESET"
    if isinstance(exc, OSError) and exc.errno is not None:
        name = errno.errorcode.get(exc.errno)
        if name in NETWORK_ERROR_CODES:
            return name
        if exc.errno in (-3, 11002):
            return "EAI_AGAIN"
        if exc.errno in (-2, -5, 11001):
            return "ENOTFOUND"
    return None


def classify_failure(exc: BaseException) -> SendFailure:
    if isinstance(exc, TelegramApiError):
        if exc.retry_after is not None:
            return RateLimited(retry_after=float(exc.retry_after))
        code = int(exc.error_code or 0)
        if code >= 500:
            return ServerError(code=code, description=exc.description)
        if _is_recipient_unavailable(exc.description):
            return RecipientUnavailable(description=exc.description)
        if code >= 400:
            return ClientError(code=code, description=exc.description)
        return Unknown(description=exc.description or f"Telegram error {code}")

    kind = _network_kind(exc)
    if kind is not None:
        return NetworkError(kind=kind)
    return Unknown(description=str(exc)[:500] or type(exc).__name__)


def is_retryable(failure: SendFailure) -> bool:
    if isinstance(failure, (RateLimited, ServerError, NetworkError)):
        return True
    if isinstance(failure, (ClientError, RecipientUnavailable, Unknown)):
        return False
    raise TypeError(f"unhandled failure type: {failure!r}")


def describe_failure(failure: SendFailure) -> str:
    if isinstance(failure, RateLimited):
        return f"Too Many Requests: retry after {failure.retry_after:g}"
    if isinstance(failure, (ServerError, ClientError)):
        return failure.description or f"Telegram error {failure.code}"
    if isinstance(failure, RecipientUnavailable):
        return failure.description
    if isinstance(failure, NetworkError):
        return f"Network error {failure.kind}"
    if isinstance(failure, Unknown):
        return failure.description or "Telegram send failed"
    raise TypeError(f"unhandled failure type: {failure!r}")


def _failure_meta(failure: SendFailure) -> dict:
    meta: dict[str, Any] = {"failure": type(failure).__name__}
    if isinstance(failure, RateLimited):
        meta["error_code"] = 429
        meta["retry_after"] = failure.retry_after
    elif isinstance(failure, (ServerError, ClientError)):
        meta["error_code"] = failure.code
        meta["description"] = failure.description
    elif isinstance(failure, RecipientUnavailable):
        meta["description"] = failure.description
    elif isinstance(failure, NetworkError):
        meta["network_code"] = failure.kind
    return meta


class TelegramTransport:
    """Raw Bot API caller. Raises on any failure; retries live in SafeTelegram."""

    def __init__(self, *, bot_token: str, api_base_url: str = "https://api.telegram.org",
                 timeout: float = 10.0, client: httpx.AsyncClient | None = None):
        self.bot_token = bot_token
        self.api_base_url = api_base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def call(self, method: str, payload: dict) -> Any:
        url = f"{self.api_base_url}/bot{self.bot_token}/{method}"
        resp = await self._client.post(url, json=payload)
        try:
            body = resp.json()
        except ValueError:
            raise TelegramApiError(resp.status_code, resp.text[:200])
        if not isinstance(body, dict) or not body.get("ok"):
            body = body if isinstance(body, dict) else {}
            parameters = body.get("parameters") or {}
            raise TelegramApiError(
                body.get("error_code") or resp.status_code,
                str(body.get("description") or ""),
                retry_after=parameters.get("retry_after"),
            )
        return body.get("result")

    async def aclose(self) -> None:
        await self._client.aclose()


RawCall = Callable[[str, dict], Awaitable[Any]]


class SafeTelegram:
    """
    Outbound Bot API calls with retry, backoff and failure classification.

    `send` never raises for delivery problems: it returns SendResult(ok=False)
    and callers carry on without the notification.
    """

    def __init__(
        self,
        transport: TelegramTransport | RawCall,
        *,
        event_log: EventLog | None = None,
        retry_delays_ms: tuple[int, ...] | list[int] = DEFAULT_RETRY_DELAYS_MS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self._raw_call: RawCall = transport.call if isinstance(transport, TelegramTransport) else transport
        self.event_log = event_log
        self.retry_delays_ms = tuple(retry_delays_ms) or DEFAULT_RETRY_DELAYS_MS
        self.max_retries = len(self.retry_delays_ms)
        self._sleep = sleep
        self._rng = rng or random.Random()

    def _delay_seconds(self, failure: SendFailure, attempt: int) -> float:
        if isinstance(failure, RateLimited):
            jitter = int(self._rng.random() * RATE_LIMIT_JITTER_MS)
            return (failure.retry_after * 1000 + jitter) / 1000
        base = self.retry_delays_ms[min(attempt, len(self.retry_delays_ms) - 1)]
        jitter = int(self._rng.random() * BACKOFF_JITTER_MS)
        return (base + jitter) / 1000

    def _log_failure(self, *, method: str, payload: dict, attempt: int, failure: SendFailure,
                     will_retry: bool, exc: BaseException) -> None:
        logger.warning(
            "telegram_send_error",
            method=method,
            attempt=attempt,
            will_retry=will_retry,
            failure=type(failure).__name__,
        )
        if self.event_log is None:
            return
        try:
            self.event_log.log_event(
                LogEventInput(
                    level="warn",
                    kind="telegram_send_error",
                    chat_id=payload.get("chat_id"),
                    meta={"method": method, "attempt": attempt, "will_retry": will_retry, **_failure_meta(failure)},
                    err=exc,
                )
            )
        except Exception:
            logger.exception("telegram_send_error_log_failed", method=method)

    async def send(self, method: str, payload: dict | None = None) -> SendResult:
        payload = dict(payload or {})
        attempt = 0
        while True:
            try:
                result = await self._raw_call(method, payload)
                return SendResult(ok=True, result=result)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                failure = classify_failure(exc)
                will_retry = attempt < self.max_retries and is_retryable(failure)
                self._log_failure(
                    method=method, payload=payload, attempt=attempt, failure=failure,
                    will_retry=will_retry, exc=exc,
                )
                if not will_retry:
                    return SendResult(ok=False, reason=describe_failure(failure), failure=failure)
                delay = self._delay_seconds(failure, attempt)
                attempt += 1
                await self._sleep(delay)

    async def send_message(self, chat_id: int, text: str, **extra) -> SendResult:
        return await self.send("sendMessage", {"chat_id": chat_id, "text": text, **extra})

    async def send_photo(self, chat_id: int, photo: str, **extra) -> SendResult:
        return await self.send("sendPhoto", {"chat_id": chat_id, "photo": photo, **extra})

    async def answer_callback_query(self, callback_query_id: str, **extra) -> SendResult:
        return await self.send("answerCallbackQuery", {"callback_query_id": callback_query_id, **extra})

    async def edit_message_reply_markup(self, chat_id: int, message_id: int, reply_markup: dict | None = None) -> SendResult:
        payload: dict[str, Any] = {"chat_id": chat_id, "message_id": message_id}
        if reply_markup is not None:
            payload["reply_markup"] = reply_markup
        return await self.send("editMessageReplyMarkup", payload)

    async def get_updates(self, offset: int | None = None, timeout: int = 25, limit: int = 100) -> SendResult:
        payload: dict[str, Any] = {"timeout": timeout, "limit": limit}
        if offset is not None:
            payload["offset"] = offset
        return await self.send("getUpdates", payload)

    async def delete_webhook(self, drop_pending_updates: bool = False) -> SendResult:
        return await self.send("deleteWebhook", {"drop_pending_updates": drop_pending_updates})
