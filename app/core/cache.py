from datetime import datetime, timedelta, timezone

import redis
import structlog
from diskcache import Cache

_logger = structlog.get_logger("shiftbot.cache")


def _redis_client(redis_url: str) -> redis.Redis | None:
    redis_url = (redis_url or "").strip()
    if not redis_url:
        return None
    try:
        return redis.from_url(redis_url, decode_responses=True)
    except Exception:
        _logger.warning("redis_client_unavailable", exc_info=True)
        return None


class CooldownCache:
    """
    Time-window gate shared by every caller that holds the same backend.
    `acquire` returns True only for the first caller inside `ttl_seconds`.
    Each key stores the end of its window, measured on the caller's clock;
    backend TTLs only reclaim the space afterwards.
    """

    def __init__(self, *, directory: str = "./.cache", redis_url: str = "", redis_client=None):
        self._redis = redis_client if redis_client is not None else _redis_client(redis_url)
        self._disk = Cache(directory) if self._redis is None else None

    @property
    def backend(self) -> str:
        return "redis" if self._redis is not None else "disk"

    def acquire(self, key: str, ttl_seconds: int, *, now: datetime | None = None) -> bool:
        ttl = max(1, int(ttl_seconds))
        now = now or datetime.now(timezone.utc).replace(tzinfo=None)
        until = (now + timedelta(seconds=ttl)).isoformat()

        if self._redis is not None:
            if self._redis.set(key, until, nx=True, ex=ttl):
                return True
            current = self._redis.get(key)
            if current is not None and not _window_over(current, now):
                return False
            return bool(self._redis.set(key, until, ex=ttl))

        with self._disk.transact():
            current = self._disk.get(key)
            if current is not None and not _window_over(current, now):
                return False
            self._disk.set(key, until, expire=ttl)
        return True

    def close(self) -> None:
        if self._disk is not None:
            self._disk.close()


def _window_over(stored, now: datetime) -> bool:
    if isinstance(stored, bytes):
        stored = stored.decode("utf-8")
    try:
        return datetime.fromisoformat(str(stored)) <= now
    except ValueError:
        return True
