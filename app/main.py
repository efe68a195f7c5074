import hmac
from contextlib import asynccontextmanager

import redis
import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from . import update_queue
from .config import settings
from .container import AppContainer, build_container
from .core.observability import request_tracing_middleware, setup_logging
from .db import ping
from .event_log import list_recent_errors
from .schemas import EventLogOut, TickOut, WebhookAck
from .tasks import run_tick

logger = structlog.get_logger("shiftbot.api")


def _secret_matches(provided: str | None, expected: str) -> bool:
    if not expected or provided is None:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def get_container(request: Request) -> AppContainer:
    return request.app.state.container


def require_internal_secret(
    request: Request,
    authorization: str | None = Header(default=None),
    x_internal_secret: str | None = Header(default=None),
) -> None:
    expected = get_container(request).settings.INTERNAL_SECRET
    bearer = None
    if authorization and authorization.startswith("Bearer "):
        bearer = authorization[len("Bearer "):]
    if not (_secret_matches(bearer, expected) or _secret_matches(x_internal_secret, expected)):
        raise HTTPException(status_code=401, detail="Unauthorized")


def create_app(container: AppContainer | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if getattr(app.state, "container", None) is None:
            setup_logging(settings.LOG_LEVEL)
            owned = build_container(settings)
            app.state.container = owned
        yield
        if owned is not None:
            await owned.aclose()

    app = FastAPI(
        title="ShiftBot",
        description="Photo-confirmed shift tracking for Telegram",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.container = container

    @app.middleware("http")
    async def request_observability_middleware(request: Request, call_next):
        return await request_tracing_middleware(request, call_next)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/health/ready")
    def ready(c: AppContainer = Depends(get_container)):
        checks = {"db": "ok", "redis": "skipped"}
        queue = None
        db_ok = True
        redis_ok = True

        try:
            with c.session_factory() as db:
                ping(db)
                queue = update_queue.get_queue_health(db, now=c.clock.now())
        except Exception:
            logger.exception("readiness_db_check_failed")
            checks["db"] = "error"
            db_ok = False

        redis_url = (c.settings.REDIS_URL or "").strip()
        if redis_url:
            try:
                client = redis.from_url(redis_url, decode_responses=True)
                client.ping()
                checks["redis"] = "ok"
            except Exception:
                checks["redis"] = "error"
                redis_ok = False

        if db_ok and redis_ok:
            return {"status": "ready", "checks": checks, "queue": queue}
        return JSONResponse(status_code=503, content={"status": "not_ready", "checks": checks})

    @app.post("/telegram/webhook/{secret}", response_model=WebhookAck)
    async def telegram_webhook(
        secret: str,
        request: Request,
        x_telegram_bot_api_secret_token: str | None = Header(default=None),
        c: AppContainer = Depends(get_container),
    ):
        if not _secret_matches(secret, c.settings.WEBHOOK_SECRET):
            raise HTTPException(status_code=404, detail="Not Found")
        expected_token = c.settings.TELEGRAM_WEBHOOK_SECRET_TOKEN
        if expected_token and not _secret_matches(x_telegram_bot_api_secret_token, expected_token):
            raise HTTPException(status_code=401, detail="Unauthorized")

        try:
            payload = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON")
        if not isinstance(payload, dict) or not isinstance(payload.get("update_id"), int):
            raise HTTPException(status_code=400, detail="update_id is required")

        with c.session_factory.begin() as db:
            queued = update_queue.enqueue(db, payload["update_id"], payload, now=c.clock.now())
        if not queued:
            logger.info("webhook_update_duplicate", update_id=payload["update_id"])
        return WebhookAck(ok=True, queued=queued)

    @app.post("/internal/tick", response_model=TickOut, dependencies=[Depends(require_internal_secret)])
    async def internal_tick(
        mode: str = Query(default="regular"),
        c: AppContainer = Depends(get_container),
    ):
        try:
            return await run_tick(c, mode)
        except Exception:
            logger.exception("internal_tick_failed", mode=mode)
            return JSONResponse(status_code=500, content={"ok": False})

    @app.get("/internal/errors", response_model=list[EventLogOut], dependencies=[Depends(require_internal_secret)])
    def internal_errors(
        limit: int = Query(default=20, ge=1, le=100),
        c: AppContainer = Depends(get_container),
    ):
        with c.session_factory() as db:
            rows = list_recent_errors(db, limit=limit)
        return [EventLogOut.model_validate(row) for row in rows]

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_config=None)
