from datetime import datetime

from pydantic import BaseModel, ConfigDict


class WebhookAck(BaseModel):
    ok: bool = True
    queued: bool = False


class QueueSummaryOut(BaseModel):
    picked: int = 0
    processed: int = 0
    done: int = 0
    failed: int = 0
    skipped: int = 0


class TickOut(BaseModel):
    ok: bool
    mode: str
    expired_pending: int = 0
    auto_closed: int = 0
    photos_purged: int = 0
    event_logs_purged: int = 0
    ran_at: str
    queue: QueueSummaryOut | None = None


class EventLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    level: str
    kind: str
    update_id: int | None = None
    chat_id: int | None = None
    from_id: int | None = None
    update_type: str | None = None
    error_name: str | None = None
    error_msg: str | None = None
    created_at: datetime
