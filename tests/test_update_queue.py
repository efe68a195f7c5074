import asyncio
import json
import random
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from app.clock import FrozenClock
from app.event_log import EventLog
from app.models import EventLogEntry, QueueStatus, TelegramUpdate
from app.update_queue import (
    backoff_seconds,
    claim,
    enqueue,
    extract_queue_meta,
    get_queue_health,
    process_batch,
    requeue_stale_processing,
)
from tests.support import T0, callback_update, photo_update


def _rows(session_factory):
    with session_factory() as db:
        return list(db.execute(select(TelegramUpdate).order_by(TelegramUpdate.id)).scalars().all())


def _enqueue(session_factory, payload, now=T0):
    with session_factory.begin() as db:
        return enqueue(db, payload["update_id"], payload, now=now)


def test_enqueue_is_idempotent_per_update_id(session_factory):
    payload = photo_update(10, user_id=501, message_id=1, date=T0)

    assert _enqueue(session_factory, payload) is True
    assert _enqueue(session_factory, {**payload, "extra": True}) is False
    assert _enqueue(session_factory, payload, now=T0 + timedelta(minutes=5)) is False

    rows = _rows(session_factory)
    assert len(rows) == 1
    assert rows[0].status == QueueStatus.PENDING.value
    assert rows[0].attempts == 0
    assert json.loads(rows[0].payload_json) == payload


def test_backoff_grows_and_caps():
    assert backoff_seconds(1) == 20
    assert backoff_seconds(2) == 40
    assert backoff_seconds(5) == 320
    assert backoff_seconds(6) == 600
    assert backoff_seconds(10) == 600
    assert backoff_seconds(3, base=1, cap=5) == 5


def test_process_batch_marks_done_and_does_not_repeat(session_factory):
    _enqueue(session_factory, photo_update(1, user_id=501, message_id=1, date=T0))
    _enqueue(session_factory, photo_update(2, user_id=502, message_id=2, date=T0))
    seen = []

    async def handler(payload):
        seen.append(payload["update_id"])

    summary = asyncio.run(process_batch(session_factory, handler, now=T0))
    assert summary == {"picked": 2, "processed": 2, "done": 2, "failed": 0, "skipped": 0}
    assert seen == [1, 2]

    again = asyncio.run(process_batch(session_factory, handler, now=T0 + timedelta(minutes=1)))
    assert again["picked"] == 0
    assert seen == [1, 2]
    assert {row.status for row in _rows(session_factory)} == {QueueStatus.DONE.value}


def test_failure_backs_off_until_terminal_at_max_attempts(session_factory):
    _enqueue(session_factory, photo_update(7, user_id=501, message_id=1, date=T0))

    async def failing(payload):
        raise RuntimeError("handler exploded " + "x" * 800)

    now = T0
    previous_next_run = None
    for attempt in range(1, 11):
        summary = asyncio.run(process_batch(session_factory, failing, now=now, rng=random.Random(attempt)))
        assert summary["processed"] == 1

        row = _rows(session_factory)[0]
        assert row.attempts == attempt
        assert len(row.last_error) <= 500
        assert row.last_error.startswith("handler exploded")

        delay = (row.next_run_at - now).total_seconds()
        expected = min(2 ** attempt * 10, 600)
        assert expected <= delay < expected + 1
        if previous_next_run is not None:
            assert row.next_run_at > previous_next_run
        previous_next_run = row.next_run_at

        if attempt < 10:
            assert row.status == QueueStatus.PENDING.value
            assert summary["failed"] == 0
            early = asyncio.run(process_batch(session_factory, failing, now=now + timedelta(seconds=1)))
            assert early["picked"] == 0
        else:
            assert row.status == QueueStatus.FAILED.value
            assert summary["failed"] == 1
        now = row.next_run_at

    final = asyncio.run(process_batch(session_factory, failing, now=now + timedelta(days=1)))
    assert final["picked"] == 0


def test_one_failing_update_does_not_block_the_rest(session_factory):
    for update_id in (1, 2, 3):
        _enqueue(session_factory, photo_update(update_id, user_id=500 + update_id, message_id=update_id, date=T0))

    async def handler(payload):
        if payload["update_id"] == 2:
            raise ValueError("bad update")

    summary = asyncio.run(process_batch(session_factory, handler, now=T0))
    assert summary == {"picked": 3, "processed": 3, "done": 2, "failed": 0, "skipped": 0}
    statuses = {row.update_id: row.status for row in _rows(session_factory)}
    assert statuses == {1: "done", 2: "pending", 3: "done"}


class FlakyStore:
    """Session factory whose numbered begin() calls fail like a locked database."""

    def __init__(self, session_factory, fail_on):
        self._factory = session_factory
        self._fail_on = set(fail_on)
        self.begins = 0

    def __call__(self):
        return self._factory()

    def begin(self):
        self.begins += 1
        if self.begins in self._fail_on:
            raise OperationalError("UPDATE telegram_updates", {}, Exception("database is locked"))
        return self._factory.begin()


def test_failed_done_mark_backs_off_and_batch_continues(session_factory):
    for update_id in (1, 2, 3):
        _enqueue(session_factory, photo_update(update_id, user_id=500 + update_id, message_id=update_id, date=T0))
    handled = []

    async def handler(payload):
        handled.append(payload["update_id"])

    # begin #2 is the DONE mark for the first row
    store = FlakyStore(session_factory, fail_on={2})
    summary = asyncio.run(process_batch(store, handler, now=T0, rng=random.Random(0)))

    assert handled == [1, 2, 3]
    assert summary == {"picked": 3, "processed": 3, "done": 2, "failed": 0, "skipped": 0}
    first, second, third = _rows(session_factory)
    assert (first.status, first.attempts) == ("pending", 1)
    assert "database is locked" in first.last_error
    assert first.next_run_at > T0
    assert (second.status, third.status) == ("done", "done")


def test_failed_bookkeeping_is_logged_and_batch_continues(session_factory):
    for update_id in (1, 2, 3):
        _enqueue(session_factory, photo_update(update_id, user_id=500 + update_id, message_id=update_id, date=T0))
    event_log = EventLog(session_factory, clock=FrozenClock(T0))

    async def handler(payload):
        return None

    # both the DONE mark and the backoff write for the first row fail
    store = FlakyStore(session_factory, fail_on={2, 3})
    summary = asyncio.run(process_batch(store, handler, now=T0, event_log=event_log))

    assert summary["done"] == 2
    assert [row.status for row in _rows(session_factory)] == ["processing", "done", "done"]
    with session_factory() as db:
        kinds = db.execute(select(EventLogEntry.kind).order_by(EventLogEntry.id)).scalars().all()
    assert kinds == ["queue_update_error", "queue_mark_error"]

    with session_factory.begin() as db:
        assert requeue_stale_processing(db, now=T0 + timedelta(minutes=16), older_than=timedelta(minutes=15)) == 1


def test_row_claimed_elsewhere_is_skipped(session_factory):
    _enqueue(session_factory, photo_update(1, user_id=501, message_id=1, date=T0))
    _enqueue(session_factory, photo_update(2, user_id=502, message_id=2, date=T0))
    second_id = _rows(session_factory)[1].id
    handled = []

    async def handler(payload):
        handled.append(payload["update_id"])
        if payload["update_id"] == 1:
            # another worker grabs the second row while we are busy
            with session_factory.begin() as db:
                assert claim(db, second_id, now=T0) is True

    summary = asyncio.run(process_batch(session_factory, handler, now=T0))
    assert summary["picked"] == 2
    assert summary["processed"] == 1
    assert summary["skipped"] == 1
    assert handled == [1]


def test_claim_is_exclusive(session_factory):
    _enqueue(session_factory, photo_update(1, user_id=501, message_id=1, date=T0))
    row_id = _rows(session_factory)[0].id

    with session_factory.begin() as db:
        assert claim(db, row_id, now=T0) is True
    with session_factory.begin() as db:
        assert claim(db, row_id, now=T0) is False


def test_failure_is_written_to_event_log(session_factory):
    event_log = EventLog(session_factory, clock=FrozenClock(T0))
    payload = callback_update(44, user_id=501, data="pending_confirm:12", message_id=9, date=T0)
    _enqueue(session_factory, payload)

    async def failing(payload):
        raise RuntimeError("db unavailable")

    asyncio.run(process_batch(session_factory, failing, now=T0, event_log=event_log))

    with session_factory() as db:
        entry = db.execute(select(EventLogEntry)).scalar_one()
    assert entry.level == "error"
    assert entry.kind == "queue_update_error"
    assert entry.update_id == 44
    assert entry.update_type == "callback_query"
    assert entry.chat_id == 501
    assert entry.from_id == 501
    assert entry.error_name == "RuntimeError"
    meta = json.loads(entry.meta_json)
    assert meta["callback_data_prefix"] == "pending_confirm:12"
    assert meta["attempts"] == 1


def test_extract_queue_meta_for_photo_message():
    update_type, meta = extract_queue_meta(photo_update(3, user_id=501, message_id=5, date=T0))
    assert update_type == "message"
    assert meta["top_keys"] == ["update_id", "message"]
    assert meta["has_photo"] is True
    assert meta["has_text"] is False
    assert meta["callback_data_prefix"] is None

    update_type, meta = extract_queue_meta({"update_id": 4, "callback_query": {"data": "x" * 64}})
    assert update_type == "callback_query"
    assert meta["callback_data_prefix"] == "x" * 20


def test_stale_processing_rows_are_requeued(session_factory):
    _enqueue(session_factory, photo_update(1, user_id=501, message_id=1, date=T0))
    row_id = _rows(session_factory)[0].id
    with session_factory.begin() as db:
        claim(db, row_id, now=T0)

    with session_factory.begin() as db:
        assert requeue_stale_processing(db, now=T0 + timedelta(minutes=10), older_than=timedelta(minutes=15)) == 0
    with session_factory.begin() as db:
        assert requeue_stale_processing(db, now=T0 + timedelta(minutes=16), older_than=timedelta(minutes=15)) == 1

    row = _rows(session_factory)[0]
    assert row.status == QueueStatus.PENDING.value
    assert row.next_run_at == T0 + timedelta(minutes=16)


def test_queue_health_counts_statuses(session_factory):
    _enqueue(session_factory, photo_update(1, user_id=501, message_id=1, date=T0))
    _enqueue(session_factory, photo_update(2, user_id=502, message_id=2, date=T0 + timedelta(minutes=1)),
             now=T0 + timedelta(minutes=1))

    async def handler(payload):
        if payload["update_id"] == 2:
            raise RuntimeError("nope")

    asyncio.run(process_batch(session_factory, handler, now=T0 + timedelta(minutes=1)))

    with session_factory() as db:
        health = get_queue_health(db, now=T0 + timedelta(minutes=3))
    assert health["counts"] == {"pending": 1, "processing": 0, "done": 1, "failed": 0}
    assert health["oldest_pending_age_seconds"] == 120
