import asyncio
from datetime import timedelta

from sqlalchemy import select

from app import employees
from app.models import ClosedReason, Employee, PendingAction, Shift, ShiftViolation, ViolationType
from app.tasks import run_process_queue_once, run_tick
from app.update_queue import enqueue
from bot import messages
from bot.keyboards import CANCEL_PREFIX, CONFIRM_PREFIX, parse_pending_id
from tests.support import BOSS_CHAT_ID, T0, callback_update, photo_update

EMPLOYEE = 501


def _deliver(container, payload):
    with container.session_factory.begin() as db:
        enqueue(db, payload["update_id"], payload, now=container.clock.now())
    return asyncio.run(run_process_queue_once(container))


def _last_prompt(fake_telegram, chat_id):
    prompt = [p for p in fake_telegram.sent_messages(chat_id) if "reply_markup" in p][-1]
    buttons = prompt["reply_markup"]["inline_keyboard"][0]
    return prompt, buttons[0]["callback_data"], buttons[1]["callback_data"]


def _shift_of(container, user_id):
    with container.session_factory() as db:
        employee = employees.find_by_telegram_user_id(db, user_id)
        return db.execute(select(Shift).where(Shift.employee_id == employee.id)).scalars().all()


def _violations(container, shift_id):
    with container.session_factory() as db:
        return db.execute(select(ShiftViolation.type).where(ShiftViolation.shift_id == shift_id)).scalars().all()


def test_photo_confirm_start_then_end(container, clock, fake_telegram):
    summary = _deliver(container, photo_update(1, user_id=EMPLOYEE, message_id=10, date=T0))
    assert summary["done"] == 1

    prompt, confirm_data, cancel_data = _last_prompt(fake_telegram, EMPLOYEE)
    assert prompt["text"] == messages.CONFIRM_START_PROMPT
    assert prompt["reply_to_message_id"] == 10
    assert confirm_data.startswith(CONFIRM_PREFIX)
    assert cancel_data.startswith(CANCEL_PREFIX)
    assert parse_pending_id(confirm_data) == parse_pending_id(cancel_data)

    clock.set(T0 + timedelta(seconds=20))
    _deliver(container, callback_update(2, user_id=EMPLOYEE, data=confirm_data, message_id=11, date=T0))

    assert "answerCallbackQuery" in fake_telegram.methods()
    assert "editMessageReplyMarkup" in fake_telegram.methods()
    # 09:00 in Bishkek
    assert fake_telegram.sent_messages(EMPLOYEE)[-1]["text"] == messages.shift_started("09:00")
    boss = fake_telegram.sent_messages(BOSS_CHAT_ID)
    assert boss[-1]["text"] == messages.boss_shift_started("Aigul Toktosunova", "09:00")

    end_at = T0 + timedelta(hours=9)
    clock.set(end_at)
    _deliver(container, photo_update(3, user_id=EMPLOYEE, message_id=12, date=end_at))
    prompt, confirm_data, _ = _last_prompt(fake_telegram, EMPLOYEE)
    assert prompt["text"] == messages.CONFIRM_END_PROMPT

    clock.set(end_at + timedelta(seconds=30))
    _deliver(container, callback_update(4, user_id=EMPLOYEE, data=confirm_data, message_id=13, date=end_at))

    (shift,) = _shift_of(container, EMPLOYEE)
    assert shift.start_time == T0
    assert shift.end_time == end_at
    assert shift.duration_minutes == 540
    assert shift.closed_reason == ClosedReason.BY_PHOTO.value
    assert _violations(container, shift.id) == []
    assert fake_telegram.sent_messages(EMPLOYEE)[-1]["text"] == messages.shift_closed("18:00", "9h")
    assert fake_telegram.sent_messages(BOSS_CHAT_ID)[-1]["text"] == messages.boss_shift_closed("Aigul Toktosunova", "9h")


def test_forgotten_shift_is_closed_by_tick(container, clock, fake_telegram):
    _deliver(container, photo_update(1, user_id=EMPLOYEE, message_id=10, date=T0))
    _, confirm_data, _ = _last_prompt(fake_telegram, EMPLOYEE)
    clock.set(T0 + timedelta(seconds=10))
    _deliver(container, callback_update(2, user_id=EMPLOYEE, data=confirm_data, message_id=11, date=T0))

    clock.set(T0 + timedelta(hours=12, minutes=1))
    result = asyncio.run(run_tick(container, "regular"))
    assert result["auto_closed"] == 1

    (shift,) = _shift_of(container, EMPLOYEE)
    assert shift.closed_reason == ClosedReason.AUTO_TIMEOUT.value
    assert shift.duration_minutes == 720
    assert shift.end_time == T0 + timedelta(hours=12)
    assert _violations(container, shift.id) == [ViolationType.NOT_CLOSED_IN_TIME.value]
    assert fake_telegram.sent_messages(EMPLOYEE)[-1]["text"] == messages.auto_closed_employee(12)


def test_redelivered_photo_prompts_once(container, fake_telegram):
    payload = photo_update(1, user_id=EMPLOYEE, message_id=10, date=T0)

    asyncio.run(container.handle_update(payload))
    asyncio.run(container.handle_update(payload))
    _deliver(container, payload)
    _deliver(container, payload)

    with container.session_factory() as db:
        assert len(db.execute(select(PendingAction)).scalars().all()) == 1
    prompts = [p for p in fake_telegram.sent_messages(EMPLOYEE) if "reply_markup" in p]
    assert len(prompts) == 1


def test_someone_else_pressing_the_button(container, fake_telegram):
    _deliver(container, photo_update(1, user_id=EMPLOYEE, message_id=10, date=T0))
    _, confirm_data, _ = _last_prompt(fake_telegram, EMPLOYEE)

    _deliver(container, callback_update(2, user_id=999, data=confirm_data, message_id=11, date=T0, chat_id=EMPLOYEE))

    assert fake_telegram.sent_messages(EMPLOYEE)[-1]["text"] == messages.NO_ACCESS
    assert "editMessageReplyMarkup" not in fake_telegram.methods()
    with container.session_factory() as db:
        assert db.execute(select(Shift)).scalars().all() == []
        assert db.execute(select(PendingAction)).scalar_one().status == "PENDING"


def test_cancel_button(container, clock, fake_telegram):
    _deliver(container, photo_update(1, user_id=EMPLOYEE, message_id=10, date=T0))
    _, _, cancel_data = _last_prompt(fake_telegram, EMPLOYEE)
    clock.set(T0 + timedelta(seconds=5))

    _deliver(container, callback_update(2, user_id=EMPLOYEE, data=cancel_data, message_id=11, date=T0))

    assert fake_telegram.sent_messages(EMPLOYEE)[-1]["text"] == messages.PENDING_CANCELLED
    with container.session_factory() as db:
        assert db.execute(select(PendingAction)).scalar_one().status == "CANCELLED"


def test_admin_photo_is_not_tracked(container, fake_telegram):
    with container.session_factory.begin() as db:
        employees.add_admin(db, 900)

    _deliver(container, photo_update(1, user_id=900, message_id=10, date=T0))

    assert fake_telegram.sent_messages(900)[-1]["text"] == messages.ADMIN_PHOTO_IGNORED
    with container.session_factory() as db:
        assert db.execute(select(PendingAction)).scalars().all() == []


def test_inactive_employee_is_turned_away(container, fake_telegram):
    _deliver(container, photo_update(1, user_id=EMPLOYEE, message_id=10, date=T0))
    with container.session_factory.begin() as db:
        db.execute(select(Employee)).scalar_one().is_active = False

    _deliver(container, photo_update(2, user_id=EMPLOYEE, message_id=11, date=T0 + timedelta(minutes=1)))
    assert fake_telegram.sent_messages(EMPLOYEE)[-1]["text"] == messages.NOT_EMPLOYEE


def test_failed_delivery_does_not_fail_the_update(container, fake_telegram):
    fake_telegram.fail("sendMessage", *[Exception("connection dropped") for _ in range(4)])

    summary = _deliver(container, photo_update(1, user_id=EMPLOYEE, message_id=10, date=T0))

    assert summary["done"] == 1
    with container.session_factory() as db:
        assert db.execute(select(PendingAction)).scalar_one().status == "PENDING"


def test_text_messages_are_ignored(container, fake_telegram):
    payload = {
        "update_id": 9,
        "message": {
            "message_id": 5,
            "date": 1772420400,
            "chat": {"id": EMPLOYEE, "type": "private"},
            "from": {"id": EMPLOYEE, "is_bot": False, "first_name": "Aigul"},
            "text": "hello",
        },
    }
    assert asyncio.run(container.handle_update(payload)) is False
    assert fake_telegram.calls == []
