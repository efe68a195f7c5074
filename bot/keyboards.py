from telegram import InlineKeyboardButton, InlineKeyboardMarkup

CONFIRM_PREFIX = "pending_confirm:"
CANCEL_PREFIX = "pending_cancel:"


def pending_action_kb(pending_action_id: int) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        [
            [
                InlineKeyboardButton("✅ Confirm", callback_data=f"{CONFIRM_PREFIX}{pending_action_id}"),
                InlineKeyboardButton("❌ Cancel", callback_data=f"{CANCEL_PREFIX}{pending_action_id}"),
            ]
        ]
    )


def parse_pending_id(data: str) -> int:
    _, _, raw = (data or "").partition(":")
    try:
        return max(0, int(raw))
    except ValueError:
        return 0
