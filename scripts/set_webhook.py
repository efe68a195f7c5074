import argparse
import sys
from pathlib import Path

import requests

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.config import settings  # noqa: E402


def _api_url(method: str) -> str:
    return f"{settings.TELEGRAM_API_BASE_URL}/bot{settings.TELEGRAM_BOT_TOKEN}/{method}"


def webhook_url() -> str:
    return f"{settings.PUBLIC_BASE_URL}/telegram/webhook/{settings.WEBHOOK_SECRET}"


def set_webhook(drop_pending: bool) -> dict:
    payload = {
        "url": webhook_url(),
        "allowed_updates": ["message", "callback_query"],
        "drop_pending_updates": drop_pending,
    }
    if settings.TELEGRAM_WEBHOOK_SECRET_TOKEN:
        payload["secret_token"] = settings.TELEGRAM_WEBHOOK_SECRET_TOKEN
    response = requests.post(_api_url("setWebhook"), json=payload, timeout=15)
    response.raise_for_status()
    return response.json()


def delete_webhook(drop_pending: bool) -> dict:
    response = requests.post(_api_url("deleteWebhook"), json={"drop_pending_updates": drop_pending}, timeout=15)
    response.raise_for_status()
    return response.json()


def main() -> int:
    parser = argparse.ArgumentParser(description="Register or remove the Telegram webhook")
    parser.add_argument("--delete", action="store_true", help="Remove the webhook instead of setting it")
    parser.add_argument("--drop-pending", action="store_true", help="Ask Telegram to drop undelivered updates")
    args = parser.parse_args()

    missing = [
        name
        for name in ("TELEGRAM_BOT_TOKEN", "PUBLIC_BASE_URL", "WEBHOOK_SECRET")
        if not getattr(settings, name)
    ]
    if missing and not args.delete:
        print(f"Missing settings: {', '.join(missing)}")
        return 2

    result = delete_webhook(args.drop_pending) if args.delete else set_webhook(args.drop_pending)
    print(result)
    return 0 if result.get("ok") else 1


if __name__ == "__main__":
    raise SystemExit(main())
