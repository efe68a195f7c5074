import argparse
import asyncio
import sys
import time
from pathlib import Path

import structlog

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.config import settings  # noqa: E402
from app.container import AppContainer, build_container  # noqa: E402
from app.core.observability import setup_logging  # noqa: E402
from app.tasks import run_process_queue_once, run_tick  # noqa: E402
from app.update_queue import enqueue  # noqa: E402

logger = structlog.get_logger("shiftbot.worker")


async def poll_telegram_once(container: AppContainer, offset: int | None, timeout: int) -> int | None:
    """Long-polls getUpdates into the queue; returns the next offset."""
    result = await container.telegram.get_updates(offset=offset, timeout=timeout)
    if not result.ok:
        logger.warning("get_updates_failed", reason=result.reason)
        return offset

    updates = result.result or []
    queued = 0
    with container.session_factory.begin() as db:
        for update in updates:
            update_id = update.get("update_id")
            if not isinstance(update_id, int):
                continue
            if enqueue(db, update_id, update, now=container.clock.now()):
                queued += 1
            offset = max(offset or 0, update_id + 1)
    if updates:
        logger.info("telegram_updates_polled", received=len(updates), queued=queued)
    return offset


async def process_once(container: AppContainer, batch_size: int) -> int:
    summary = await run_process_queue_once(container, limit=batch_size)
    return int(summary["processed"])


async def run(args) -> int:
    container = build_container(settings)
    offset = None
    last_tick = 0.0
    try:
        if args.poll_telegram:
            drop = await container.telegram.delete_webhook(drop_pending_updates=False)
            if not drop.ok:
                logger.warning("delete_webhook_failed", reason=drop.reason)

        while True:
            if args.poll_telegram:
                poll_timeout = 0 if args.once else min(args.poll_timeout, max(0, int(settings.TELEGRAM_TIMEOUT_SECONDS) - 5))
                offset = await poll_telegram_once(container, offset, timeout=poll_timeout)

            processed = await process_once(container, batch_size=max(1, args.batch_size))

            if args.tick_seconds > 0 and time.monotonic() - last_tick >= args.tick_seconds:
                tick = await run_tick(container, "regular")
                logger.info("worker_tick", **{k: v for k, v in tick.items() if k != "ok"})
                last_tick = time.monotonic()

            if args.once:
                break
            if processed == 0 and not args.poll_telegram:
                await asyncio.sleep(max(0.2, float(args.poll_seconds)))
    finally:
        await container.aclose()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="ShiftBot update queue worker")
    parser.add_argument("--batch-size", type=int, default=settings.TICK_MAX_QUEUE, help="Updates claimed per pass")
    parser.add_argument("--poll-seconds", type=float, default=2.0, help="Sleep when the queue is empty")
    parser.add_argument("--poll-telegram", action="store_true", help="Use getUpdates instead of the webhook")
    parser.add_argument("--poll-timeout", type=int, default=25, help="getUpdates long-poll timeout, capped below TELEGRAM_TIMEOUT_SECONDS")
    parser.add_argument("--tick-seconds", type=float, default=60.0, help="Run expire/auto-close every N seconds (0 = off)")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()

    setup_logging(settings.LOG_LEVEL)
    return asyncio.run(run(args))


if __name__ == "__main__":
    raise SystemExit(main())
