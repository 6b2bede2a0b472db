"""
Run one notification retry sweep outside the API process.

Each sweep claims rows atomically, so this is safe to run alongside the
scheduler inside server.py.

Usage (from backend/):
  python -m scripts.run_notification_retry_sweep
  python -m scripts.run_notification_retry_sweep --limit 20
  python -m scripts.run_notification_retry_sweep --recover-stale

Production (cron example):
  */5 * * * * cd /app/backend && python -m scripts.run_notification_retry_sweep --limit 100
"""
import asyncio
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from database import database
from job_runner import run_notification_retry_worker, run_stale_notification_recovery


def main():
    parser = argparse.ArgumentParser(description="Retry due failed notifications")
    parser.add_argument("--limit", type=int, default=100, help="Max notifications per sweep (default 100)")
    parser.add_argument(
        "--recover-stale",
        action="store_true",
        help="Also fail rows stuck in pending after a crash",
    )
    args = parser.parse_args()

    async def _():
        await database.connect()
        try:
            if args.recover_stale:
                recovered = await run_stale_notification_recovery()
                print(recovered["message"])
            summary = await run_notification_retry_worker(batch_limit=args.limit)
            print(
                f"Processed {summary['processed']} notification(s): "
                f"{summary['succeeded']} sent, {summary['failed']} failed, {len(summary['errors'])} error(s)"
            )
            return 1 if summary["errors"] else 0
        finally:
            await database.close()

    return asyncio.run(_())


if __name__ == "__main__":
    sys.exit(main())
