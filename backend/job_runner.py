"""
Shared job runner for scheduled background jobs.
Used by server (scheduler), the cron endpoint and the CLI script.
Each run_* returns a dict with "message" (and optionally "count").
"""
import logging

logger = logging.getLogger(__name__)


async def run_notification_retry_worker(batch_limit=None):
    """Retry failed notifications whose retry_after has passed."""
    try:
        from services.retry_manager import RETRY_BATCH_LIMIT, get_retry_manager
        manager = get_retry_manager()
        result = await manager.process_due(batch_limit=batch_limit or RETRY_BATCH_LIMIT)
        logger.info(
            f"Notification retry worker completed: {result.processed} processed, "
            f"{result.succeeded} sent, {result.failed} failed"
        )
        return {
            "message": f"Processed {result.processed} notification retries",
            "count": result.processed,
            **result.to_dict(),
        }
    except Exception as e:
        logger.error(f"Notification retry worker failed: {e}")
        raise


async def run_stale_notification_recovery():
    """Fail notifications stuck in pending after a crash (never auto-retried)."""
    try:
        from services.retry_manager import get_retry_manager
        recovered = await get_retry_manager().recover_stale_claims()
        logger.info(f"Stale notification recovery completed: {recovered} recovered")
        return {"message": f"Recovered {recovered} stale notifications", "count": recovered}
    except Exception as e:
        logger.error(f"Stale notification recovery failed: {e}")
        raise


# Map scheduler job id -> run function
JOB_RUNNERS = {
    "notification_retry_worker": run_notification_retry_worker,
    "stale_notification_recovery": run_stale_notification_recovery,
}
