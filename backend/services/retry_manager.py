"""
Retry sweep for transiently failed notifications.

process_due() picks failed rows whose retry_after has passed and that still
have budget, claims each one atomically just before sending, and re-runs it
through the orchestrator against the same log row.

The claim (find_one_and_update failed -> pending) is what makes overlapping
sweeps safe: whichever sweep flips the row first sends it; the other sees
None and skips. A claimed row also stops matching the due query, so
running the sweep twice in a row does not send anything twice.
"""
import asyncio
import logging
import os
import random
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from models import AuditAction, DeliveryOutcome, UserRole, utc_now
from services.notification_log import NotificationLog, notification_log
from services.notification_orchestrator import (
    NotificationOrchestrator,
    RetryNotDispatchedError,
    get_notification_orchestrator,
    request_from_log,
)
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

RETRY_BATCH_LIMIT = int(os.getenv("NOTIFICATION_RETRY_BATCH_LIMIT", "100"))
RETRY_BUDGET_SECONDS = float(os.getenv("NOTIFICATION_RETRY_BUDGET_SECONDS", "240"))
RETRY_CONCURRENCY = int(os.getenv("NOTIFICATION_RETRY_CONCURRENCY", "5"))
RETRY_STALE_MINUTES = int(os.getenv("NOTIFICATION_RETRY_STALE_MINUTES", "15"))
# Pause before each dispatch so a large backlog does not hit the provider at once
RETRY_JITTER_MAX_SECONDS = float(os.getenv("NOTIFICATION_RETRY_JITTER_MAX_SECONDS", "1.0"))


@dataclass
class RetrySweepResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors": list(self.errors),
        }


class RetryManager:
    def __init__(
        self,
        orchestrator: NotificationOrchestrator,
        log: Optional[NotificationLog] = None,
        concurrency: int = RETRY_CONCURRENCY,
        budget_seconds: float = RETRY_BUDGET_SECONDS,
        jitter_max_seconds: float = RETRY_JITTER_MAX_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        uniform: Callable[[float, float], float] = random.uniform,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.orchestrator = orchestrator
        self.log = log or notification_log
        self.concurrency = max(concurrency, 1)
        self.budget_seconds = budget_seconds
        self.jitter_max_seconds = jitter_max_seconds
        self._sleep = sleep
        self._uniform = uniform
        self._clock = clock

    async def process_due(
        self,
        now: Optional[datetime] = None,
        batch_limit: int = RETRY_BATCH_LIMIT,
    ) -> RetrySweepResult:
        """
        Retry up to batch_limit due notifications. Rows for the same recipient and
        type go out one after another; different groups run concurrently. Once
        the wall-clock budget is spent no new rows are claimed; they stay due
        for the next run.
        """
        now = now or utc_now()
        sweep_id = str(uuid.uuid4())
        deadline = self._clock() + self.budget_seconds
        result = RetrySweepResult()

        candidates = await self.log.find_due_retries(now, limit=batch_limit)
        if not candidates:
            return result
        logger.info(f"Retry sweep {sweep_id}: {len(candidates)} due notification(s)")

        groups: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}
        for row in candidates:
            groups.setdefault((row.get("recipient"), row.get("type")), []).append(row)

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _run_group(rows: List[Dict[str, Any]]) -> None:
            async with semaphore:
                for row in rows:
                    if self._clock() >= deadline:
                        logger.warning(f"Retry sweep {sweep_id}: time budget spent; deferring remaining rows")
                        return
                    await self._retry_one(row, sweep_id, now, result)

        await asyncio.gather(*(_run_group(rows) for rows in groups.values()))

        logger.info(
            f"Retry sweep {sweep_id} done: processed={result.processed} "
            f"succeeded={result.succeeded} failed={result.failed} errors={len(result.errors)}"
        )
        return result

    async def _retry_one(
        self,
        row: Dict[str, Any],
        sweep_id: str,
        now: datetime,
        result: RetrySweepResult,
    ) -> None:
        log_id = row["log_id"]
        try:
            if self.jitter_max_seconds > 0:
                await self._sleep(self._uniform(0, self.jitter_max_seconds))

            claimed = await self.log.claim_for_retry(log_id, sweep_id, now)
            if not claimed:
                logger.info(f"Retry sweep {sweep_id}: {log_id} already claimed elsewhere")
                return

            send_result = await self.orchestrator.send(request_from_log(claimed), attempt_id=log_id)
        except RetryNotDispatchedError as e:
            logger.error(f"Retry of notification {log_id} not dispatched: {e}; releasing claim")
            result.errors.append(f"{log_id}: {e}")
            await self._release_claim(log_id, sweep_id, row.get("retry_after"))
            return
        except Exception as e:
            logger.error(f"Retry of notification {log_id} errored: {e}")
            result.errors.append(f"{log_id}: {e}")
            return

        if send_result.outcome == DeliveryOutcome.CLAIM_LOST:
            return
        result.processed += 1
        if send_result.success:
            result.succeeded += 1
        else:
            result.failed += 1

    async def _release_claim(self, log_id: str, sweep_id: str, retry_after: Optional[datetime]) -> None:
        try:
            await self.log.release_claim(log_id, sweep_id, retry_after)
        except Exception as e:
            # Row stays pending; stale recovery closes it out
            logger.error(f"Could not release claim on notification {log_id}: {e}")

    async def recover_stale_claims(
        self,
        now: Optional[datetime] = None,
        stale_minutes: int = RETRY_STALE_MINUTES,
    ) -> int:
        """Fail rows left pending by a crashed send or sweep. They are not retried."""
        now = now or utc_now()
        recovered = await self.log.recover_stale_claims(now - timedelta(minutes=stale_minutes), now)
        if recovered:
            await create_audit_log(
                action=AuditAction.NOTIFICATION_CLAIM_RECOVERED,
                actor_role=UserRole.ROLE_SYSTEM,
                resource_type="notification_log",
                metadata={"recovered": recovered, "stale_minutes": stale_minutes},
            )
        return recovered


def get_retry_manager() -> RetryManager:
    return RetryManager(get_notification_orchestrator())
