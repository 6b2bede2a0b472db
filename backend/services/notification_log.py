"""
Notification log: one notifications_log row per delivery attempt.

Every status change goes through update(), which only matches the row while it
is still in the expected status. That conditional write is the only lock: two
workers racing on the same row cannot both move it out of a status.
Store errors are never swallowed here; an unlogged send is worse than a failed one.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument

from database import database
from models import NotificationAttempt, NotificationStatus

logger = logging.getLogger(__name__)

COLLECTION = "notifications_log"

STALE_CLAIM_ERROR = "delivery outcome unknown"


def _collection():
    return database.get_db()[COLLECTION]


def _status_value(status) -> str:
    return status.value if isinstance(status, NotificationStatus) else status


class NotificationLog:
    async def create(self, attempt: NotificationAttempt) -> str:
        doc = attempt.model_dump()
        await _collection().insert_one(doc)
        return attempt.log_id

    async def get(self, log_id: str) -> Optional[Dict[str, Any]]:
        return await _collection().find_one({"log_id": log_id}, {"_id": 0})

    async def update(
        self,
        log_id: str,
        expected_status: NotificationStatus,
        fields: Dict[str, Any],
    ) -> bool:
        """
        Set fields on the row only if it is still in expected_status.
        Returns False when another writer moved the row first.
        """
        result = await _collection().update_one(
            {"log_id": log_id, "status": _status_value(expected_status)},
            {"$set": {k: _status_value(v) for k, v in fields.items()}},
        )
        if result.matched_count == 0:
            logger.warning(
                f"Notification log {log_id} not updated: no longer {_status_value(expected_status)}"
            )
            return False
        return True

    async def find_due_retries(self, now: datetime, limit: int = 100) -> List[Dict[str, Any]]:
        """
        Failed rows whose retry_after has passed, oldest first. retry_count was
        already bumped when the retry was scheduled, so the last allowed retry
        sits at retry_count == max_retries.
        """
        cursor = _collection().find(
            {
                "status": NotificationStatus.FAILED.value,
                "retry_after": {"$ne": None, "$lte": now},
                "is_test": {"$ne": True},
                "$expr": {"$lte": ["$retry_count", "$max_retries"]},
            },
            {"_id": 0},
        ).sort("retry_after", 1).limit(limit)
        return await cursor.to_list(limit)

    async def claim_for_retry(self, log_id: str, owner: str, now: datetime) -> Optional[Dict[str, Any]]:
        """
        Atomically move a due failed row back to pending for one sweep.
        Returns the claimed row, or None if another sweep got there first.
        """
        return await _collection().find_one_and_update(
            {
                "log_id": log_id,
                "status": NotificationStatus.FAILED.value,
                "retry_after": {"$ne": None, "$lte": now},
                "$expr": {"$lte": ["$retry_count", "$max_retries"]},
            },
            {
                "$set": {
                    "status": NotificationStatus.PENDING.value,
                    "retry_after": None,
                    "claimed_at": now,
                    "claim_owner": owner,
                }
            },
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )

    async def release_claim(self, log_id: str, owner: str, retry_after: Optional[datetime]) -> bool:
        """
        Hand a claimed row back to the sweep when its retry never reached the
        provider. Only the sweep that holds the claim may release it.
        """
        result = await _collection().update_one(
            {
                "log_id": log_id,
                "status": NotificationStatus.PENDING.value,
                "claim_owner": owner,
            },
            {"$set": {"status": NotificationStatus.FAILED.value, "retry_after": retry_after}},
        )
        return result.matched_count > 0

    async def mark_resent(self, log_id: str, new_log_id: str, now: datetime) -> None:
        """Link an original row and the manual resend that replaced it. Statuses are untouched."""
        await _collection().update_one(
            {"log_id": log_id},
            {"$set": {"resent_as": new_log_id, "resent_at": now}},
        )
        await _collection().update_one(
            {"log_id": new_log_id},
            {"$set": {"resent_from": log_id}},
        )

    async def recover_stale_claims(self, stale_before: datetime, now: datetime) -> int:
        """
        Fail rows stuck in pending since before stale_before (a worker died
        mid-send). The provider may or may not have delivered, so these are
        never retried automatically.
        """
        cursor = _collection().find(
            {
                "status": NotificationStatus.PENDING.value,
                "$or": [
                    {"claimed_at": {"$lte": stale_before}},
                    {"claimed_at": {"$exists": False}, "created_at": {"$lte": stale_before}},
                ],
            },
            {"_id": 0, "log_id": 1},
        )
        rows = await cursor.to_list(500)
        recovered = 0
        for row in rows:
            updated = await self.update(
                row["log_id"],
                NotificationStatus.PENDING,
                {
                    "status": NotificationStatus.FAILED,
                    "error_message": STALE_CLAIM_ERROR,
                    "retry_after": None,
                    "failed_at": now,
                },
            )
            if updated:
                recovered += 1
        if recovered:
            logger.warning(f"Recovered {recovered} stale pending notification(s)")
        return recovered


notification_log = NotificationLog()
