"""
Per-notification-type settings (channel toggles, retry budget) with a TTL cache.

A missing settings row is not an error: the type falls back to the defaults
(both channels on, 2 retries, delays [30, 300]). Writes made through update()
invalidate the cached entry; writes made elsewhere are picked up once the TTL expires.
"""
import logging
import os
import time
from typing import Any, Callable, Dict, Optional, Tuple

from database import database
from models import AuditAction, NotificationSettings, utc_now
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

SETTINGS_CACHE_TTL_SECONDS = float(os.getenv("NOTIFICATION_SETTINGS_CACHE_TTL_SECONDS", "60"))

UPDATABLE_FIELDS = ("email_enabled", "sms_enabled", "max_retries", "retry_delays_seconds")


class SettingsCache:
    def __init__(
        self,
        ttl_seconds: float = SETTINGS_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[NotificationSettings, float]] = {}

    async def get(self, notification_type: str) -> NotificationSettings:
        entry = self._entries.get(notification_type)
        now = self._clock()
        if entry and now - entry[1] < self._ttl:
            return entry[0]

        db = database.get_db()
        doc = await db.notification_settings.find_one(
            {"notification_type": notification_type},
            {"_id": 0},
        )
        if doc:
            settings = NotificationSettings(**doc)
        else:
            logger.debug(f"No settings for {notification_type}; using defaults")
            settings = NotificationSettings(notification_type=notification_type)
        self._entries[notification_type] = (settings, now)
        return settings

    def invalidate(self, notification_type: Optional[str] = None) -> None:
        if notification_type is None:
            self._entries.clear()
        else:
            self._entries.pop(notification_type, None)

    async def update(
        self,
        notification_type: str,
        changes: Dict[str, Any],
        actor_id: Optional[str] = None,
    ) -> NotificationSettings:
        """Persist a partial settings change and drop the cached copy."""
        fields = {k: v for k, v in changes.items() if k in UPDATABLE_FIELDS}
        if not fields:
            raise ValueError("No updatable settings fields supplied")
        if "max_retries" in fields and int(fields["max_retries"]) < 0:
            raise ValueError("max_retries must be >= 0")
        if "retry_delays_seconds" in fields and any(int(d) < 0 for d in fields["retry_delays_seconds"]):
            raise ValueError("retry_delays_seconds must be non-negative")

        before = await self.get(notification_type)
        db = database.get_db()
        await db.notification_settings.update_one(
            {"notification_type": notification_type},
            {"$set": {**fields, "notification_type": notification_type, "updated_at": utc_now()}},
            upsert=True,
        )
        self.invalidate(notification_type)
        after = await self.get(notification_type)

        await create_audit_log(
            action=AuditAction.NOTIFICATION_SETTINGS_UPDATED,
            actor_id=actor_id,
            resource_type="notification_settings",
            resource_id=notification_type,
            before_state=before.model_dump(include=set(UPDATABLE_FIELDS)),
            after_state=after.model_dump(include=set(UPDATABLE_FIELDS)),
        )
        return after
