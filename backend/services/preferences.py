"""
Customer notification preferences.

Transactional types (booking confirmations, status updates, payments) always
send. Marketing types need marketing_enabled, and reminder/retention types also
respect the per-channel toggles. A customer with no preferences row gets the
defaults, which allow everything.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

from database import database
from models import (
    AuditAction,
    CustomerNotificationPreferences,
    MARKETING_TYPES,
    NotificationChannel,
    TRANSACTIONAL_TYPES,
    utc_now,
)
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

# (notification type, channel) -> preference field that must be true
CHANNEL_TOGGLES = {
    ("appointment_reminder", NotificationChannel.EMAIL): "email_appointment_reminders",
    ("appointment_reminder", NotificationChannel.SMS): "sms_appointment_reminders",
    ("retention_reminder", NotificationChannel.EMAIL): "email_retention_reminders",
    ("retention_reminder", NotificationChannel.SMS): "sms_retention_reminders",
}

TOGGLE_REASONS = {
    "email_appointment_reminders": "customer_preference_email_reminders_disabled",
    "sms_appointment_reminders": "customer_preference_sms_reminders_disabled",
    "email_retention_reminders": "customer_preference_email_retention_disabled",
    "sms_retention_reminders": "customer_preference_sms_retention_disabled",
}

MARKETING_DISABLED_REASON = "customer_preference_marketing_disabled"


def is_transactional(notification_type: str) -> bool:
    return notification_type in TRANSACTIONAL_TYPES


def is_marketing(notification_type: str) -> bool:
    return notification_type in MARKETING_TYPES


def check_allowed(
    prefs: CustomerNotificationPreferences,
    notification_type: str,
    channel: NotificationChannel,
) -> Tuple[bool, Optional[str]]:
    """Pure decision over a loaded preferences object."""
    if is_transactional(notification_type):
        return True, None
    if is_marketing(notification_type) and not prefs.marketing_enabled:
        return False, MARKETING_DISABLED_REASON
    toggle = CHANNEL_TOGGLES.get((notification_type, NotificationChannel(channel)))
    if toggle and not getattr(prefs, toggle):
        return False, TOGGLE_REASONS[toggle]
    return True, None


class PreferenceSource(ABC):
    @abstractmethod
    async def is_allowed(
        self,
        customer_id: str,
        notification_type: str,
        channel: NotificationChannel,
    ) -> Tuple[bool, Optional[str]]:
        """Return (allowed, reason). reason is set only when not allowed."""
        pass


class MongoPreferenceSource(PreferenceSource):
    """Reads customer_preferences; missing rows mean defaults (all enabled)."""

    async def get(self, customer_id: str) -> CustomerNotificationPreferences:
        db = database.get_db()
        doc = await db.customer_preferences.find_one({"customer_id": customer_id}, {"_id": 0})
        if not doc:
            return CustomerNotificationPreferences(customer_id=customer_id)
        return CustomerNotificationPreferences(**doc)

    async def is_allowed(
        self,
        customer_id: str,
        notification_type: str,
        channel: NotificationChannel,
    ) -> Tuple[bool, Optional[str]]:
        if is_transactional(notification_type):
            return True, None
        prefs = await self.get(customer_id)
        return check_allowed(prefs, notification_type, channel)

    async def update(self, customer_id: str, changes: Dict[str, Any]) -> CustomerNotificationPreferences:
        allowed_fields = set(CustomerNotificationPreferences.model_fields) - {"customer_id", "updated_at"}
        fields = {k: bool(v) for k, v in changes.items() if k in allowed_fields}
        if not fields:
            raise ValueError("No preference fields supplied")
        db = database.get_db()
        await db.customer_preferences.update_one(
            {"customer_id": customer_id},
            {"$set": {**fields, "customer_id": customer_id, "updated_at": utc_now()}},
            upsert=True,
        )
        await create_audit_log(
            action=AuditAction.CUSTOMER_PREFERENCES_UPDATED,
            customer_id=customer_id,
            resource_type="customer_preferences",
            resource_id=customer_id,
            metadata={"changes": fields},
        )
        logger.info(f"Notification preferences updated for customer {customer_id}: {sorted(fields)}")
        return await self.get(customer_id)

    async def disable_marketing(self, customer_id: str) -> CustomerNotificationPreferences:
        return await self.update(customer_id, {"marketing_enabled": False})

    async def disable_channel(
        self,
        customer_id: str,
        notification_type: str,
        channel: NotificationChannel,
    ) -> CustomerNotificationPreferences:
        """Unsubscribe link handler for reminder / retention messages."""
        toggle = CHANNEL_TOGGLES.get((notification_type, NotificationChannel(channel)))
        if not toggle:
            raise ValueError(f"No per-channel preference for {notification_type}/{channel}")
        return await self.update(customer_id, {toggle: False})
