from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

# notification_type: (email_enabled, sms_enabled, max_retries, retry_delays_seconds)
DEFAULT_NOTIFICATION_SETTINGS = {
    "booking_confirmation": (True, True, 2, [30, 300]),
    "appointment_reminder": (False, True, 2, [30, 300]),
    "appointment_cancelled": (True, True, 1, [30]),
    "appointment_rescheduled": (True, True, 1, [30]),
    "status_checked_in": (False, True, 1, [30]),
    "status_in_progress": (False, True, 1, [30]),
    "status_ready": (False, True, 1, [30]),
    "status_completed": (False, True, 1, [30]),
    "report_card_ready": (True, True, 2, [30, 300]),
    "waitlist_added": (True, True, 1, [30]),
    "waitlist_available": (False, True, 2, [30, 300]),
    "retention_reminder": (True, True, 2, [30, 300]),
    "birthday_greeting": (True, False, 1, [300]),
    "review_request": (True, False, 1, [300]),
    "payment_success": (True, False, 1, [30]),
    "payment_failed": (True, False, 0, []),
    "payment_reminder": (True, False, 0, []),
    "refund_processed": (True, False, 1, [30]),
    "membership_activated": (True, False, 1, [30]),
    "membership_expiring": (True, False, 1, [300]),
    "membership_expired": (True, False, 1, [30]),
    "membership_cancelled": (True, False, 1, [30]),
    "admin_new_booking": (False, False, 1, [30]),
    "admin_cancellation": (False, False, 1, [30]),
    "admin_no_show": (False, False, 1, [30]),
}

DEFAULT_TEMPLATES = [
    {
        "template_id": "booking_confirmation_email",
        "name": "Booking Confirmation",
        "trigger_event": "booking_confirmation",
        "channel": "email",
        "subject_template": "Your appointment at {{business.name}} is confirmed",
        "html_template": (
            "<p>Hi {{customer_name}},</p>"
            "<p>{{pet_name}} is booked for {{service_name}} on {{appointment_date}} at {{appointment_time}}.</p>"
            "<p>{{business.name}} - {{business.address}} - {{business.phone}}</p>"
        ),
        "text_template": (
            "Hi {{customer_name}}, {{pet_name}} is booked for {{service_name}} on "
            "{{appointment_date}} at {{appointment_time}}. {{business.name}}, {{business.phone}}"
        ),
        "variables": [
            {"name": "customer_name", "required": True, "max_length": 50},
            {"name": "pet_name", "required": True, "max_length": 30},
            {"name": "service_name", "required": True, "max_length": 40},
            {"name": "appointment_date", "required": True, "max_length": 20},
            {"name": "appointment_time", "required": True, "max_length": 10},
        ],
    },
    {
        "template_id": "booking_confirmation_sms",
        "name": "Booking Confirmation SMS",
        "trigger_event": "booking_confirmation",
        "channel": "sms",
        "text_template": (
            "{{business.name}}: {{pet_name}} is booked {{appointment_date}} at {{appointment_time}}. "
            "Questions? {{business.phone}}"
        ),
        "variables": [
            {"name": "pet_name", "required": True, "max_length": 30},
            {"name": "appointment_date", "required": True, "max_length": 20},
            {"name": "appointment_time", "required": True, "max_length": 10},
        ],
    },
    {
        "template_id": "appointment_reminder_sms",
        "name": "Appointment Reminder SMS",
        "trigger_event": "appointment_reminder",
        "channel": "sms",
        "text_template": (
            "Reminder: {{pet_name}}'s grooming at {{business.name}} is tomorrow at {{appointment_time}}. "
            "Reply STOP to opt out."
        ),
        "variables": [
            {"name": "pet_name", "required": True, "max_length": 30},
            {"name": "appointment_time", "required": True, "max_length": 10},
        ],
    },
    {
        "template_id": "retention_reminder_email",
        "name": "Retention Reminder",
        "trigger_event": "retention_reminder",
        "channel": "email",
        "subject_template": "{{pet_name}} is due for a groom",
        "html_template": "<p>Hi {{customer_name}}, it has been {{weeks_since_last}} weeks since {{pet_name}}'s last visit. <a href=\"{{booking_url}}\">Book now</a></p>",
        "text_template": "Hi {{customer_name}}, it has been {{weeks_since_last}} weeks since {{pet_name}}'s last visit. Book: {{booking_url}}",
        "variables": [
            {"name": "customer_name", "required": True},
            {"name": "pet_name", "required": True},
            {"name": "weeks_since_last", "required": False},
            {"name": "booking_url", "required": True},
        ],
    },
    {
        "template_id": "retention_reminder_sms",
        "name": "Retention Reminder SMS",
        "trigger_event": "retention_reminder",
        "channel": "sms",
        "text_template": "{{business.name}}: {{pet_name}} is due for a groom! Book: {{booking_url}}",
        "variables": [
            {"name": "pet_name", "required": True, "max_length": 30},
            {"name": "booking_url", "required": True, "max_length": 23},
        ],
    },
    {
        "template_id": "status_ready_sms",
        "name": "Ready for Pickup SMS",
        "trigger_event": "status_ready",
        "channel": "sms",
        "text_template": "{{pet_name}} is ready for pickup at {{business.name}}!",
        "variables": [{"name": "pet_name", "required": True, "max_length": 30}],
    },
    {
        "template_id": "payment_failed_email",
        "name": "Payment Failed",
        "trigger_event": "payment_failed",
        "channel": "email",
        "subject_template": "Payment failed for your {{business.name}} membership",
        "text_template": "Hi {{customer_name}}, we could not charge {{amount}}. Update your card: {{payment_url}}",
        "variables": [
            {"name": "customer_name", "required": True},
            {"name": "amount", "required": True},
            {"name": "payment_url", "required": True},
        ],
    },
]

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            self.client = AsyncIOMotorClient(mongo_url, tz_aware=True)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes for the delivery engine."""
        try:
            # Notification log - retry sweep scans failed rows by retry_after
            await self.db.notifications_log.create_index("log_id", unique=True)
            await self.db.notifications_log.create_index([("status", 1), ("retry_after", 1)])
            await self.db.notifications_log.create_index([("status", 1), ("claimed_at", 1)])
            await self.db.notifications_log.create_index([("type", 1), ("created_at", -1)])
            await self.db.notifications_log.create_index([("customer_id", 1), ("created_at", -1)])
            await self.db.notifications_log.create_index("message_id", sparse=True)

            # Templates - one active template per (type, channel)
            await self.db.notification_templates.create_index("template_id", unique=True)
            await self.db.notification_templates.create_index([("trigger_event", 1), ("channel", 1), ("is_active", 1)])
            try:
                await self.db.notification_template_history.create_index(
                    [("template_id", 1), ("version", 1)],
                    unique=True
                )
            except Exception:
                pass  # Index may already exist with different options

            await self.db.notification_settings.create_index("notification_type", unique=True)
            await self.db.customer_preferences.create_index("customer_id", unique=True)

            await self.db.audit_logs.create_index([("resource_type", 1), ("resource_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])

            await self._seed_notification_settings()
            await self._seed_notification_templates()
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

    async def _seed_notification_settings(self):
        """Insert default per-type settings without overwriting admin changes."""
        for notification_type, (email, sms, max_retries, delays) in DEFAULT_NOTIFICATION_SETTINGS.items():
            await self.db.notification_settings.update_one(
                {"notification_type": notification_type},
                {"$setOnInsert": {
                    "notification_type": notification_type,
                    "email_enabled": email,
                    "sms_enabled": sms,
                    "max_retries": max_retries,
                    "retry_delays_seconds": delays,
                }},
                upsert=True,
            )
        logger.info("Notification settings seeded")

    async def _seed_notification_templates(self):
        """Seed starter templates (idempotent; existing versions are left alone)."""
        from datetime import datetime, timezone
        now = datetime.now(timezone.utc)
        for t in DEFAULT_TEMPLATES:
            doc = {
                "subject_template": None,
                "html_template": None,
                "is_active": True,
                "version": 1,
                "updated_at": now,
                **t,
            }
            result = await self.db.notification_templates.update_one(
                {"template_id": t["template_id"]},
                {"$setOnInsert": doc},
                upsert=True,
            )
            if result.upserted_id is not None:
                await self.db.notification_template_history.insert_one({**doc, "changed_by": "seed"})
        logger.info("Notification templates seeded")

# Global database instance
database = Database()
