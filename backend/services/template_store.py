"""
Read access to notification templates and their version history.

notification_templates holds the current version of each template;
notification_template_history keeps every saved version keyed by
(template_id, version) and is only ever appended to.
"""
import logging
from typing import List, Optional

from database import database
from models import NotificationChannel, NotificationTemplate, utc_now
from services.template_engine import validate_template

logger = logging.getLogger(__name__)


class TemplateValidationError(ValueError):
    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


class TemplateStore:
    async def get_active(self, notification_type: str, channel: NotificationChannel) -> Optional[NotificationTemplate]:
        db = database.get_db()
        doc = await db.notification_templates.find_one(
            {
                "trigger_event": notification_type,
                "channel": NotificationChannel(channel).value,
                "is_active": True,
            },
            {"_id": 0},
        )
        return NotificationTemplate(**doc) if doc else None

    async def get_by_id(self, template_id: str) -> Optional[NotificationTemplate]:
        db = database.get_db()
        doc = await db.notification_templates.find_one({"template_id": template_id}, {"_id": 0})
        return NotificationTemplate(**doc) if doc else None

    async def get_version(self, template_id: str, version: int) -> Optional[NotificationTemplate]:
        db = database.get_db()
        doc = await db.notification_template_history.find_one(
            {"template_id": template_id, "version": version},
            {"_id": 0},
        )
        return NotificationTemplate(**doc) if doc else None

    async def list_versions(self, template_id: str, limit: int = 50) -> List[dict]:
        db = database.get_db()
        cursor = db.notification_template_history.find(
            {"template_id": template_id},
            {"_id": 0},
        ).sort("version", -1).limit(limit)
        return await cursor.to_list(limit)

    async def save_version(self, template: NotificationTemplate, changed_by: Optional[str] = None) -> NotificationTemplate:
        """
        Store template as the next version: bump the version, replace the
        current row and append a history row. Rejects templates whose required
        variables are not referenced.
        """
        errors = validate_template(template)
        if errors:
            raise TemplateValidationError(errors)

        db = database.get_db()
        current = await db.notification_templates.find_one(
            {"template_id": template.template_id},
            {"_id": 0, "version": 1},
        )
        next_version = (current or {}).get("version", 0) + 1
        saved = template.model_copy(update={"version": next_version, "updated_at": utc_now()})
        doc = saved.model_dump(mode="json")
        doc["updated_at"] = saved.updated_at

        await db.notification_templates.update_one(
            {"template_id": saved.template_id},
            {"$set": doc},
            upsert=True,
        )
        await db.notification_template_history.insert_one({**doc, "changed_by": changed_by})
        logger.info(f"Template {saved.template_id} saved as version {next_version}")
        return saved

    async def rollback(self, template_id: str, version: int, changed_by: Optional[str] = None) -> NotificationTemplate:
        """Re-save an old version as the newest one; history is never rewritten."""
        previous = await self.get_version(template_id, version)
        if not previous:
            raise LookupError(f"Template {template_id} has no version {version}")
        return await self.save_version(previous, changed_by=changed_by)


template_store = TemplateStore()
