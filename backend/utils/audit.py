from database import database
from models import AuditLog, AuditAction, UserRole
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)

def calculate_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Fields changed between two snapshots, as {"added", "removed", "changed"}.

    Empty categories are omitted.
    """
    if not before and not after:
        return {}

    if not before:
        return {"added": after}

    if not after:
        return {"removed": before}

    diff = {"added": {}, "removed": {}, "changed": {}}
    for key in set(before) | set(after):
        if key not in before:
            diff["added"][key] = after[key]
        elif key not in after:
            diff["removed"][key] = before[key]
        elif before[key] != after[key]:
            diff["changed"][key] = {"from": before[key], "to": after[key]}

    return {k: v for k, v in diff.items() if v}

async def create_audit_log(
    action: AuditAction,
    actor_role: Optional[UserRole] = None,
    actor_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    reason_code: Optional[str] = None,
) -> str:
    """Write an audit_logs entry. Never raises: delivery must not fail because auditing did.

    Args:
        action: The audit action type
        actor_role: Role of whoever triggered the action (admin, system job)
        actor_id: ID of the admin, when there is one
        customer_id: Customer the notification concerns
        resource_type: e.g. 'notification_log', 'notification_settings'
        resource_id: ID of the specific resource
        before_state / after_state: snapshots; a diff is stored in metadata when both are given
        metadata: Additional metadata
        reason_code: Optional machine-readable reason
    """
    try:
        db = database.get_db()

        enriched_metadata = dict(metadata) if metadata else {}
        if before_state and after_state:
            diff = calculate_diff(before_state, after_state)
            if diff:
                enriched_metadata["diff"] = diff

        audit_log = AuditLog(
            action=action,
            actor_role=actor_role,
            actor_id=actor_id,
            customer_id=customer_id,
            resource_type=resource_type,
            resource_id=resource_id,
            before_state=before_state,
            after_state=after_state,
            metadata=enriched_metadata or None,
            reason_code=reason_code,
        )

        doc = audit_log.model_dump()
        doc["timestamp"] = doc["timestamp"].isoformat() if isinstance(doc["timestamp"], datetime) else doc["timestamp"]

        await db.audit_logs.insert_one(doc)
        logger.info(f"Audit log created: {audit_log.action}")
        return audit_log.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log: {e}")
        return ""

async def get_audit_logs_for_resource(
    resource_type: str,
    resource_id: str,
    limit: int = 50
) -> List[Dict[str, Any]]:
    """Audit trail for one resource, newest first."""
    try:
        db = database.get_db()
        cursor = db.audit_logs.find(
            {"resource_type": resource_type, "resource_id": resource_id},
            {"_id": 0}
        ).sort("timestamp", -1).limit(limit)

        return await cursor.to_list(length=limit)
    except Exception as e:
        logger.error(f"Failed to get audit logs for resource: {e}")
        return []
