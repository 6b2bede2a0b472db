"""
Notification Routes - cron retry trigger and admin delivery operations.

Cron: POST /api/cron/notifications/retry (Authorization: Bearer <CRON_SECRET>)
Admin: resend, bulk resend, log detail, settings, template preview/test/rollback.
"""
import logging
import os
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field, ValidationError

from job_runner import run_notification_retry_worker
from models import BulkResendRequest, NotificationChannel, RetrySweepResponse
from services.notification_orchestrator import get_notification_orchestrator
from services.template_store import TemplateValidationError
from utils.audit import get_audit_logs_for_resource

logger = logging.getLogger(__name__)

cron_router = APIRouter(prefix="/api/cron/notifications", tags=["cron-notifications"])
admin_router = APIRouter(prefix="/api/admin/notifications", tags=["admin-notifications"])

BULK_RESEND_LIMIT = 100
RETRY_SWEEP_MAX_LIMIT = 1000


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("Authorization", "")
    return auth_header.replace("Bearer ", "", 1).strip() if auth_header.startswith("Bearer ") else ""


def _token_ok(request: Request, env_name: str) -> bool:
    """When env_name is set, the Bearer token must match it."""
    configured = (os.getenv(env_name) or "").strip()
    if not configured:
        return True
    return _bearer_token(request) == configured


async def require_cron_secret(request: Request) -> None:
    if not _token_ok(request, "CRON_SECRET"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


async def require_admin_token(request: Request) -> Optional[str]:
    if not _token_ok(request, "ADMIN_API_TOKEN"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return request.headers.get("X-Admin-Id")


class SettingsUpdateRequest(BaseModel):
    email_enabled: Optional[bool] = None
    sms_enabled: Optional[bool] = None
    max_retries: Optional[int] = Field(default=None, ge=0, le=10)
    retry_delays_seconds: Optional[List[int]] = None


class PreviewRequest(BaseModel):
    sample_data: Dict[str, Any] = Field(default_factory=dict)


class TestSendRequest(BaseModel):
    recipient: str
    sample_data: Dict[str, str] = Field(default_factory=dict)


class RollbackRequest(BaseModel):
    version: int = Field(ge=1)


def _result_payload(result) -> Dict[str, Any]:
    return {
        "success": result.success,
        "outcome": result.outcome.value,
        "log_id": result.log_id,
        "provider_id": result.provider_id,
        "error": result.error,
    }


# ============================================
# CRON
# ============================================

@cron_router.post("/retry", response_model=RetrySweepResponse, dependencies=[Depends(require_cron_secret)])
async def trigger_retry_sweep(limit: Optional[int] = Query(None, ge=1, le=RETRY_SWEEP_MAX_LIMIT)):
    """Run one retry sweep. Safe to call while the scheduled sweep is running."""
    summary = await run_notification_retry_worker(batch_limit=limit)
    return RetrySweepResponse(
        processed=summary["processed"],
        succeeded=summary["succeeded"],
        failed=summary["failed"],
        errors=summary["errors"],
    )


# ============================================
# LOG
# ============================================

@admin_router.get("/log/{log_id}")
async def get_notification_log(log_id: str, admin_id: Optional[str] = Depends(require_admin_token)):
    """One log row plus its audit trail."""
    orchestrator = get_notification_orchestrator()
    row = await orchestrator.log.get(log_id)
    if not row:
        raise HTTPException(status_code=404, detail="Notification not found")
    row["audit"] = await get_audit_logs_for_resource("notification_log", log_id)
    return row


@admin_router.post("/log/{log_id}/resend")
async def resend_notification(log_id: str, admin_id: Optional[str] = Depends(require_admin_token)):
    """Resend as a new log row; the original stays as history."""
    orchestrator = get_notification_orchestrator()
    try:
        result = await orchestrator.resend(log_id, actor_id=admin_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="Notification not found")
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _result_payload(result)


@admin_router.post("/bulk-resend")
async def bulk_resend(body: BulkResendRequest, admin_id: Optional[str] = Depends(require_admin_token)):
    if not body.ids:
        raise HTTPException(status_code=400, detail="ids must not be empty")
    if len(body.ids) > BULK_RESEND_LIMIT:
        raise HTTPException(status_code=400, detail=f"At most {BULK_RESEND_LIMIT} ids per request")

    orchestrator = get_notification_orchestrator()
    total_resent = 0
    total_failed = 0
    errors: List[str] = []
    for log_id in body.ids:
        try:
            result = await orchestrator.resend(log_id, actor_id=admin_id)
        except (LookupError, ValueError) as e:
            total_failed += 1
            errors.append(f"{log_id}: {e}")
            continue
        if result.success:
            total_resent += 1
        else:
            total_failed += 1
            errors.append(f"{log_id}: {result.error}")
    logger.info(f"Bulk resend: {total_resent} resent, {total_failed} failed")
    return {
        "success": total_failed == 0,
        "total_resent": total_resent,
        "total_failed": total_failed,
        "errors": errors,
    }


# ============================================
# SETTINGS
# ============================================

@admin_router.put("/settings/{notification_type}")
async def update_notification_settings(
    notification_type: str,
    body: SettingsUpdateRequest,
    admin_id: Optional[str] = Depends(require_admin_token),
):
    changes = body.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No settings supplied")
    orchestrator = get_notification_orchestrator()
    try:
        settings = await orchestrator.settings_cache.update(notification_type, changes, actor_id=admin_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return settings.model_dump()


# ============================================
# TEMPLATES
# ============================================

@admin_router.post("/templates/{template_id}/preview")
async def preview_template(
    template_id: str,
    body: PreviewRequest,
    admin_id: Optional[str] = Depends(require_admin_token),
):
    try:
        return await get_notification_orchestrator().preview(template_id, body.sample_data)
    except LookupError:
        raise HTTPException(status_code=404, detail="Template not found")


@admin_router.post("/templates/{template_id}/test")
async def send_test_notification(
    template_id: str,
    body: TestSendRequest,
    admin_id: Optional[str] = Depends(require_admin_token),
):
    orchestrator = get_notification_orchestrator()
    template = await orchestrator.templates.get_by_id(template_id)
    if not template:
        raise HTTPException(status_code=404, detail="Template not found")
    try:
        result = await orchestrator.send_test(
            template.trigger_event,
            NotificationChannel(template.channel),
            body.recipient,
            body.sample_data,
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors(include_url=False, include_context=False))
    return _result_payload(result)


@admin_router.get("/templates/{template_id}/history")
async def template_history(template_id: str, admin_id: Optional[str] = Depends(require_admin_token)):
    versions = await get_notification_orchestrator().templates.list_versions(template_id)
    return {"template_id": template_id, "versions": versions}


@admin_router.post("/templates/{template_id}/rollback")
async def rollback_template(
    template_id: str,
    body: RollbackRequest,
    admin_id: Optional[str] = Depends(require_admin_token),
):
    store = get_notification_orchestrator().templates
    try:
        saved = await store.rollback(template_id, body.version, changed_by=admin_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except TemplateValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors)
    return {"template_id": saved.template_id, "version": saved.version}
