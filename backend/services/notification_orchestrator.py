"""
Notification Orchestrator.
Single entry point for all customer and admin email/SMS.
No route, job or trigger may call a provider directly.

send() runs one notification through:
    settings -> preferences -> template -> render -> pending log row -> provider -> final log update

Every outcome leaves exactly one log row that is no longer pending:
    sent                       provider accepted the message
    failed, retry_after set    retryable failure with budget left (picked up by the retry sweep)
    failed, retry_after null   disabled, opted out, no template, permanent error or retries exhausted

Automatic retries (attempt_id given) update the same row. Admin resend creates a new row.
"""
from __future__ import annotations

import asyncio
import logging
import os
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from models import (
    AuditAction,
    BusinessContext,
    DeliveryOutcome,
    ErrorType,
    NotificationAttempt,
    NotificationChannel,
    NotificationRequest,
    NotificationStatus,
    RenderedMessage,
    UserRole,
    utc_now,
)
from services.backoff import DEFAULT_JITTER_FRACTION, RetryConfig
from services.error_classifier import ClassifiedError, ErrorClassifier
from services.notification_log import NotificationLog, notification_log
from services.preferences import MongoPreferenceSource, PreferenceSource, is_transactional
from services.providers import EmailProvider, ProviderResult, SMSProvider, create_providers
from services.settings_cache import SettingsCache
from services.template_engine import load_business_context, render, render_preview
from services.template_store import TemplateStore, template_store
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

TRANSPORT_TIMEOUT_SECONDS = float(os.getenv("NOTIFICATION_TRANSPORT_TIMEOUT_SECONDS", "10"))
BATCH_CONCURRENCY = int(os.getenv("NOTIFICATION_BATCH_CONCURRENCY", "5"))

DISABLED_ERROR = "notification disabled"
PREFERENCE_ERROR = "customer preference"


@dataclass
class SendResult:
    success: bool
    outcome: DeliveryOutcome
    log_id: Optional[str] = None
    provider_id: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None
    retry_after: Optional[datetime] = None


@dataclass
class _PreparedSend:
    log_id: str
    rendered: RenderedMessage
    config: RetryConfig
    retry_count: int
    attempts: int
    max_retries: int
    fields: Dict[str, Any]


class RetryNotDispatchedError(Exception):
    """A claimed retry failed before the provider was called; its claim can be released."""

    def __init__(self, log_id: str, cause: BaseException):
        super().__init__(str(cause) or type(cause).__name__)
        self.log_id = log_id


def request_from_log(row: Dict[str, Any]) -> NotificationRequest:
    """Rebuild the original request from a log row's recipient and variable snapshot."""
    channel = NotificationChannel(row["channel"])
    return NotificationRequest(
        type=row["type"],
        channel=channel,
        recipient_email=row["recipient"] if channel == NotificationChannel.EMAIL else None,
        recipient_phone=row["recipient"] if channel == NotificationChannel.SMS else None,
        customer_id=row.get("customer_id"),
        template_data=row.get("template_data") or {},
        is_test=bool(row.get("is_test")),
    )


class NotificationOrchestrator:
    def __init__(
        self,
        email_provider: EmailProvider,
        sms_provider: SMSProvider,
        settings_cache: Optional[SettingsCache] = None,
        preference_source: Optional[PreferenceSource] = None,
        templates: Optional[TemplateStore] = None,
        log: Optional[NotificationLog] = None,
        classifier: Optional[ErrorClassifier] = None,
        business_context: Optional[BusinessContext] = None,
        transport_timeout: float = TRANSPORT_TIMEOUT_SECONDS,
        jitter_fraction: float = DEFAULT_JITTER_FRACTION,
        now_fn: Callable[[], datetime] = utc_now,
        uniform: Callable[[float, float], float] = random.uniform,
    ):
        self.email_provider = email_provider
        self.sms_provider = sms_provider
        self.settings_cache = settings_cache or SettingsCache()
        self.preference_source = preference_source or MongoPreferenceSource()
        self.templates = templates or template_store
        self.log = log or notification_log
        self.classifier = classifier or ErrorClassifier()
        self.business_context = business_context or load_business_context()
        self.transport_timeout = transport_timeout
        self.jitter_fraction = jitter_fraction
        self._now = now_fn
        self._uniform = uniform

    # ------------------------------------------------------------------
    # send
    # ------------------------------------------------------------------

    async def send(self, request: NotificationRequest, attempt_id: Optional[str] = None) -> SendResult:
        """
        Deliver one notification.

        attempt_id is set by the retry sweep after it has claimed a failed row
        (moved it back to pending); the outcome is written to that row instead
        of a new one. Store errors propagate to the caller; on a retry, any error
        raised before the provider is called comes out as RetryNotDispatchedError.
        """
        if attempt_id:
            try:
                row = await self.log.get(attempt_id)
                if not row or row.get("status") != NotificationStatus.PENDING.value:
                    logger.warning(f"Retry of {attempt_id} skipped: row is not claimed/pending")
                    return SendResult(success=False, outcome=DeliveryOutcome.CLAIM_LOST, log_id=attempt_id)
                prepared = await self._prepare(request, row)
            except Exception as e:
                raise RetryNotDispatchedError(attempt_id, e) from e
        else:
            prepared = await self._prepare(request, None)

        if isinstance(prepared, SendResult):
            return prepared

        try:
            result = await self._dispatch(request, prepared.rendered)
        except Exception as e:
            classified = self.classifier.classify(e)
            return await self._record_failure(request, prepared, classified)

        final_fields = dict(prepared.fields)
        sent_at = self._now()
        final_fields.update({
            "status": NotificationStatus.SENT,
            "message_id": result.message_id,
            "sent_at": sent_at,
            "attempts": prepared.attempts + 1,
            "error_message": None,
            "error_type": None,
            "retry_after": None,
        })
        if result.segment_count is not None:
            final_fields["segment_count"] = result.segment_count
        await self.log.update(prepared.log_id, NotificationStatus.PENDING, final_fields)

        log_id = prepared.log_id
        logger.info(f"Notification {log_id} ({request.type}/{request.channel.value}) sent: {result.message_id}")
        await create_audit_log(
            action=AuditAction.NOTIFICATION_SENT,
            customer_id=request.customer_id,
            resource_type="notification_log",
            resource_id=log_id,
            metadata={"type": request.type, "channel": request.channel.value, "provider_id": result.message_id},
        )
        return SendResult(
            success=True,
            outcome=DeliveryOutcome.SENT,
            log_id=log_id,
            provider_id=result.message_id,
        )

    async def _prepare(
        self,
        request: NotificationRequest,
        row: Optional[Dict[str, Any]],
    ) -> Union[SendResult, _PreparedSend]:
        """
        Everything up to the provider call: settings, preferences, template,
        render and the pending log row. Short-circuit outcomes come back as a
        SendResult with their terminal row already written.
        """
        settings = await self.settings_cache.get(request.type)
        config = RetryConfig.from_settings(settings, jitter_fraction=self.jitter_fraction)

        if not settings.channel_enabled(request.channel):
            log_id = await self._write_terminal(
                request, row, config,
                error=DISABLED_ERROR,
                block_reason="disabled_by_settings",
            )
            logger.info(f"{request.type}/{request.channel.value} disabled by settings; not sent")
            return SendResult(success=False, outcome=DeliveryOutcome.DISABLED, log_id=log_id, error=DISABLED_ERROR)

        if request.customer_id and not is_transactional(request.type):
            allowed, reason = await self.preference_source.is_allowed(
                request.customer_id, request.type, request.channel,
            )
            if not allowed:
                log_id = await self._write_terminal(
                    request, row, config,
                    error=PREFERENCE_ERROR,
                    block_reason=reason,
                )
                await create_audit_log(
                    action=AuditAction.NOTIFICATION_BLOCKED_PREFERENCE,
                    customer_id=request.customer_id,
                    resource_type="notification_log",
                    resource_id=log_id,
                    reason_code=reason,
                    metadata={"type": request.type, "channel": request.channel.value},
                )
                return SendResult(
                    success=False,
                    outcome=DeliveryOutcome.PREFERENCE_BLOCKED,
                    log_id=log_id,
                    error=PREFERENCE_ERROR,
                )

        template = await self.templates.get_active(request.type, request.channel)
        if not template:
            error = f"No active {request.channel.value} template for {request.type}"
            log_id = await self._write_terminal(
                request, row, config,
                error=error,
                error_type=ErrorType.VALIDATION,
            )
            await create_audit_log(
                action=AuditAction.NOTIFICATION_TEMPLATE_MISSING,
                customer_id=request.customer_id,
                resource_type="notification_log",
                resource_id=log_id,
                metadata={"type": request.type, "channel": request.channel.value},
            )
            logger.warning(error)
            return SendResult(
                success=False,
                outcome=DeliveryOutcome.TEMPLATE_MISSING,
                log_id=log_id,
                error=error,
                error_type=ErrorType.VALIDATION,
            )

        rendered = render(template, request.template_data, self.business_context)
        content_fields = {
            "template_id": template.template_id,
            "subject": rendered.subject,
            "content": rendered.text,
            "html_content": rendered.html,
            "segment_count": rendered.segment_count if request.channel == NotificationChannel.SMS else None,
        }

        if row is None:
            attempt = NotificationAttempt(
                type=request.type,
                channel=request.channel,
                recipient=request.recipient,
                customer_id=request.customer_id,
                template_data=request.template_data,
                status=NotificationStatus.PENDING,
                max_retries=config.max_retries,
                is_test=request.is_test,
                created_at=self._now(),
                **content_fields,
            )
            log_id = await self.log.create(attempt)
            retry_count, attempts, max_retries = 0, 0, config.max_retries
            final_fields: Dict[str, Any] = {}
        else:
            log_id = row["log_id"]
            retry_count = int(row.get("retry_count") or 0)
            attempts = int(row.get("attempts") or 0)
            max_retries = int(row.get("max_retries", config.max_retries))
            # Retries re-render from the variable snapshot; store what was actually sent
            final_fields = dict(content_fields)

        return _PreparedSend(
            log_id=log_id,
            rendered=rendered,
            config=config,
            retry_count=retry_count,
            attempts=attempts,
            max_retries=max_retries,
            fields=final_fields,
        )

    async def _dispatch(self, request: NotificationRequest, rendered: RenderedMessage) -> ProviderResult:
        if request.channel == NotificationChannel.EMAIL:
            call = self.email_provider.send(request.recipient, rendered.subject or "", rendered.html, rendered.text)
        else:
            call = self.sms_provider.send(request.recipient, rendered.text)
        return await asyncio.wait_for(call, timeout=self.transport_timeout)

    async def _record_failure(
        self,
        request: NotificationRequest,
        prepared: _PreparedSend,
        classified: ClassifiedError,
    ) -> SendResult:
        """
        max_retries counts retries after the first send. A retry is scheduled
        while retry_count (before this failure) is below max_retries, so a row
        with retry_after set always has retry_count <= max_retries.
        """
        log_id = prepared.log_id
        retry_count = prepared.retry_count
        max_retries = prepared.max_retries
        fields = dict(prepared.fields)
        fields.update({
            "status": NotificationStatus.FAILED,
            "error_message": classified.message,
            "error_type": classified.kind.value,
            "attempts": prepared.attempts + 1,
            "failed_at": self._now(),
        })

        if classified.retryable and retry_count < max_retries:
            delay = prepared.config.delay_for(retry_count, uniform=self._uniform)
            retry_after = self._now() + timedelta(seconds=delay)
            fields.update({"retry_count": retry_count + 1, "retry_after": retry_after})
            await self.log.update(log_id, NotificationStatus.PENDING, fields)
            logger.warning(
                f"Notification {log_id} failed ({classified.kind.value}): {classified.message}; "
                f"retry {retry_count + 1}/{max_retries} in {delay:.0f}s"
            )
            return SendResult(
                success=False,
                outcome=DeliveryOutcome.RETRY_SCHEDULED,
                log_id=log_id,
                error=classified.message,
                error_type=classified.kind,
                retry_after=retry_after,
            )

        fields["retry_after"] = None
        await self.log.update(log_id, NotificationStatus.PENDING, fields)

        if classified.retryable:
            outcome, action = DeliveryOutcome.RETRIES_EXHAUSTED, AuditAction.NOTIFICATION_RETRIES_EXHAUSTED
        else:
            outcome, action = DeliveryOutcome.FAILED_PERMANENT, AuditAction.NOTIFICATION_FAILED_PERMANENT
        logger.error(f"Notification {log_id} failed permanently ({outcome.value}): {classified.message}")
        await create_audit_log(
            action=action,
            customer_id=request.customer_id,
            resource_type="notification_log",
            resource_id=log_id,
            metadata={
                "type": request.type,
                "channel": request.channel.value,
                "error": classified.message,
                "error_type": classified.kind.value,
                "retry_count": retry_count,
            },
        )
        return SendResult(
            success=False,
            outcome=outcome,
            log_id=log_id,
            error=classified.message,
            error_type=classified.kind,
        )

    async def _write_terminal(
        self,
        request: NotificationRequest,
        row: Optional[Dict[str, Any]],
        config: RetryConfig,
        error: str,
        block_reason: Optional[str] = None,
        error_type: Optional[ErrorType] = None,
    ) -> str:
        """Record a short-circuit outcome as a failed row without calling a provider."""
        fields = {
            "status": NotificationStatus.FAILED,
            "error_message": error,
            "error_type": error_type.value if error_type else None,
            "block_reason": block_reason,
            "retry_after": None,
        }
        if row is not None:
            await self.log.update(row["log_id"], NotificationStatus.PENDING, fields)
            return row["log_id"]

        attempt = NotificationAttempt(
            type=request.type,
            channel=request.channel,
            recipient=request.recipient,
            customer_id=request.customer_id,
            template_data=request.template_data,
            max_retries=config.max_retries,
            is_test=request.is_test,
            created_at=self._now(),
            **fields,
        )
        return await self.log.create(attempt)

    # ------------------------------------------------------------------
    # batch / resend / test
    # ------------------------------------------------------------------

    async def send_batch(
        self,
        requests: List[NotificationRequest],
        concurrency: int = BATCH_CONCURRENCY,
    ) -> List[SendResult]:
        """
        Send many notifications. Different recipient+type groups run
        concurrently (bounded by concurrency); sends within a group run in order.
        Results come back in input order.
        """
        groups: Dict[Tuple[str, str], List[int]] = {}
        for index, req in enumerate(requests):
            groups.setdefault((req.recipient, req.type), []).append(index)

        results: List[Optional[SendResult]] = [None] * len(requests)
        semaphore = asyncio.Semaphore(max(concurrency, 1))

        async def _run_group(indexes: List[int]) -> None:
            async with semaphore:
                for i in indexes:
                    results[i] = await self.send(requests[i])

        outcomes = await asyncio.gather(
            *(_run_group(indexes) for indexes in groups.values()),
            return_exceptions=True,
        )
        errors = [o for o in outcomes if isinstance(o, BaseException)]
        if errors:
            logger.error(f"Batch send: {len(errors)} group(s) aborted by store errors")
            raise errors[0]
        return results

    async def resend(self, log_id: str, actor_id: Optional[str] = None) -> SendResult:
        """
        Manual admin resend. Always creates a new log row from the original's
        snapshot; the original is kept as history and pointed at the new row.
        """
        original = await self.log.get(log_id)
        if not original:
            raise LookupError(f"Notification {log_id} not found")
        if original.get("status") == NotificationStatus.PENDING.value:
            raise ValueError(f"Notification {log_id} is still pending")

        result = await self.send(request_from_log(original))
        await self.log.mark_resent(log_id, result.log_id, self._now())
        await create_audit_log(
            action=AuditAction.NOTIFICATION_RESENT,
            actor_role=UserRole.ROLE_ADMIN if actor_id else None,
            actor_id=actor_id,
            customer_id=original.get("customer_id"),
            resource_type="notification_log",
            resource_id=log_id,
            metadata={"new_log_id": result.log_id, "outcome": result.outcome.value},
        )
        return result

    async def send_test(
        self,
        notification_type: str,
        channel: NotificationChannel,
        recipient: str,
        sample_data: Optional[Dict[str, str]] = None,
    ) -> SendResult:
        """Admin test send. Logged with is_test so the retry sweep ignores it."""
        channel = NotificationChannel(channel)
        request = NotificationRequest(
            type=notification_type,
            channel=channel,
            recipient_email=recipient if channel == NotificationChannel.EMAIL else None,
            recipient_phone=recipient if channel == NotificationChannel.SMS else None,
            template_data=sample_data or {},
            is_test=True,
        )
        return await self.send(request)

    async def preview(self, template_id: str, sample_data: Dict[str, Any]) -> Dict[str, Any]:
        template = await self.templates.get_by_id(template_id)
        if not template:
            raise LookupError(f"Template {template_id} not found")
        return render_preview(template, sample_data, self.business_context)


def build_notification_orchestrator(provider_mode: Optional[str] = None) -> NotificationOrchestrator:
    email_provider, sms_provider = create_providers(provider_mode)
    return NotificationOrchestrator(email_provider=email_provider, sms_provider=sms_provider)


_orchestrator: Optional[NotificationOrchestrator] = None


def get_notification_orchestrator() -> NotificationOrchestrator:
    """Process-wide orchestrator, built on first use from env configuration."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_notification_orchestrator()
    return _orchestrator
