"""
Provider adapters for outbound email (Postmark) and SMS (Twilio).

The orchestrator only sees EmailProvider / SMSProvider. Which implementation it
gets is decided once, in create_providers(), from NOTIFICATION_PROVIDER_MODE:
"live" builds the Postmark/Twilio adapters, "mock" builds in-memory ones that
record what would have been sent.

Both SDKs are blocking; calls run in a worker thread so the event loop keeps
serving other sends. Every SDK failure is re-raised as ProviderError carrying
the HTTP status and provider error code for the classifier.
"""
import asyncio
import logging
import os
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from services.template_engine import calculate_segment_count

logger = logging.getLogger(__name__)

PROVIDER_MODE_LIVE = "live"
PROVIDER_MODE_MOCK = "mock"

DEFAULT_SENDER = os.getenv("EMAIL_SENDER", "puppyday14936@gmail.com")
POSTMARK_MESSAGE_STREAM = os.getenv("POSTMARK_MESSAGE_STREAM", "outbound").strip() or "outbound"
EMAIL_REPLY_TO = (os.getenv("EMAIL_REPLY_TO") or "").strip()

# Twilio rejects bodies longer than this
SMS_MAX_BODY_LENGTH = 1600


class ProviderError(Exception):
    """Normalised transport failure."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        provider_code: Optional[Any] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.provider_code = provider_code


class ProviderNotConfiguredError(ProviderError):
    """Live mode selected but credentials are missing."""
    pass


@dataclass
class ProviderResult:
    message_id: str
    segment_count: Optional[int] = None


class EmailProvider(ABC):
    name = "email"

    @abstractmethod
    async def send(self, to: str, subject: str, html: Optional[str], text: str) -> ProviderResult:
        """Deliver one email; raise ProviderError on failure."""
        pass


class SMSProvider(ABC):
    name = "sms"

    @abstractmethod
    async def send(self, to: str, body: str) -> ProviderResult:
        """Deliver one SMS; raise ProviderError on failure."""
        pass


# ============================================================================
# LIVE ADAPTERS
# ============================================================================

class PostmarkEmailProvider(EmailProvider):
    name = "postmark"

    def __init__(self, server_token: Optional[str] = None, sender: str = DEFAULT_SENDER):
        from postmarker.core import PostmarkClient

        token = server_token or os.getenv("POSTMARK_SERVER_TOKEN")
        if not token:
            raise ProviderNotConfiguredError("POSTMARK_SERVER_TOKEN not set")
        self._client = PostmarkClient(server_token=token)
        self._sender = sender

    def _send_blocking(self, to: str, subject: str, html: Optional[str], text: str) -> Dict[str, Any]:
        send_kw = dict(
            From=self._sender,
            To=to,
            Subject=subject,
            TextBody=text,
            TrackOpens=True,
            MessageStream=POSTMARK_MESSAGE_STREAM,
        )
        if html:
            send_kw["HtmlBody"] = html
        if EMAIL_REPLY_TO:
            send_kw["ReplyTo"] = EMAIL_REPLY_TO
        return self._client.emails.send(**send_kw)

    async def send(self, to: str, subject: str, html: Optional[str], text: str) -> ProviderResult:
        from postmarker.exceptions import ClientError
        import requests

        try:
            response = await asyncio.to_thread(self._send_blocking, to, subject, html, text)
        except ClientError as e:
            # Postmark API-level rejection (bad address, inactive recipient, ...)
            raise ProviderError(str(e), status_code=422, provider_code=getattr(e, "error_code", None)) from e
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            raise ProviderError(str(e), status_code=status) from e
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"network error: {e}") from e

        message_id = (response or {}).get("MessageID")
        if not message_id:
            raise ProviderError("Postmark response missing MessageID")
        logger.info(f"Postmark accepted email to {to}: {message_id}")
        return ProviderResult(message_id=message_id)


class TwilioSMSProvider(SMSProvider):
    name = "twilio"

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        messaging_service_sid: Optional[str] = None,
    ):
        from twilio.rest import Client

        sid = account_sid or os.getenv("TWILIO_ACCOUNT_SID")
        token = auth_token or os.getenv("TWILIO_AUTH_TOKEN")
        if not sid or not token:
            raise ProviderNotConfiguredError("TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN not set")
        self._messaging_service_sid = (messaging_service_sid or os.getenv("TWILIO_MESSAGING_SERVICE_SID", "")).strip()
        self._from_number = (from_number or os.getenv("TWILIO_PHONE_NUMBER", "")).strip()
        if not self._messaging_service_sid and not self._from_number:
            raise ProviderNotConfiguredError("TWILIO_PHONE_NUMBER or TWILIO_MESSAGING_SERVICE_SID not set")
        self._client = Client(sid, token)

    def _send_blocking(self, to: str, body: str):
        if self._messaging_service_sid:
            return self._client.messages.create(
                body=body, messaging_service_sid=self._messaging_service_sid, to=to,
            )
        return self._client.messages.create(body=body, from_=self._from_number, to=to)

    async def send(self, to: str, body: str) -> ProviderResult:
        from twilio.base.exceptions import TwilioRestException

        if not to.startswith("+"):
            to = f"+{to}"
        try:
            msg = await asyncio.to_thread(self._send_blocking, to, body[:SMS_MAX_BODY_LENGTH])
        except TwilioRestException as e:
            logger.error(f"Twilio error sending SMS: {e.code} - {e.msg}")
            raise ProviderError(str(e.msg), status_code=e.status, provider_code=e.code) from e

        try:
            segments = int(msg.num_segments)
        except (TypeError, ValueError):
            segments = calculate_segment_count(body)
        logger.info(f"SMS sent to {to[:7]}***: {msg.sid}")
        return ProviderResult(message_id=msg.sid, segment_count=segments)


# ============================================================================
# MOCK ADAPTERS
# ============================================================================

@dataclass
class MockEmailProvider(EmailProvider):
    """Records sends instead of delivering. Queue failures with fail_next()."""
    name = "mock_email"
    sent: List[Dict[str, Any]] = field(default_factory=list)
    _failures: List[BaseException] = field(default_factory=list)

    def fail_next(self, exc: BaseException) -> None:
        self._failures.append(exc)

    async def send(self, to: str, subject: str, html: Optional[str], text: str) -> ProviderResult:
        if self._failures:
            raise self._failures.pop(0)
        message_id = f"mock_email_{uuid.uuid4().hex[:12]}"
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text, "message_id": message_id})
        logger.info(f"[mock] email to {to}: {subject}")
        return ProviderResult(message_id=message_id)


@dataclass
class MockSMSProvider(SMSProvider):
    name = "mock_sms"
    sent: List[Dict[str, Any]] = field(default_factory=list)
    _failures: List[BaseException] = field(default_factory=list)

    def fail_next(self, exc: BaseException) -> None:
        self._failures.append(exc)

    async def send(self, to: str, body: str) -> ProviderResult:
        if self._failures:
            raise self._failures.pop(0)
        message_id = f"mock_sms_{uuid.uuid4().hex[:12]}"
        segments = calculate_segment_count(body)
        self.sent.append({"to": to, "body": body, "message_id": message_id, "segment_count": segments})
        logger.info(f"[mock] sms to {to[:7]}***")
        return ProviderResult(message_id=message_id, segment_count=segments)


def create_providers(mode: Optional[str] = None) -> Tuple[EmailProvider, SMSProvider]:
    """Pick the provider pair for this process. Mode defaults to NOTIFICATION_PROVIDER_MODE."""
    mode = (mode or os.getenv("NOTIFICATION_PROVIDER_MODE", PROVIDER_MODE_MOCK)).strip().lower()
    if mode == PROVIDER_MODE_LIVE:
        logger.info("Notification providers: Postmark + Twilio")
        return PostmarkEmailProvider(), TwilioSMSProvider()
    if mode != PROVIDER_MODE_MOCK:
        raise ValueError(f"Unknown NOTIFICATION_PROVIDER_MODE: {mode}")
    logger.info("Notification providers: mock")
    return MockEmailProvider(), MockSMSProvider()
