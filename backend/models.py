from pydantic import BaseModel, EmailStr, Field, ConfigDict, model_validator
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class NotificationChannel(str, Enum):
    EMAIL = "email"
    SMS = "sms"

class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"

class ErrorType(str, Enum):
    TRANSIENT = "transient"
    RATE_LIMIT = "rate_limit"
    VALIDATION = "validation"
    PERMANENT = "permanent"

class DeliveryOutcome(str, Enum):
    SENT = "sent"
    DISABLED = "disabled"
    PREFERENCE_BLOCKED = "preference_blocked"
    TEMPLATE_MISSING = "template_missing"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED_PERMANENT = "failed_permanent"
    RETRIES_EXHAUSTED = "retries_exhausted"
    CLAIM_LOST = "claim_lost"

class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

class UserRole(str, Enum):
    ROLE_ADMIN = "ROLE_ADMIN"
    ROLE_SYSTEM = "ROLE_SYSTEM"

class AuditAction(str, Enum):
    NOTIFICATION_SENT = "NOTIFICATION_SENT"
    NOTIFICATION_BLOCKED_PREFERENCE = "NOTIFICATION_BLOCKED_PREFERENCE"
    NOTIFICATION_TEMPLATE_MISSING = "NOTIFICATION_TEMPLATE_MISSING"
    NOTIFICATION_FAILED_PERMANENT = "NOTIFICATION_FAILED_PERMANENT"
    NOTIFICATION_RETRIES_EXHAUSTED = "NOTIFICATION_RETRIES_EXHAUSTED"
    NOTIFICATION_RESENT = "NOTIFICATION_RESENT"
    NOTIFICATION_CLAIM_RECOVERED = "NOTIFICATION_CLAIM_RECOVERED"
    NOTIFICATION_SETTINGS_UPDATED = "NOTIFICATION_SETTINGS_UPDATED"
    CUSTOMER_PREFERENCES_UPDATED = "CUSTOMER_PREFERENCES_UPDATED"


# Types that always send regardless of customer preferences
TRANSACTIONAL_TYPES = frozenset({
    "booking_confirmation",
    "appointment_cancelled",
    "appointment_rescheduled",
    "status_checked_in",
    "status_in_progress",
    "status_ready",
    "status_completed",
    "payment_success",
    "payment_failed",
    "payment_reminder",
    "refund_processed",
    "membership_activated",
    "membership_expired",
    "membership_cancelled",
})

# Types gated by the customer's marketing opt-in
MARKETING_TYPES = frozenset({
    "retention_reminder",
    "birthday_greeting",
    "review_request",
})

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

# ============================================================================
# TEMPLATES & SETTINGS
# ============================================================================

class TemplateVariable(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    description: Optional[str] = None
    required: bool = False
    max_length: Optional[int] = None

class NotificationTemplate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    template_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: Optional[str] = None
    trigger_event: str
    channel: NotificationChannel
    subject_template: Optional[str] = None
    html_template: Optional[str] = None
    text_template: str = ""
    variables: List[TemplateVariable] = Field(default_factory=list)
    is_active: bool = True
    version: int = 1
    updated_at: datetime = Field(default_factory=utc_now)

class NotificationSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    notification_type: str
    email_enabled: bool = True
    sms_enabled: bool = True
    max_retries: int = 2
    retry_delays_seconds: List[int] = Field(default_factory=lambda: [30, 300])
    updated_at: Optional[datetime] = None

    def channel_enabled(self, channel: NotificationChannel) -> bool:
        if channel == NotificationChannel.EMAIL:
            return self.email_enabled
        return self.sms_enabled

class BusinessContext(BaseModel):
    """Always-available business fields exposed to templates as {{business.*}}."""
    name: str = "Puppy Day"
    address: str = "14936 Leffingwell Rd, La Mirada, CA 90638"
    phone: str = "(657) 252-2903"
    email: str = "puppyday14936@gmail.com"
    hours: str = "Monday-Saturday 9:00 AM - 5:00 PM"
    website: str = "https://thepuppyday.com"

class CustomerNotificationPreferences(BaseModel):
    model_config = ConfigDict(extra="ignore")

    customer_id: str
    marketing_enabled: bool = True
    email_appointment_reminders: bool = True
    sms_appointment_reminders: bool = True
    email_retention_reminders: bool = True
    sms_retention_reminders: bool = True
    updated_at: Optional[datetime] = None

# ============================================================================
# DELIVERY
# ============================================================================

class NotificationRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    channel: NotificationChannel
    recipient_email: Optional[EmailStr] = None
    recipient_phone: Optional[str] = None
    customer_id: Optional[str] = None
    template_data: Dict[str, str] = Field(default_factory=dict)
    priority: NotificationPriority = NotificationPriority.NORMAL
    scheduled_for: Optional[datetime] = None
    is_test: bool = False

    @model_validator(mode="after")
    def _recipient_matches_channel(self):
        if self.channel == NotificationChannel.EMAIL and not (self.recipient_email or "").strip():
            raise ValueError("recipient_email is required for email notifications")
        if self.channel == NotificationChannel.SMS and not (self.recipient_phone or "").strip():
            raise ValueError("recipient_phone is required for sms notifications")
        return self

    @property
    def recipient(self) -> str:
        if self.channel == NotificationChannel.EMAIL:
            return str(self.recipient_email).strip()
        return self.recipient_phone.strip()

class RenderedMessage(BaseModel):
    subject: Optional[str] = None
    html: Optional[str] = None
    text: str = ""
    character_count: int = 0
    segment_count: int = 1

class NotificationAttempt(BaseModel):
    """One row of the notifications_log collection."""
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    log_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: str
    channel: NotificationChannel
    recipient: str
    customer_id: Optional[str] = None
    template_id: Optional[str] = None
    subject: Optional[str] = None
    content: Optional[str] = None
    html_content: Optional[str] = None
    template_data: Dict[str, str] = Field(default_factory=dict)
    status: NotificationStatus = NotificationStatus.PENDING
    retry_count: int = 0
    max_retries: int = 2
    retry_after: Optional[datetime] = None
    attempts: int = 0
    message_id: Optional[str] = None
    error_message: Optional[str] = None
    error_type: Optional[ErrorType] = None
    block_reason: Optional[str] = None
    segment_count: Optional[int] = None
    is_test: bool = False
    resent_from: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    sent_at: Optional[datetime] = None

# ============================================================================
# AUDIT
# ============================================================================

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[UserRole] = None
    actor_id: Optional[str] = None
    customer_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    reason_code: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)

# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class BulkResendRequest(BaseModel):
    ids: List[str] = Field(default_factory=list)

class RetrySweepResponse(BaseModel):
    processed: int
    succeeded: int
    failed: int
    errors: List[str] = Field(default_factory=list)
