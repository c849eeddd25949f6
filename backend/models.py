from pydantic import BaseModel, Field, ConfigDict, field_validator
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class EventStatus(str, Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    ERROR = "error"

class EventKind(str, Enum):
    PURCHASE = "purchase"
    RENEWAL = "renewal"
    CANCELLATION = "cancellation"
    REFUND = "refund"
    EXPIRATION = "expiration"
    IGNORED = "ignored"

class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

class SubscriptionOrigin(str, Enum):
    MANUAL = "manual"
    HOTMART = "hotmart"
    DOPPUS = "doppus"

class AccessTier(str, Enum):
    FREE = "free"
    PREMIUM = "premium"

class UserRole(str, Enum):
    ROLE_USER = "ROLE_USER"
    ROLE_ADMIN = "ROLE_ADMIN"

class AuditAction(str, Enum):
    # Reconciliation
    SUBSCRIPTION_RECONCILED = "SUBSCRIPTION_RECONCILED"
    ACCOUNT_CREATED_FROM_WEBHOOK = "ACCOUNT_CREATED_FROM_WEBHOOK"
    WEBHOOK_RETRIES_EXHAUSTED = "WEBHOOK_RETRIES_EXHAUSTED"
    WEBHOOK_EVENT_REPROCESSED = "WEBHOOK_EVENT_REPROCESSED"

    # Plan mappings
    PLAN_MAPPING_CREATED = "PLAN_MAPPING_CREATED"
    PLAN_MAPPING_UPDATED = "PLAN_MAPPING_UPDATED"
    PLAN_MAPPING_DEACTIVATED = "PLAN_MAPPING_DEACTIVATED"


# ============================================================================
# PERSISTED DOCUMENTS
# ============================================================================

class InboundEvent(BaseModel):
    """One provider notification. Never deleted; doubles as the audit trail."""
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    provider: str
    idempotency_key: str
    transaction_id: Optional[str] = None
    event_type: Optional[str] = None
    kind: Optional[EventKind] = None
    email: Optional[str] = None
    raw_payload: Dict[str, Any] = Field(default_factory=dict)
    status: EventStatus = EventStatus.RECEIVED
    error: Optional[str] = None
    error_type: Optional[str] = None
    retryable: bool = True
    attempts: int = 0
    next_attempt_at: Optional[datetime] = None
    processing_started_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None
    related_account_id: Optional[str] = None
    source_ip: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

class PlanMapping(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    mapping_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    provider: SubscriptionOrigin
    product_id: str
    offer_id: Optional[str] = None  # None = applies to every offer of the product
    product_name: Optional[str] = None
    plan_code: str
    access_tier: AccessTier = AccessTier.PREMIUM
    duration_days: Optional[int] = None  # None = lifetime
    active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_lifetime(self) -> bool:
        return self.duration_days is None

class Account(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    account_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    email: str
    username: str
    display_name: Optional[str] = None
    password_hash: str
    role: UserRole = UserRole.ROLE_USER
    access_tier: AccessTier = AccessTier.FREE
    subscription_origin: Optional[SubscriptionOrigin] = None
    subscription_plan: Optional[str] = None
    subscription_started_at: Optional[datetime] = None
    subscription_expires_at: Optional[datetime] = None
    lifetime_access: bool = False
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

class Subscription(BaseModel):
    """Current provider relationship of an account; one row per (account_id, origin)."""
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    subscription_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    account_id: str
    origin: SubscriptionOrigin
    plan_code: str
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    start_date: datetime
    end_date: Optional[datetime] = None  # None = lifetime
    transaction_id: Optional[str] = None
    applied_transactions: List[str] = Field(default_factory=list)  # every granting transaction ever applied
    last_event_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[str] = None
    actor_id: Optional[str] = None
    account_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    diff: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utc_now)


# ============================================================================
# REQUEST BODIES
# ============================================================================

class PlanMappingCreate(BaseModel):
    provider: SubscriptionOrigin
    product_id: str = Field(min_length=1)
    offer_id: Optional[str] = None
    product_name: Optional[str] = None
    plan_code: str = Field(min_length=1)
    access_tier: AccessTier = AccessTier.PREMIUM
    duration_days: Optional[int] = Field(default=None, gt=0)
    active: bool = True

    @field_validator("provider")
    @classmethod
    def provider_not_manual(cls, v):
        if v == SubscriptionOrigin.MANUAL:
            raise ValueError("manual is not a payment provider")
        return v

    @field_validator("product_id", "plan_code")
    @classmethod
    def strip_required(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("offer_id")
    @classmethod
    def blank_to_none(cls, v):
        if v is None:
            return None
        v = v.strip()
        return v or None

class PlanMappingUpdate(BaseModel):
    product_id: Optional[str] = None
    offer_id: Optional[str] = None
    product_name: Optional[str] = None
    plan_code: Optional[str] = None
    access_tier: Optional[AccessTier] = None
    duration_days: Optional[int] = Field(default=None, gt=0)
    lifetime: Optional[bool] = None  # True clears duration_days
    active: Optional[bool] = None
