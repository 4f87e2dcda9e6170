"""
Core Data Models for Cashflow Billing

These models define the strict schemas for entitlement and payment data.
They are designed to:
1. Enforce type safety at runtime
2. Provide clear validation error messages
3. Be serializable for the remote store, the local cache and logging
4. Support the audit trail

DESIGN DECISION: All timestamps are timezone-aware UTC.
Naive datetimes are rejected at the model boundary so that expiry
comparisons can never silently mix local time and UTC.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import (
    AwareDatetime,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class SubscriptionPlan(str, Enum):
    """
    Paid plans a user can buy.

    The trial, rewarded and free states are not plans anyone pays for,
    so they only appear as sentinel strings on SubscriptionStatus.
    """
    DAILY = "daily"
    MONTHLY = "monthly"
    YEARLY = "yearly"


# Sentinel plan names reported by the resolver
FREE_TRIAL_PLAN = "free_trial"
REWARDED_PLAN = "rewarded"
FREE_PLAN = "free"


class SubscriptionState(str, Enum):
    """Lifecycle state of one subscription period."""
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class TransactionStatus(str, Enum):
    """
    Payment transaction status.

    CRITICAL: PENDING moves to SUCCESS or FAILED exactly once, and only
    after the gateway has confirmed the outcome.
    """
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class PaymentChannel(str, Enum):
    """How the user pays."""
    CARD = "card"
    MOBILE_MONEY = "mobile_money"


class StatusSource(str, Enum):
    """Which resolver tier produced a SubscriptionStatus."""
    REMOTE = "remote"
    CACHE = "cache"
    TRIAL = "trial"
    REWARDED = "rewarded"
    EXPIRED = "expired"
    FAIL_OPEN = "fail_open"


class VerificationOutcome(str, Enum):
    """Result classification of a verification attempt."""
    ACTIVATED = "activated"
    ALREADY_ACTIVE = "already_active"
    DECLINED = "declined"
    PENDING = "pending"
    VERIFICATION_ERROR = "verification_error"
    CONFLICT = "conflict"


# =============================================================================
# ENTITLEMENT RECORDS
# =============================================================================

class TrialRecord(BaseModel):
    """
    First-seen timestamp for a user.

    Immutable once created.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str = Field(..., min_length=1)
    trial_started_at: AwareDatetime


class TrialState(BaseModel):
    """Output of the trial clock."""
    model_config = ConfigDict(frozen=True)

    days_elapsed: int = Field(ge=0)
    days_remaining: int = Field(ge=0)
    ended: bool


class SubscriptionSnapshot(BaseModel):
    """
    One subscription period, as stored remotely.

    This is the authoritative entitlement record. A user may have many
    rows (history); the resolver always picks the latest.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(
        default_factory=uuid4,
        description="Unique snapshot ID"
    )
    user_id: str = Field(..., min_length=1)
    plan: SubscriptionPlan
    status: SubscriptionState = SubscriptionState.ACTIVE
    started_at: AwareDatetime = Field(default_factory=utcnow)
    expires_at: Optional[AwareDatetime] = Field(
        default=None,
        description="None means the period never expires"
    )
    reference: Optional[str] = Field(
        default=None,
        description="Payment reference that activated this period"
    )
    updated_at: AwareDatetime = Field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class CachedSnapshot(BaseModel):
    """
    Local, advisory copy of the last confirmed active subscription.

    Only consulted when the remote store cannot answer.
    """

    user_id: str = Field(..., min_length=1)
    plan: SubscriptionPlan
    expires_at: Optional[AwareDatetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class PendingTransaction(BaseModel):
    """
    A payment attempt.

    `reference` is the idempotence key for the whole payment flow.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    reference: str = Field(..., min_length=1, max_length=128)
    user_id: str = Field(..., min_length=1)
    plan: SubscriptionPlan
    amount: int = Field(
        ...,
        gt=0,
        description="Amount in minor currency units (cents, kobo)"
    )
    currency: str = Field(default="USD", min_length=3, max_length=3)
    channel: PaymentChannel = PaymentChannel.CARD
    status: TransactionStatus = TransactionStatus.PENDING
    gateway_payload: dict[str, Any] = Field(default_factory=dict)
    created_at: AwareDatetime = Field(default_factory=utcnow)
    updated_at: AwareDatetime = Field(default_factory=utcnow)
    verified_at: Optional[AwareDatetime] = Field(
        default=None,
        description="When the gateway confirmed the final status"
    )


class SubscriptionStatus(BaseModel):
    """
    Single answer to "may this user use the product right now?".
    """

    is_active: bool
    is_trial: bool
    trial_ended: bool
    days_remaining: int = Field(ge=0)
    plan: str
    expires_at: Optional[AwareDatetime] = None
    is_rewarded: bool = False
    source: StatusSource


# =============================================================================
# PAYMENT FLOW MODELS
# =============================================================================

_KENYAN_MSISDN = re.compile(r"^254[17]\d{8}$")


def normalize_kenyan_phone(raw: str) -> str:
    """
    Normalize a Kenyan phone number to 254XXXXXXXXX.

    Accepts 07..., 01..., 254... and +254... forms.
    """
    cleaned = re.sub(r"\D", "", raw or "")
    if cleaned.startswith("0"):
        return "254" + cleaned[1:]
    return cleaned


class MobileMoneyDetails(BaseModel):
    """Channel metadata for M-Pesa payments."""
    model_config = ConfigDict(str_strip_whitespace=True)

    phone_number: str
    provider: str = "mpesa"

    @field_validator('phone_number')
    @classmethod
    def validate_phone_number(cls, v: str) -> str:
        normalized = normalize_kenyan_phone(v)
        if not _KENYAN_MSISDN.match(normalized):
            raise ValueError(
                "Please enter a valid Kenyan phone number "
                "(e.g., 0712345678 or 254712345678)"
            )
        return normalized


class PaymentSession(BaseModel):
    """Returned by the initiator when the hosted payment page can be opened."""

    reference: str
    redirect_url: str
    access_code: Optional[str] = None
    user_id: str
    plan: SubscriptionPlan
    amount: int
    currency: str
    channel: PaymentChannel
    correlation_id: UUID = Field(default_factory=uuid4)


class PaymentFailure(BaseModel):
    """Returned by the initiator when no payment page can be opened."""

    reason: str
    reference: Optional[str] = Field(
        default=None,
        description="Set when a pending record was already written"
    )


class VerificationResult(BaseModel):
    """What the verifier tells the caller."""

    success: bool
    message: str
    reference: str
    outcome: VerificationOutcome
    plan: Optional[SubscriptionPlan] = None
    expires_at: Optional[AwareDatetime] = None


class NavigationOutcome(BaseModel):
    """Classification of one hosted-page navigation URL."""
    model_config = ConfigDict(frozen=True)

    terminal: bool
    reference: Optional[str] = None
