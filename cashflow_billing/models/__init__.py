"""
Data Models Package

This package contains all Pydantic models used by Cashflow Billing.
All entitlement and payment data flowing through the system must conform
to these schemas.
"""

from cashflow_billing.models.subscription import (
    FREE_PLAN,
    FREE_TRIAL_PLAN,
    REWARDED_PLAN,
    CachedSnapshot,
    MobileMoneyDetails,
    NavigationOutcome,
    PaymentChannel,
    PaymentFailure,
    PaymentSession,
    PendingTransaction,
    StatusSource,
    SubscriptionPlan,
    SubscriptionSnapshot,
    SubscriptionState,
    SubscriptionStatus,
    TransactionStatus,
    TrialRecord,
    TrialState,
    VerificationOutcome,
    VerificationResult,
    normalize_kenyan_phone,
    utcnow,
)
from cashflow_billing.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Subscription models
    "FREE_PLAN",
    "FREE_TRIAL_PLAN",
    "REWARDED_PLAN",
    "CachedSnapshot",
    "MobileMoneyDetails",
    "NavigationOutcome",
    "PaymentChannel",
    "PaymentFailure",
    "PaymentSession",
    "PendingTransaction",
    "StatusSource",
    "SubscriptionPlan",
    "SubscriptionSnapshot",
    "SubscriptionState",
    "SubscriptionStatus",
    "TransactionStatus",
    "TrialRecord",
    "TrialState",
    "VerificationOutcome",
    "VerificationResult",
    "normalize_kenyan_phone",
    "utcnow",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
