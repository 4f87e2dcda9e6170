"""
Audit Models for Cashflow Billing

Every entitlement decision that deviates from the happy path, and every
step of a payment, is logged for audit purposes.
This provides:
1. Complete traceability of money movement versus access granted
2. Debugging information when a paying user is locked out
3. Evidence for manual reconciliation of pending transactions

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from cashflow_billing.models.subscription import utcnow


class AuditEventType(str, Enum):
    """
    Types of events we audit.
    """
    # Entitlement resolution
    TRIAL_STARTED = "trial_started"
    TRIAL_RESET = "trial_reset"
    SUBSCRIPTION_EXPIRY_CORRECTED = "subscription_expiry_corrected"
    CACHE_FALLBACK_USED = "cache_fallback_used"
    FAIL_OPEN_GRANTED = "fail_open_granted"
    REWARDED_ACCESS_GRANTED = "rewarded_access_granted"

    # Payment initiation
    PAYMENT_INITIATED = "payment_initiated"
    PAYMENT_INITIATION_FAILED = "payment_initiation_failed"

    # Redirect handling
    TERMINAL_NAVIGATION_DETECTED = "terminal_navigation_detected"
    MANUAL_CONFIRMATION_REQUESTED = "manual_confirmation_requested"

    # Verification
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_DECLINED = "payment_declined"
    VERIFICATION_ERROR = "verification_error"
    PAYMENT_CONFLICT = "payment_conflict"

    # Entitlement changes
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    ACTIVATION_FAILED = "activation_failed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"

    # System events
    SYSTEM_ERROR = "system_error"
    EXTERNAL_SERVICE_ERROR = "external_service_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'user', 'transaction', 'subscription')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="ID of the entity (user id, payment reference, snapshot id)"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., one payment session)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }

    def to_sheets_row(self) -> list:
        """
        Convert to a row suitable for Google Sheets storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, entity_type, entity_id,
         correlation_id, description, details_json, error_message, is_user_action]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.entity_type or "",
            self.entity_id or "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details, default=str) if self.details else "",
            self.error_message or "",
            str(self.is_user_action),
        ]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.trial_started(user_id, started_at)
        event = AuditEventBuilder.payment_verified(reference, user_id, plan, correlation_id)
    """

    @staticmethod
    def trial_started(user_id: str, started_at: datetime) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRIAL_STARTED,
            entity_type="user",
            entity_id=user_id,
            description="Free trial started",
            details={"trial_started_at": started_at.isoformat()},
        )

    @staticmethod
    def trial_reset(user_id: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRIAL_RESET,
            severity=AuditSeverity.WARNING,
            entity_type="user",
            entity_id=user_id,
            description="Trial record removed (non-production reset)",
            is_user_action=True,
        )

    @staticmethod
    def expiry_corrected(user_id: str, subscription_id: UUID) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SUBSCRIPTION_EXPIRY_CORRECTED,
            entity_type="subscription",
            entity_id=str(subscription_id),
            description="Lapsed subscription flipped from active to expired",
            details={"user_id": user_id},
        )

    @staticmethod
    def cache_fallback_used(user_id: str, reason: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CACHE_FALLBACK_USED,
            severity=AuditSeverity.WARNING,
            entity_type="user",
            entity_id=user_id,
            description="Entitlement served from local cache",
            details={"reason": reason},
        )

    @staticmethod
    def fail_open_granted(user_id: str, error_message: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.FAIL_OPEN_GRANTED,
            severity=AuditSeverity.ERROR,
            entity_type="user",
            entity_id=user_id,
            description="Entitlement check failed; granting trial-level access",
            error_message=error_message,
        )

    @staticmethod
    def rewarded_access_granted(user_id: str, expires_at: datetime) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REWARDED_ACCESS_GRANTED,
            entity_type="user",
            entity_id=user_id,
            description="Rewarded access granted",
            details={"expires_at": expires_at.isoformat()},
            is_user_action=True,
        )

    @staticmethod
    def payment_initiated(
        reference: str,
        user_id: str,
        plan: str,
        amount: int,
        currency: str,
        channel: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PAYMENT_INITIATED,
            entity_type="transaction",
            entity_id=reference,
            correlation_id=correlation_id,
            description=f"Payment initiated: {plan} - {currency} {amount / 100:.2f}",
            details={
                "user_id": user_id,
                "plan": plan,
                "amount": amount,
                "currency": currency,
                "channel": channel,
            },
            is_user_action=True,
        )

    @staticmethod
    def payment_initiation_failed(
        user_id: str,
        reason: str,
        reference: Optional[str],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PAYMENT_INITIATION_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type="transaction",
            entity_id=reference,
            correlation_id=correlation_id,
            description="Payment could not be initiated",
            error_message=reason,
            details={"user_id": user_id},
        )

    @staticmethod
    def terminal_navigation(
        reference: str,
        url: str,
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TERMINAL_NAVIGATION_DETECTED,
            entity_type="transaction",
            entity_id=reference,
            correlation_id=correlation_id,
            description="Hosted payment page reached a terminal URL",
            details={"url": url},
        )

    @staticmethod
    def manual_confirmation(
        reference: str,
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MANUAL_CONFIRMATION_REQUESTED,
            entity_type="transaction",
            entity_id=reference,
            correlation_id=correlation_id,
            description="User reported the payment as completed",
            is_user_action=True,
        )

    @staticmethod
    def payment_verified(
        reference: str,
        user_id: str,
        plan: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PAYMENT_VERIFIED,
            entity_type="transaction",
            entity_id=reference,
            correlation_id=correlation_id,
            description=f"Gateway confirmed payment for {plan} plan",
            details={"user_id": user_id, "plan": plan},
        )

    @staticmethod
    def payment_declined(
        reference: str,
        gateway_status: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PAYMENT_DECLINED,
            severity=AuditSeverity.WARNING,
            entity_type="transaction",
            entity_id=reference,
            correlation_id=correlation_id,
            description=f"Gateway reported payment as {gateway_status}",
            details={"gateway_status": gateway_status},
        )

    @staticmethod
    def verification_error(
        reference: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.VERIFICATION_ERROR,
            severity=AuditSeverity.ERROR,
            entity_type="transaction",
            entity_id=reference,
            correlation_id=correlation_id,
            description="Could not reach gateway to verify payment; left pending",
            error_message=error_message,
        )

    @staticmethod
    def payment_conflict(
        reference: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PAYMENT_CONFLICT,
            severity=AuditSeverity.ERROR,
            entity_type="transaction",
            entity_id=reference,
            correlation_id=correlation_id,
            description="Payment state disagrees with local records",
            error_message=error_message,
            details=details or {},
        )

    @staticmethod
    def subscription_activated(
        user_id: str,
        reference: str,
        plan: str,
        expires_at: Optional[datetime],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SUBSCRIPTION_ACTIVATED,
            entity_type="user",
            entity_id=user_id,
            correlation_id=correlation_id,
            description=f"Subscription activated: {plan}",
            details={
                "reference": reference,
                "plan": plan,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
        )

    @staticmethod
    def activation_failed(
        user_id: str,
        reference: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACTIVATION_FAILED,
            severity=AuditSeverity.CRITICAL,
            entity_type="user",
            entity_id=user_id,
            correlation_id=correlation_id,
            description="Payment succeeded but subscription could not be written",
            error_message=error_message,
            details={"reference": reference},
        )

    @staticmethod
    def subscription_cancelled(user_id: str, cancelled_count: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SUBSCRIPTION_CANCELLED,
            entity_type="user",
            entity_id=user_id,
            description=f"Cancelled {cancelled_count} active subscription(s)",
            details={"cancelled_count": cancelled_count},
            is_user_action=True,
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )

    @staticmethod
    def external_service_error(
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTERNAL_SERVICE_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"External service error: {service}",
            error_message=error_message,
            details={
                "service": service,
            },
            correlation_id=correlation_id,
        )
