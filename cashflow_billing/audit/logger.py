"""
Audit Logger

DESIGN DECISION: Every entitlement fallback and every payment step is logged.
This provides:
1. Traceability from a payment reference to the access it granted
2. Debugging capability when a paying user reports being locked out
3. Evidence for reconciling transactions left pending

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (a broken audit sheet never blocks a payment)
- Supports correlation IDs to trace one payment session end to end
"""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

import structlog

from cashflow_billing.models.audit import AuditEvent, AuditEventBuilder
from cashflow_billing.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage (for persistence and support visibility)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("cashflow_billing.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity.value in ("error", "critical"):
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_trial_started(self, user_id: str, started_at: datetime) -> None:
        """Log the creation of a trial record."""
        await self.log(AuditEventBuilder.trial_started(user_id, started_at))

    async def log_cache_fallback(self, user_id: str, reason: str) -> None:
        """Log that entitlement was answered from the local cache."""
        await self.log(AuditEventBuilder.cache_fallback_used(user_id, reason))

    async def log_fail_open(self, user_id: str, error_message: str) -> None:
        """Log an unexpected error that resulted in granting access."""
        await self.log(AuditEventBuilder.fail_open_granted(user_id, error_message))

    async def log_expiry_corrected(self, user_id: str, subscription_id: UUID) -> None:
        """Log a lazy active -> expired correction."""
        await self.log(AuditEventBuilder.expiry_corrected(user_id, subscription_id))

    async def log_payment_initiated(
        self,
        reference: str,
        user_id: str,
        plan: str,
        amount: int,
        currency: str,
        channel: str,
        correlation_id: UUID,
    ) -> None:
        """Log a successfully opened payment session."""
        await self.log(AuditEventBuilder.payment_initiated(
            reference=reference,
            user_id=user_id,
            plan=plan,
            amount=amount,
            currency=currency,
            channel=channel,
            correlation_id=correlation_id,
        ))

    async def log_payment_initiation_failed(
        self,
        user_id: str,
        reason: str,
        reference: Optional[str],
        correlation_id: UUID,
    ) -> None:
        """Log a payment session that could not be opened."""
        await self.log(AuditEventBuilder.payment_initiation_failed(
            user_id=user_id,
            reason=reason,
            reference=reference,
            correlation_id=correlation_id,
        ))

    async def log_payment_verified(
        self,
        reference: str,
        user_id: str,
        plan: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log gateway-confirmed success."""
        await self.log(AuditEventBuilder.payment_verified(
            reference=reference,
            user_id=user_id,
            plan=plan,
            correlation_id=correlation_id,
        ))

    async def log_payment_declined(
        self,
        reference: str,
        gateway_status: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log gateway-confirmed failure."""
        await self.log(AuditEventBuilder.payment_declined(
            reference=reference,
            gateway_status=gateway_status,
            correlation_id=correlation_id,
        ))

    async def log_verification_error(
        self,
        reference: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an indeterminate verification (transaction left pending)."""
        await self.log(AuditEventBuilder.verification_error(
            reference=reference,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_subscription_activated(
        self,
        user_id: str,
        reference: str,
        plan: str,
        expires_at: Optional[datetime],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an entitlement activation."""
        await self.log(AuditEventBuilder.subscription_activated(
            user_id=user_id,
            reference=reference,
            plan=plan,
            expires_at=expires_at,
            correlation_id=correlation_id,
        ))

    async def log_activation_failed(
        self,
        user_id: str,
        reference: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a paid transaction whose entitlement could not be written."""
        await self.log(AuditEventBuilder.activation_failed(
            user_id=user_id,
            reference=reference,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))

    async def log_external_service_error(
        self,
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log external service error."""
        await self.log(AuditEventBuilder.external_service_error(
            service=service,
            error_message=error_message,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new payment session.
    Pass it through initiation, redirect handling and verification.
    """
    return uuid4()
