"""
Payment Verifier

Turns "the user says they paid" into a settled transaction and, when the
gateway confirms it, an active subscription.

DESIGN DECISION: The gateway's verify endpoint is the only source of truth.
Redirect URLs, deep links and user claims only tell us WHEN to ask.

DESIGN DECISION: Verification is idempotent per reference.
- A transaction leaves PENDING exactly once.
- A reference activates at most one subscription period. The period's
  start is the transaction's verified_at and its row id is derived from
  the reference, so re-running verify rewrites the same row with the same
  expiry instead of extending access.
- Calls for the same reference are serialised with a per-reference lock.

DESIGN DECISION: Uncertainty never settles a transaction.
Timeouts, network failures and gateway API errors leave the record PENDING
so a later verify (or support) can settle it. Only an explicit gateway
status moves it to SUCCESS or FAILED.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Optional, Union
from uuid import NAMESPACE_URL, UUID, uuid5

import structlog

from cashflow_billing.audit import AuditLogger
from cashflow_billing.billing.plans import expires_at_for_plan
from cashflow_billing.models.audit import AuditEventBuilder
from cashflow_billing.models.subscription import (
    PaymentChannel,
    PendingTransaction,
    SubscriptionPlan,
    SubscriptionSnapshot,
    SubscriptionState,
    TransactionStatus,
    VerificationOutcome,
    VerificationResult,
    utcnow,
)
from cashflow_billing.services.gateway import GatewayError, PaystackClient
from cashflow_billing.services.storage import (
    ConflictError,
    DuplicateError,
    EntitlementStore,
)


logger = structlog.get_logger(__name__)

DECLINED_STATUSES = frozenset({"failed", "abandoned", "reversed"})
IN_PROGRESS_STATUSES = frozenset({"pending", "ongoing", "processing", "queued"})

MESSAGE_ACTIVATED = "Payment confirmed. Your subscription is now active."
MESSAGE_ALREADY_ACTIVE = "This payment has already been applied. Your subscription is active."
MESSAGE_ALREADY_APPLIED = "This payment was already applied to a subscription that is no longer active."
MESSAGE_DECLINED = "Payment was not completed. No subscription was activated."
MESSAGE_PENDING = "Your payment is still being processed. Please check again in a moment."
MESSAGE_CHECK_MANUALLY = (
    "We couldn't confirm your payment right now. If you completed it, "
    "tap \"I've paid\" in a moment to check again."
)
MESSAGE_ACTIVATION_PENDING = (
    "Payment confirmed, but activation is pending. "
    "Tap \"I've paid\" again shortly to finish."
)
MESSAGE_CONFLICT = (
    "We received a payment that doesn't match this purchase. "
    "Please contact support with your payment reference."
)


def subscription_id_for_reference(reference: str) -> UUID:
    """Stable snapshot id for the period a reference pays for."""
    return uuid5(NAMESPACE_URL, f"cashflow-billing:subscription:{reference}")


def _parse_plan(value: Any) -> Optional[SubscriptionPlan]:
    if isinstance(value, SubscriptionPlan):
        return value
    try:
        return SubscriptionPlan(str(value).strip().lower())
    except ValueError:
        return None


class PaymentVerifier:
    """Verifies payments with the gateway and activates subscriptions."""

    def __init__(
        self,
        store: EntitlementStore,
        gateway: PaystackClient,
        audit_logger: Optional[AuditLogger] = None,
        remote_timeout_seconds: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._gateway = gateway
        self._audit_logger = audit_logger
        self._remote_timeout = remote_timeout_seconds
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    async def verify(
        self,
        reference: str,
        expected_plan: Optional[Union[SubscriptionPlan, str]] = None,
        correlation_id: Optional[UUID] = None,
    ) -> VerificationResult:
        """
        Verify a payment by reference and activate the subscription it paid for.

        Args:
            reference: Payment reference (idempotence key)
            expected_plan: Plan the caller believes was bought. Only used when
                           neither the local record nor the gateway names one.
            correlation_id: Ties audit events to the payment session

        Returns:
            VerificationResult. Never raises.
        """
        reference = (reference or "").strip()
        if not reference:
            return self._result(
                False, "Missing payment reference.", "",
                VerificationOutcome.VERIFICATION_ERROR,
            )

        async with self._reference_lock(reference):
            try:
                return await self._verify(reference, _parse_plan(expected_plan), correlation_id)
            except Exception as e:
                logger.error("verification_failed", reference=reference, error=str(e))
                if self._audit_logger:
                    await self._audit_logger.log_error(
                        error_type="verification_failed",
                        error_message=str(e),
                        details={"reference": reference},
                        correlation_id=correlation_id,
                    )
                return self._result(
                    False, MESSAGE_CHECK_MANUALLY, reference,
                    VerificationOutcome.VERIFICATION_ERROR,
                )

    @asynccontextmanager
    async def _reference_lock(self, reference: str):
        """Serialise calls per reference; the lock is dropped once nobody holds or awaits it."""
        lock = self._locks.setdefault(reference, asyncio.Lock())
        self._lock_users[reference] = self._lock_users.get(reference, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[reference] -= 1
            if not self._lock_users[reference]:
                del self._lock_users[reference]
                del self._locks[reference]

    # -------------------------------------------------------------------------
    # Flow
    # -------------------------------------------------------------------------

    async def _verify(
        self,
        reference: str,
        expected_plan: Optional[SubscriptionPlan],
        correlation_id: Optional[UUID],
    ) -> VerificationResult:
        record = await self._remote(self._store.remote.get_transaction(reference))

        # Already settled: never ask the gateway again
        if record is not None and record.status == TransactionStatus.SUCCESS:
            return await self._activate(
                record,
                record.plan,
                record.verified_at or record.updated_at,
                correlation_id,
            )
        if record is not None and record.status == TransactionStatus.FAILED:
            return self._result(
                False, MESSAGE_DECLINED, reference, VerificationOutcome.DECLINED
            )

        try:
            data = await self._gateway.verify_transaction(reference)
        except GatewayError as e:
            logger.warning("gateway_verify_failed", reference=reference, error=str(e))
            if self._audit_logger:
                await self._audit_logger.log_verification_error(
                    reference=reference,
                    error_message=str(e),
                    correlation_id=correlation_id,
                )
            return self._result(
                False, MESSAGE_CHECK_MANUALLY, reference,
                VerificationOutcome.VERIFICATION_ERROR,
            )

        gateway_status = str(data.get("status") or "").strip().lower()

        if gateway_status == "success":
            return await self._handle_success(
                reference, record, data, expected_plan, correlation_id
            )

        if gateway_status in DECLINED_STATUSES:
            return await self._handle_declined(reference, record, data, gateway_status, correlation_id)

        if gateway_status in IN_PROGRESS_STATUSES:
            logger.info("payment_still_processing", reference=reference, status=gateway_status)
            return self._result(
                False, MESSAGE_PENDING, reference, VerificationOutcome.PENDING
            )

        logger.warning("unknown_gateway_status", reference=reference, status=gateway_status)
        if self._audit_logger:
            await self._audit_logger.log_verification_error(
                reference=reference,
                error_message=f"Unknown gateway status: {gateway_status or '<empty>'}",
                correlation_id=correlation_id,
            )
        return self._result(
            False, MESSAGE_CHECK_MANUALLY, reference,
            VerificationOutcome.VERIFICATION_ERROR,
        )

    async def _handle_success(
        self,
        reference: str,
        record: Optional[PendingTransaction],
        data: dict[str, Any],
        expected_plan: Optional[SubscriptionPlan],
        correlation_id: Optional[UUID],
    ) -> VerificationResult:
        metadata = data.get("metadata") or {}
        metadata_plan = _parse_plan(metadata.get("plan"))

        # Recorded plan, then gateway metadata, then the caller's guess
        if record is not None:
            plan = record.plan
        else:
            plan = metadata_plan or expected_plan
        if plan is None:
            return await self._conflict(
                reference,
                "Gateway confirmed payment but no plan could be determined",
                {"metadata": metadata},
                correlation_id,
            )
        if expected_plan is not None and expected_plan != plan:
            logger.warning(
                "expected_plan_mismatch",
                reference=reference,
                expected_plan=expected_plan.value,
                plan=plan.value,
            )
            if self._audit_logger:
                await self._audit_logger.log(AuditEventBuilder.payment_conflict(
                    reference=reference,
                    error_message="Expected plan differs from recorded plan",
                    details={"expected_plan": expected_plan.value, "plan": plan.value},
                    correlation_id=correlation_id,
                ))

        if record is None:
            record = await self._reconcile_missing_record(reference, plan, data, metadata)
            if record is None:
                return await self._conflict(
                    reference,
                    "Gateway confirmed payment for an unknown reference without a user id",
                    {"metadata": metadata},
                    correlation_id,
                )
            if record.status == TransactionStatus.SUCCESS:
                return await self._activate(
                    record, record.plan, record.verified_at or record.updated_at, correlation_id
                )

        paid_amount = data.get("amount")
        paid_currency = str(data.get("currency") or record.currency).upper()
        if paid_amount != record.amount or paid_currency != record.currency.upper():
            return await self._conflict(
                reference,
                "Paid amount does not match the recorded transaction",
                {
                    "expected_amount": record.amount,
                    "expected_currency": record.currency,
                    "paid_amount": paid_amount,
                    "paid_currency": paid_currency,
                },
                correlation_id,
            )

        try:
            settled = await self._remote(self._store.remote.update_transaction(
                reference,
                TransactionStatus.SUCCESS,
                gateway_payload=data,
                at=self._clock(),
            ))
        except ConflictError as e:
            return await self._conflict(reference, str(e), None, correlation_id)
        except Exception as e:
            logger.error("transaction_settle_failed", reference=reference, error=str(e))
            if self._audit_logger:
                await self._audit_logger.log_activation_failed(
                    user_id=record.user_id,
                    reference=reference,
                    error_message=str(e),
                    correlation_id=correlation_id,
                )
            return self._result(
                False, MESSAGE_ACTIVATION_PENDING, reference,
                VerificationOutcome.VERIFICATION_ERROR, plan=plan,
            )

        if self._audit_logger:
            await self._audit_logger.log_payment_verified(
                reference=reference,
                user_id=settled.user_id,
                plan=plan.value,
                correlation_id=correlation_id,
            )
        return await self._activate(settled, plan, settled.verified_at, correlation_id)

    async def _handle_declined(
        self,
        reference: str,
        record: Optional[PendingTransaction],
        data: dict[str, Any],
        gateway_status: str,
        correlation_id: Optional[UUID],
    ) -> VerificationResult:
        if record is not None:
            try:
                await self._remote(self._store.remote.update_transaction(
                    reference,
                    TransactionStatus.FAILED,
                    gateway_payload=data,
                    at=self._clock(),
                ))
            except Exception as e:
                # The gateway's answer stands; the record is settled next time
                logger.warning("transaction_fail_mark_failed", reference=reference, error=str(e))

        if self._audit_logger:
            await self._audit_logger.log_payment_declined(
                reference=reference,
                gateway_status=gateway_status,
                correlation_id=correlation_id,
            )
        return self._result(False, MESSAGE_DECLINED, reference, VerificationOutcome.DECLINED)

    async def _reconcile_missing_record(
        self,
        reference: str,
        plan: SubscriptionPlan,
        data: dict[str, Any],
        metadata: dict[str, Any],
    ) -> Optional[PendingTransaction]:
        """Recreate a transaction the gateway knows about but we don't."""
        user_id = str(metadata.get("userId") or "").strip()
        amount = data.get("amount")
        if not user_id or not isinstance(amount, int) or amount <= 0:
            return None

        try:
            channel = PaymentChannel(metadata.get("payment_method") or data.get("channel"))
        except ValueError:
            channel = PaymentChannel.CARD

        now = self._clock()
        record = PendingTransaction(
            reference=reference,
            user_id=user_id,
            plan=plan,
            amount=amount,
            currency=str(data.get("currency") or "USD").upper(),
            channel=channel,
            created_at=now,
            updated_at=now,
        )
        logger.warning("reconciling_missing_transaction", reference=reference, user_id=user_id)
        try:
            await self._remote(self._store.remote.create_transaction(record))
        except DuplicateError:
            # Written concurrently by another device; use theirs
            existing = await self._remote(self._store.remote.get_transaction(reference))
            return existing or record
        return record

    async def _activate(
        self,
        transaction: PendingTransaction,
        plan: SubscriptionPlan,
        verified_at: datetime,
        correlation_id: Optional[UUID],
    ) -> VerificationResult:
        """
        Write the subscription period a settled transaction paid for.

        Safe to call repeatedly for the same transaction.
        """
        reference = transaction.reference

        try:
            existing = await self._remote(
                self._store.remote.get_subscription_by_reference(reference)
            )
        except Exception as e:
            logger.warning("subscription_lookup_failed", reference=reference, error=str(e))
            existing = None

        if existing is not None:
            if existing.status == SubscriptionState.ACTIVE and not existing.is_expired(self._clock()):
                await self._store.remember_active(existing)
                return self._result(
                    True, MESSAGE_ALREADY_ACTIVE, reference,
                    VerificationOutcome.ALREADY_ACTIVE,
                    plan=existing.plan, expires_at=existing.expires_at,
                )
            return self._result(
                False, MESSAGE_ALREADY_APPLIED, reference,
                VerificationOutcome.ALREADY_ACTIVE,
                plan=existing.plan, expires_at=existing.expires_at,
            )

        expires_at = expires_at_for_plan(plan, verified_at)
        snapshot = SubscriptionSnapshot(
            id=subscription_id_for_reference(reference),
            user_id=transaction.user_id,
            plan=plan,
            status=SubscriptionState.ACTIVE,
            started_at=verified_at,
            expires_at=expires_at,
            reference=reference,
            updated_at=self._clock(),
        )

        try:
            await self._remote(self._store.remote.upsert_subscription(snapshot))
        except Exception as e:
            logger.error("subscription_activation_failed", reference=reference, error=str(e))
            if self._audit_logger:
                await self._audit_logger.log_activation_failed(
                    user_id=transaction.user_id,
                    reference=reference,
                    error_message=str(e),
                    correlation_id=correlation_id,
                )
            return self._result(
                False, MESSAGE_ACTIVATION_PENDING, reference,
                VerificationOutcome.VERIFICATION_ERROR,
                plan=plan, expires_at=expires_at,
            )

        await self._store.remember_active(snapshot)

        logger.info(
            "subscription_activated",
            reference=reference,
            user_id=transaction.user_id,
            plan=plan.value,
        )
        if self._audit_logger:
            await self._audit_logger.log_subscription_activated(
                user_id=transaction.user_id,
                reference=reference,
                plan=plan.value,
                expires_at=expires_at,
                correlation_id=correlation_id,
            )
        return self._result(
            True, MESSAGE_ACTIVATED, reference, VerificationOutcome.ACTIVATED,
            plan=plan, expires_at=expires_at,
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _remote(self, call):
        return await asyncio.wait_for(call, timeout=self._remote_timeout)

    async def _conflict(
        self,
        reference: str,
        error_message: str,
        details: Optional[dict],
        correlation_id: Optional[UUID],
    ) -> VerificationResult:
        logger.error("payment_conflict", reference=reference, error=error_message)
        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.payment_conflict(
                reference=reference,
                error_message=error_message,
                details=details,
                correlation_id=correlation_id,
            ))
        return self._result(False, MESSAGE_CONFLICT, reference, VerificationOutcome.CONFLICT)

    @staticmethod
    def _result(
        success: bool,
        message: str,
        reference: str,
        outcome: VerificationOutcome,
        plan: Optional[SubscriptionPlan] = None,
        expires_at: Optional[datetime] = None,
    ) -> VerificationResult:
        return VerificationResult(
            success=success,
            message=message,
            reference=reference,
            outcome=outcome,
            plan=plan,
            expires_at=expires_at,
        )
