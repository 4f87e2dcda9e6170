"""
Payment Initiator

Opens a hosted Paystack payment page for a plan purchase.

CRITICAL ORDERING:
1. Validate the request
2. Persist a PENDING transaction
3. Only then ask the gateway for a payment page

If step 2 fails we never call the gateway: a payment nobody recorded is a
payment nobody can verify. If step 3 fails the record stays PENDING; a
later verify for that reference will settle it either way.

Nothing here grants entitlement. Only the verifier does.
"""

import asyncio
import itertools
import secrets
from datetime import datetime
from typing import Callable, Optional, Union
from uuid import UUID

import structlog
from pydantic import ValidationError

from cashflow_billing.audit import AuditLogger, create_correlation_id
from cashflow_billing.models.subscription import (
    MobileMoneyDetails,
    PaymentChannel,
    PaymentFailure,
    PaymentSession,
    PendingTransaction,
    SubscriptionPlan,
    TransactionStatus,
    utcnow,
)
from cashflow_billing.services.gateway import (
    GatewayRejectedError,
    GatewayUnreachableError,
    PaystackClient,
)
from cashflow_billing.services.storage import EntitlementStore


logger = structlog.get_logger(__name__)

DEFAULT_CALLBACK_URL = "cashflowtracker://payment/callback"

_reference_counter = itertools.count(1)


def new_reference(user_id: str, now: datetime) -> str:
    """
    Build a unique payment reference.

    SUB_{user_id}_{epoch_ms}_{counter}{random hex}. The counter separates
    retries within the same millisecond, the random suffix separates processes.
    """
    epoch_ms = int(now.timestamp() * 1000)
    return f"SUB_{user_id}_{epoch_ms}_{next(_reference_counter)}{secrets.token_hex(3)}"


class PaymentInitiator:
    """Creates pending transactions and opens gateway payment sessions."""

    def __init__(
        self,
        store: EntitlementStore,
        gateway: PaystackClient,
        audit_logger: Optional[AuditLogger] = None,
        callback_url: str = DEFAULT_CALLBACK_URL,
        card_currency: str = "USD",
        mobile_money_currency: str = "KES",
        mobile_money_provider: str = "mpesa",
        remote_timeout_seconds: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._gateway = gateway
        self._audit_logger = audit_logger
        self._callback_url = callback_url
        self._currencies = {
            PaymentChannel.CARD: card_currency,
            PaymentChannel.MOBILE_MONEY: mobile_money_currency,
        }
        self._mobile_money_provider = mobile_money_provider
        self._remote_timeout = remote_timeout_seconds
        self._clock = clock

    @property
    def callback_url(self) -> str:
        return self._callback_url

    async def initiate(
        self,
        user_id: str,
        email: str,
        plan: Union[SubscriptionPlan, str],
        amount_minor_units: int,
        channel: Union[PaymentChannel, str] = PaymentChannel.CARD,
        mobile_money: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Union[PaymentSession, PaymentFailure]:
        """
        Start a payment.

        Args:
            user_id: Paying user
            email: Receipt address required by the gateway
            plan: daily, monthly or yearly
            amount_minor_units: Amount in cents of the channel currency
            channel: card or mobile_money
            mobile_money: Phone number, required for mobile_money

        Returns:
            PaymentSession on success, PaymentFailure otherwise.
            Gateway and storage errors are never raised.
        """
        correlation_id = correlation_id or create_correlation_id()

        # Step 1: Validate
        try:
            plan = SubscriptionPlan(plan)
        except ValueError:
            return await self._fail(user_id, f"Unknown plan: {plan}", None, correlation_id)
        try:
            channel = PaymentChannel(channel)
        except ValueError:
            return await self._fail(
                user_id, f"Unsupported payment method: {channel}", None, correlation_id
            )
        if not isinstance(amount_minor_units, int) or amount_minor_units <= 0:
            return await self._fail(
                user_id, "Amount must be greater than zero", None, correlation_id
            )
        if not email or "@" not in email:
            return await self._fail(
                user_id, "A valid email address is required", None, correlation_id
            )

        details = None
        if channel == PaymentChannel.MOBILE_MONEY:
            try:
                details = MobileMoneyDetails(
                    phone_number=mobile_money or "",
                    provider=self._mobile_money_provider,
                )
            except ValidationError as e:
                reason = e.errors()[0]["msg"].removeprefix("Value error, ")
                return await self._fail(user_id, reason, None, correlation_id)

        # Step 2: Persist PENDING before touching the gateway
        now = self._clock()
        reference = new_reference(user_id, now)
        currency = self._currencies[channel]
        transaction = PendingTransaction(
            reference=reference,
            user_id=user_id,
            plan=plan,
            amount=amount_minor_units,
            currency=currency,
            channel=channel,
            created_at=now,
            updated_at=now,
        )
        try:
            await asyncio.wait_for(
                self._store.remote.create_transaction(transaction),
                timeout=self._remote_timeout,
            )
        except Exception as e:
            logger.error("pending_transaction_write_failed", reference=reference, error=str(e))
            return await self._fail(
                user_id,
                "Could not start the payment. Please check your connection and try again.",
                None,
                correlation_id,
            )

        # Step 3: Open the hosted payment page
        metadata = {
            "plan": plan.value,
            "userId": user_id,
            "payment_method": channel.value,
        }
        try:
            data = await self._gateway.initialize_transaction(
                email=email,
                amount=amount_minor_units,
                currency=currency,
                reference=reference,
                callback_url=self._callback_url,
                metadata=metadata,
                channels=[channel.value] if details else None,
                mobile_money=(
                    {"phone": details.phone_number, "provider": details.provider}
                    if details else None
                ),
            )
        except GatewayRejectedError as e:
            return await self._fail(
                user_id, f"Payment could not be started: {e}", reference, correlation_id
            )
        except GatewayUnreachableError as e:
            if self._audit_logger:
                await self._audit_logger.log_external_service_error(
                    service="paystack",
                    error_message=str(e),
                    correlation_id=correlation_id,
                )
            return await self._fail(
                user_id,
                "Could not reach the payment service. Please try again.",
                reference,
                correlation_id,
            )

        # Best-effort: keep the gateway's answer with the record
        try:
            await asyncio.wait_for(
                self._store.remote.update_transaction(
                    reference, TransactionStatus.PENDING, gateway_payload=data
                ),
                timeout=self._remote_timeout,
            )
        except Exception as e:
            logger.warning("gateway_payload_not_saved", reference=reference, error=str(e))

        if self._audit_logger:
            await self._audit_logger.log_payment_initiated(
                reference=reference,
                user_id=user_id,
                plan=plan.value,
                amount=amount_minor_units,
                currency=currency,
                channel=channel.value,
                correlation_id=correlation_id,
            )

        return PaymentSession(
            reference=reference,
            redirect_url=data["authorization_url"],
            access_code=data.get("access_code"),
            user_id=user_id,
            plan=plan,
            amount=amount_minor_units,
            currency=currency,
            channel=channel,
            correlation_id=correlation_id,
        )

    async def _fail(
        self,
        user_id: str,
        reason: str,
        reference: Optional[str],
        correlation_id: UUID,
    ) -> PaymentFailure:
        logger.warning("payment_initiation_failed", user_id=user_id, reason=reason, reference=reference)
        if self._audit_logger:
            await self._audit_logger.log_payment_initiation_failed(
                user_id=user_id,
                reason=reason,
                reference=reference,
                correlation_id=correlation_id,
            )
        return PaymentFailure(reason=reason, reference=reference)
