"""
Main Orchestrator for Cashflow Billing

This module ties together all the components and exposes the single
upward API the app talks to:
1. Entitlement (resolve, should_prompt_for_subscription)
2. Payment (initiate -> open_payment_session -> verify)
3. Account maintenance (cancel, rewarded access, trial reset)

DESIGN DECISION: Nothing here raises into the caller.
The screens calling this have no sensible way to handle a storage or
gateway exception. Every failure is turned into a status, a
PaymentFailure or a VerificationResult with a message a user can act on,
and is logged and audited on the way.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

import structlog

from cashflow_billing.audit import AuditLogger
from cashflow_billing.billing import (
    EntitlementResolver,
    PaymentInitiator,
    PaymentVerifier,
    RedirectInterceptor,
    amount_for_plan,
)
from cashflow_billing.config import BillingSettings, get_settings
from cashflow_billing.models.audit import AuditEventBuilder
from cashflow_billing.models.subscription import (
    PaymentChannel,
    PaymentFailure,
    PaymentSession,
    SubscriptionPlan,
    SubscriptionStatus,
    VerificationOutcome,
    VerificationResult,
    utcnow,
)
from cashflow_billing.services.gateway import PaystackClient
from cashflow_billing.services.storage import (
    EntitlementStore,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsEntitlementStore,
    InMemoryCache,
    InMemoryEntitlementStore,
    JsonFileCache,
)


logger = structlog.get_logger(__name__)


class SubscriptionService:
    """
    Upward facade over the billing components.

    Flow for a purchase:
    1. initiate() -> PaymentSession (hosted page URL)
    2. open_payment_session() -> RedirectInterceptor fed by the web view
    3. The interceptor calls verify() once the flow reaches its end
    4. resolve() reflects the new entitlement
    """

    def __init__(
        self,
        store: EntitlementStore,
        gateway: PaystackClient,
        audit_logger: Optional[AuditLogger] = None,
        billing_settings: Optional[BillingSettings] = None,
        is_production: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = billing_settings or BillingSettings()

        self._store = store
        self._audit_logger = audit_logger
        self._settings = settings
        self._is_production = is_production
        self._clock = clock

        self._resolver = EntitlementResolver(
            store,
            audit_logger=audit_logger,
            trial_duration_days=settings.trial_duration_days,
            remote_timeout_seconds=settings.remote_timeout_seconds,
            clock=clock,
        )
        self._initiator = PaymentInitiator(
            store,
            gateway,
            audit_logger=audit_logger,
            callback_url=settings.callback_url,
            card_currency=settings.card_currency,
            mobile_money_currency=settings.mobile_money_currency,
            mobile_money_provider=settings.mobile_money_provider,
            remote_timeout_seconds=settings.remote_timeout_seconds,
            clock=clock,
        )
        self._verifier = PaymentVerifier(
            store,
            gateway,
            audit_logger=audit_logger,
            remote_timeout_seconds=settings.remote_timeout_seconds,
            clock=clock,
        )

    @property
    def resolver(self) -> EntitlementResolver:
        return self._resolver

    @property
    def verifier(self) -> PaymentVerifier:
        return self._verifier

    # -------------------------------------------------------------------------
    # Entitlement
    # -------------------------------------------------------------------------

    async def resolve(self, user_id: str) -> SubscriptionStatus:
        """Current entitlement for a user. Fails open."""
        return await self._resolver.resolve(user_id)

    async def should_prompt_for_subscription(self, user_id: str) -> bool:
        try:
            return await self._resolver.should_prompt_for_subscription(user_id)
        except Exception as e:
            logger.error("subscription_prompt_check_failed", user_id=user_id, error=str(e))
            return False

    # -------------------------------------------------------------------------
    # Payment
    # -------------------------------------------------------------------------

    async def initiate(
        self,
        user_id: str,
        email: str,
        plan: Union[SubscriptionPlan, str],
        amount_minor_units: Optional[int] = None,
        channel: Union[PaymentChannel, str] = PaymentChannel.CARD,
        mobile_money: Optional[str] = None,
    ) -> Union[PaymentSession, PaymentFailure]:
        """
        Start a purchase.

        When no amount is given the catalogue price for the plan and
        channel is used.
        """
        try:
            if amount_minor_units is None:
                amount_minor_units = amount_for_plan(
                    SubscriptionPlan(plan),
                    PaymentChannel(channel),
                    self._settings.kes_per_usd,
                )
            return await self._initiator.initiate(
                user_id=user_id,
                email=email,
                plan=plan,
                amount_minor_units=amount_minor_units,
                channel=channel,
                mobile_money=mobile_money,
            )
        except ValueError as e:
            return PaymentFailure(reason=f"Invalid payment request: {e}")
        except Exception as e:
            logger.error("payment_initiation_crashed", user_id=user_id, error=str(e))
            if self._audit_logger:
                await self._audit_logger.log_error(
                    error_type="payment_initiation_crashed",
                    error_message=str(e),
                    details={"user_id": user_id},
                )
            return PaymentFailure(reason="Could not start the payment. Please try again.")

    def open_payment_session(self, session: PaymentSession) -> RedirectInterceptor:
        """Interceptor for the hosted page of one payment session."""
        return RedirectInterceptor(
            session,
            self._verifier,
            callback_url=self._settings.callback_url,
            audit_logger=self._audit_logger,
        )

    async def verify(
        self,
        reference: str,
        expected_plan: Optional[Union[SubscriptionPlan, str]] = None,
    ) -> VerificationResult:
        try:
            return await self._verifier.verify(reference, expected_plan=expected_plan)
        except Exception as e:
            logger.error("verification_crashed", reference=reference, error=str(e))
            return VerificationResult(
                success=False,
                message="We couldn't confirm your payment right now. Please try again.",
                reference=reference or "",
                outcome=VerificationOutcome.VERIFICATION_ERROR,
            )

    # -------------------------------------------------------------------------
    # Account maintenance
    # -------------------------------------------------------------------------

    async def cancel_subscription(self, user_id: str) -> bool:
        """
        Cancel all of the user's active subscription periods.

        The has-subscribed flag stays set: the user is still a lapsed
        subscriber for prompting purposes.

        Returns True if the remote store accepted the cancellation.
        """
        try:
            count = await asyncio.wait_for(
                self._store.remote.cancel_subscriptions(user_id),
                timeout=self._settings.remote_timeout_seconds,
            )
        except Exception as e:
            logger.error("subscription_cancel_failed", user_id=user_id, error=str(e))
            if self._audit_logger:
                await self._audit_logger.log_external_service_error(
                    service="entitlement_store",
                    error_message=str(e),
                )
            return False

        await self._store.forget_active(user_id)
        if self._audit_logger:
            await self._audit_logger.log(
                AuditEventBuilder.subscription_cancelled(user_id, count)
            )
        return True

    async def grant_rewarded_access(self, user_id: str) -> Optional[datetime]:
        """
        Grant temporary access after the trial.

        Returns the new expiry, or None if it could not be stored.
        """
        expires_at = self._clock() + timedelta(hours=self._settings.rewarded_access_hours)
        try:
            await self._store.set_rewarded_expiry(user_id, expires_at)
        except Exception as e:
            logger.error("rewarded_access_grant_failed", user_id=user_id, error=str(e))
            return None

        if self._audit_logger:
            await self._audit_logger.log(
                AuditEventBuilder.rewarded_access_granted(user_id, expires_at)
            )
        return expires_at

    async def reset_trial(self, user_id: str) -> bool:
        """
        Forget the user's trial start (testing only).

        Refused in production.
        """
        if self._is_production:
            logger.warning("trial_reset_refused", user_id=user_id)
            return False
        try:
            await self._store.delete_trial_record(user_id)
        except Exception as e:
            logger.error("trial_reset_failed", user_id=user_id, error=str(e))
            return False

        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.trial_reset(user_id))
        return True

    async def drain(self) -> None:
        """Wait for background work (expiry corrections). Call at shutdown."""
        await self._resolver.drain()


def create_app_components(
    use_storage: bool = True,
) -> tuple[SubscriptionService, Optional[GoogleSheetsClient]]:
    """
    Factory function to create all application components.

    Args:
        use_storage: Whether to initialize Google Sheets storage and the
                    file cache. Set to False for testing without storage.

    Returns:
        (subscription_service, sheets_client)

    Raises:
        pydantic.ValidationError: If Paystack is not configured
    """
    settings = get_settings()
    billing = settings.billing
    gateway = PaystackClient.from_settings(settings.paystack)

    sheets_client = None
    remote = None
    cache = None
    audit_logger = None

    if use_storage:
        cache = JsonFileCache(billing.cache_path)
        try:
            sheets_client = GoogleSheetsClient()
            remote = GoogleSheetsEntitlementStore(sheets_client)
            audit_logger = AuditLogger(GoogleSheetsAuditStorage(sheets_client))
        except Exception as e:
            # Storage not configured - continue without it
            logger.warning("remote_storage_not_configured", error=str(e))
            sheets_client = None
            remote = None

    if remote is None:
        remote = InMemoryEntitlementStore()
    if cache is None:
        cache = InMemoryCache()
    if audit_logger is None:
        audit_logger = AuditLogger()  # Local-only logging

    service = SubscriptionService(
        EntitlementStore(remote, cache),
        gateway,
        audit_logger=audit_logger,
        billing_settings=billing,
        is_production=settings.app.is_production,
    )
    return service, sheets_client
