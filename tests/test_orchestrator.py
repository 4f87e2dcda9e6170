"""
End-to-end flows through SubscriptionService.

These use the in-memory stores and the fake gateway from conftest.
"""

import pytest
from datetime import timedelta

from cashflow_billing.config import BillingSettings, get_settings
from cashflow_billing.models.subscription import (
    PaymentFailure,
    PaymentSession,
    StatusSource,
    SubscriptionState,
    TransactionStatus,
    VerificationOutcome,
)
from cashflow_billing.orchestrator import SubscriptionService, create_app_components
from cashflow_billing.services.storage import (
    EntitlementStore,
    InMemoryCache,
    InMemoryEntitlementStore,
)


async def _buy(service, gateway, plan="monthly", amount=100) -> PaymentSession:
    await service.resolve("user-1")  # session start
    session = await service.initiate("user-1", "a@example.com", plan)
    assert isinstance(session, PaymentSession)
    gateway.succeed(amount=amount, plan=plan)
    return session


class TestPurchaseFlow:
    """initiate -> hosted page -> verify -> resolve"""

    @pytest.mark.asyncio
    async def test_catalogue_price_used_by_default(self, service, gateway):
        session = await service.initiate("user-1", "a@example.com", "yearly")
        assert session.amount == 1000
        assert gateway.initialize_calls[0]["amount"] == 1000

        mpesa = await service.initiate(
            "user-1", "a@example.com", "daily",
            channel="mobile_money", mobile_money="0712345678",
        )
        assert mpesa.amount == 6500
        assert mpesa.currency == "KES"

    @pytest.mark.asyncio
    async def test_unknown_plan_fails_without_raising(self, service, gateway):
        result = await service.initiate("user-1", "a@example.com", "lifetime")
        assert isinstance(result, PaymentFailure)
        assert gateway.initialize_calls == []

    @pytest.mark.asyncio
    async def test_redirect_then_resolve(self, service, gateway):
        session = await _buy(service, gateway)
        interceptor = service.open_payment_session(session)

        await interceptor.on_navigation(session.redirect_url)
        result = await interceptor.on_navigation(
            f"cashflowtracker://payment/callback?trxref={session.reference}&reference={session.reference}"
        )
        assert result.outcome == VerificationOutcome.ACTIVATED

        status = await service.resolve("user-1")
        assert status.source == StatusSource.REMOTE
        assert status.plan == "monthly"
        assert status.is_trial is False

    @pytest.mark.asyncio
    async def test_monthly_lapse_falls_back_and_prompts(self, service, gateway, clock):
        """Bought on day 0, checked on day 40: expired, prompt shown."""
        session = await _buy(service, gateway)
        await service.verify(session.reference)

        clock.advance(days=40)
        status = await service.resolve("user-1")
        await service.drain()

        assert status.is_active is False
        assert status.is_trial is False
        assert status.trial_ended is True
        assert status.source == StatusSource.EXPIRED
        assert await service.should_prompt_for_subscription("user-1") is True

    @pytest.mark.asyncio
    async def test_network_error_changes_nothing(self, service, gateway, remote, gateway_down):
        session = await _buy(service, gateway)
        gateway.verify_error = gateway_down

        result = await service.verify(session.reference)
        status = await service.resolve("user-1")

        assert result.outcome == VerificationOutcome.VERIFICATION_ERROR
        assert remote.transactions[session.reference].status == TransactionStatus.PENDING
        assert status.source == StatusSource.TRIAL


class TestAccountMaintenance:
    """Cancel, rewarded access, trial reset."""

    @pytest.mark.asyncio
    async def test_cancel_keeps_lapsed_flag(self, service, gateway, remote, store, clock):
        session = await _buy(service, gateway)
        await service.verify(session.reference)

        assert await service.cancel_subscription("user-1") is True

        assert all(
            s.status == SubscriptionState.CANCELLED for s in remote.subscriptions.values()
        )
        assert await store.get_cached_snapshot("user-1") is None
        assert await store.has_subscribed("user-1") is True

        clock.advance(days=15)
        assert await service.should_prompt_for_subscription("user-1") is True

    @pytest.mark.asyncio
    async def test_rewarded_access(self, service, clock):
        await service.resolve("user-1")
        clock.advance(days=15)

        expires_at = await service.grant_rewarded_access("user-1")
        status = await service.resolve("user-1")

        assert expires_at == clock.now + timedelta(hours=24)
        assert status.is_rewarded is True
        assert status.is_active is True

    @pytest.mark.asyncio
    async def test_reset_trial(self, service, store, clock):
        await service.resolve("user-1")
        clock.advance(days=20)

        assert await service.reset_trial("user-1") is True
        status = await service.resolve("user-1")

        assert status.source == StatusSource.TRIAL
        assert status.days_remaining == 14

    @pytest.mark.asyncio
    async def test_reset_trial_refused_in_production(self, gateway, clock):
        store = EntitlementStore(InMemoryEntitlementStore(), InMemoryCache())
        service = SubscriptionService(
            store,
            gateway,
            billing_settings=BillingSettings(),
            is_production=True,
            clock=clock,
        )
        await service.resolve("user-1")

        assert await service.reset_trial("user-1") is False
        assert await store.get_trial_record("user-1") is not None


class TestCreateAppComponents:
    """Factory wiring."""

    def test_without_storage(self, monkeypatch):
        monkeypatch.setenv("PAYSTACK_SECRET_KEY", "sk_test_123")
        get_settings.cache_clear()
        try:
            service, sheets_client = create_app_components(use_storage=False)
        finally:
            get_settings.cache_clear()

        assert isinstance(service, SubscriptionService)
        assert sheets_client is None
