"""Tests for URL classification and the redirect interceptor."""

import asyncio
import pytest

from cashflow_billing.audit import AuditLogger
from cashflow_billing.billing import InterceptorState, RedirectInterceptor, classify
from cashflow_billing.models.subscription import (
    PaymentChannel,
    PaymentSession,
    SubscriptionPlan,
    VerificationOutcome,
    VerificationResult,
)
from cashflow_billing.services.storage import InMemoryAuditStorage


CALLBACK = "cashflowtracker://payment/callback"
REFERENCE = "SUB_user-1_1767258000000_1abc123"


def _session() -> PaymentSession:
    return PaymentSession(
        reference=REFERENCE,
        redirect_url=f"https://checkout.paystack.com/{REFERENCE}",
        access_code="ac_test",
        user_id="user-1",
        plan=SubscriptionPlan.MONTHLY,
        amount=100,
        currency="USD",
        channel=PaymentChannel.CARD,
    )


class ScriptedVerifier:
    """Counts calls; each call waits on `release` before answering."""

    def __init__(self, *results: VerificationResult):
        self.calls: list[str] = []
        self.results = list(results)
        self.release = asyncio.Event()
        self.release.set()

    async def verify(self, reference, expected_plan=None, correlation_id=None):
        self.calls.append(reference)
        await self.release.wait()
        return self.results.pop(0)


class SlowAuditStorage(InMemoryAuditStorage):
    """Yields to the loop on every write, like a remote sheet."""

    async def append_event(self, event):
        await asyncio.sleep(0.01)
        return await super().append_event(event)


def _result(success: bool, outcome: VerificationOutcome) -> VerificationResult:
    return VerificationResult(
        success=success, message="", reference=REFERENCE, outcome=outcome
    )


ACTIVATED = _result(True, VerificationOutcome.ACTIVATED)
PENDING = _result(False, VerificationOutcome.PENDING)


class TestClassify:
    """Pure URL classification."""

    def test_checkout_page_is_not_terminal(self):
        outcome = classify("https://checkout.paystack.com/abc", CALLBACK)
        assert outcome.terminal is False
        assert outcome.reference is None

    def test_callback_with_reference(self):
        outcome = classify(f"{CALLBACK}?trxref={REFERENCE}&reference={REFERENCE}", CALLBACK)
        assert outcome.terminal is True
        assert outcome.reference == REFERENCE

    def test_callback_without_reference(self):
        outcome = classify(CALLBACK, CALLBACK)
        assert outcome.terminal is True
        assert outcome.reference is None

    def test_trxref_only(self):
        outcome = classify(f"https://example.com/return?trxref={REFERENCE}", CALLBACK)
        assert outcome.terminal is True
        assert outcome.reference == REFERENCE

    @pytest.mark.parametrize("url", [
        "https://checkout.paystack.com/close?status=success",
        "https://standard.paystack.co/payment/success",
    ])
    def test_success_markers(self, url):
        assert classify(url, CALLBACK).terminal is True

    def test_empty_url(self):
        assert classify("", CALLBACK).terminal is False


class TestRedirectInterceptor:
    """One verification per terminal transition."""

    @pytest.mark.asyncio
    async def test_states(self):
        verifier = ScriptedVerifier(ACTIVATED)
        interceptor = RedirectInterceptor(_session(), verifier, CALLBACK)
        assert interceptor.state == InterceptorState.LOADING

        assert await interceptor.on_navigation("https://checkout.paystack.com/abc") is None
        assert interceptor.state == InterceptorState.NAVIGATING

        result = await interceptor.on_navigation(f"{CALLBACK}?reference={REFERENCE}")
        assert result == ACTIVATED
        assert interceptor.state == InterceptorState.COMPLETED

    @pytest.mark.asyncio
    async def test_duplicate_terminal_events_verify_once(self):
        verifier = ScriptedVerifier(ACTIVATED)
        verifier.release.clear()
        interceptor = RedirectInterceptor(_session(), verifier, CALLBACK)

        first = asyncio.create_task(
            interceptor.on_navigation(f"{CALLBACK}?reference={REFERENCE}")
        )
        await asyncio.sleep(0)
        assert interceptor.state == InterceptorState.VERIFYING

        assert await interceptor.on_navigation("https://x.test/payment/success") is None
        assert await interceptor.on_navigation(f"{CALLBACK}?trxref={REFERENCE}") is None

        verifier.release.set()
        assert await first == ACTIVATED
        assert verifier.calls == [REFERENCE]

    @pytest.mark.asyncio
    async def test_manual_confirmation_joins_running_verification(self):
        verifier = ScriptedVerifier(ACTIVATED)
        verifier.release.clear()
        interceptor = RedirectInterceptor(_session(), verifier, CALLBACK)

        navigation = asyncio.create_task(interceptor.on_navigation(CALLBACK))
        await asyncio.sleep(0)
        manual = asyncio.create_task(interceptor.confirm_manually())
        await asyncio.sleep(0)

        verifier.release.set()
        assert await navigation == ACTIVATED
        assert await manual == ACTIVATED
        assert len(verifier.calls) == 1

    @pytest.mark.asyncio
    async def test_success_is_final(self):
        verifier = ScriptedVerifier(ACTIVATED)
        interceptor = RedirectInterceptor(_session(), verifier, CALLBACK)

        await interceptor.on_navigation(CALLBACK)
        assert await interceptor.on_navigation(CALLBACK) == ACTIVATED
        assert await interceptor.confirm_manually() == ACTIVATED
        assert len(verifier.calls) == 1

    @pytest.mark.asyncio
    async def test_unsuccessful_verification_can_be_retried(self):
        verifier = ScriptedVerifier(PENDING, ACTIVATED)
        interceptor = RedirectInterceptor(_session(), verifier, CALLBACK)

        assert await interceptor.on_navigation(CALLBACK) == PENDING
        assert await interceptor.confirm_manually() == ACTIVATED
        assert len(verifier.calls) == 2

    @pytest.mark.asyncio
    async def test_session_reference_used_without_url_reference(self):
        verifier = ScriptedVerifier(ACTIVATED)
        interceptor = RedirectInterceptor(_session(), verifier, CALLBACK)

        await interceptor.on_navigation("https://x.test/close?status=success")
        assert verifier.calls == [REFERENCE]

    @pytest.mark.asyncio
    async def test_slow_audit_write_does_not_allow_second_verification(self):
        verifier = ScriptedVerifier(PENDING, PENDING)
        interceptor = RedirectInterceptor(
            _session(), verifier, CALLBACK, audit_logger=AuditLogger(SlowAuditStorage())
        )

        results = await asyncio.gather(
            interceptor.on_navigation(f"{CALLBACK}?reference={REFERENCE}"),
            interceptor.on_navigation(f"{CALLBACK}?reference={REFERENCE}"),
        )

        assert results.count(PENDING) == 1
        assert results.count(None) == 1
        assert verifier.calls == [REFERENCE]
