"""
Redirect Interceptor

Watches the navigations of the hosted payment page and decides when the
payment flow has reached its end, then hands over to the verifier.

A redirect URL is only a hint that the user is done. It is never proof
of payment: "status=success" in a URL can be typed by anyone. The verifier
asks the gateway.

One payment session gets at most one verification in flight. Gateways
commonly fire several terminal navigations in a row (redirect, then
callback deep link), and the user may also tap "I've paid" at any time.
"""

import asyncio
from enum import Enum
from typing import Optional
from urllib.parse import parse_qs, urlsplit

import structlog

from cashflow_billing.audit import AuditLogger
from cashflow_billing.billing.verifier import PaymentVerifier
from cashflow_billing.models.audit import AuditEvent, AuditEventBuilder
from cashflow_billing.models.subscription import (
    NavigationOutcome,
    PaymentSession,
    VerificationResult,
)


logger = structlog.get_logger(__name__)

SUCCESS_MARKERS = ("status=success", "payment/success")
REFERENCE_PARAMS = ("reference", "trxref")


def classify(url: str, callback_url: str) -> NavigationOutcome:
    """
    Decide whether a navigation ends the payment flow.

    Terminal when the URL is the app callback, carries a success marker,
    or carries a reference query parameter.
    """
    if not url:
        return NavigationOutcome(terminal=False)

    query = parse_qs(urlsplit(url).query)
    reference = None
    for name in REFERENCE_PARAMS:
        values = [v for v in query.get(name, []) if v.strip()]
        if values:
            reference = values[0].strip()
            break

    terminal = (
        (bool(callback_url) and url.startswith(callback_url))
        or any(marker in url for marker in SUCCESS_MARKERS)
        or reference is not None
    )
    return NavigationOutcome(terminal=terminal, reference=reference if terminal else None)


class InterceptorState(str, Enum):
    LOADING = "loading"
    NAVIGATING = "navigating"
    VERIFYING = "verifying"
    COMPLETED = "completed"


class RedirectInterceptor:
    """
    Per-session state machine: loading -> navigating -> verifying -> completed.

    A successful verification is final and is returned for every later event.
    An unsuccessful one can be retried by the next terminal navigation or a
    manual confirmation.
    """

    def __init__(
        self,
        session: PaymentSession,
        verifier: PaymentVerifier,
        callback_url: str,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._session = session
        self._verifier = verifier
        self._callback_url = callback_url
        self._audit_logger = audit_logger
        self._state = InterceptorState.LOADING
        self._inflight: Optional[asyncio.Future] = None
        self._result: Optional[VerificationResult] = None

    @property
    def state(self) -> InterceptorState:
        return self._state

    @property
    def session(self) -> PaymentSession:
        return self._session

    @property
    def result(self) -> Optional[VerificationResult]:
        return self._result

    async def on_navigation(self, url: str) -> Optional[VerificationResult]:
        """
        Feed one navigation URL.

        Returns:
            The verification result when this navigation triggered (or follows)
            a verification, None when nothing happened or one is already running.
        """
        if self._succeeded():
            return self._result

        outcome = classify(url, self._callback_url)
        if not outcome.terminal:
            if self._state == InterceptorState.LOADING:
                self._state = InterceptorState.NAVIGATING
            return None

        if self._inflight is not None:
            logger.info("terminal_navigation_ignored", reference=self._session.reference)
            return None

        reference = outcome.reference or self._session.reference
        if reference != self._session.reference:
            logger.warning(
                "navigation_reference_mismatch",
                session_reference=self._session.reference,
                url_reference=reference,
            )
        return await self._run(reference, AuditEventBuilder.terminal_navigation(
            reference=reference,
            url=url,
            correlation_id=self._session.correlation_id,
        ))

    async def confirm_manually(self) -> VerificationResult:
        """
        The user says they have paid.

        Joins a running verification instead of starting a second one.
        """
        if self._succeeded():
            return self._result
        if self._inflight is not None:
            return await asyncio.shield(self._inflight)

        return await self._run(
            self._session.reference,
            AuditEventBuilder.manual_confirmation(
                reference=self._session.reference,
                correlation_id=self._session.correlation_id,
            ),
        )

    def _succeeded(self) -> bool:
        return self._result is not None and self._result.success

    async def _run(self, reference: str, audit_event: AuditEvent) -> VerificationResult:
        # The in-flight future must exist before the first await.
        self._state = InterceptorState.VERIFYING
        self._inflight = asyncio.ensure_future(self._audited_verify(reference, audit_event))
        try:
            result = await self._inflight
        finally:
            self._inflight = None
            self._state = InterceptorState.COMPLETED

        self._result = result
        return result

    async def _audited_verify(self, reference: str, audit_event: AuditEvent) -> VerificationResult:
        if self._audit_logger:
            await self._audit_logger.log(audit_event)
        return await self._verifier.verify(
            reference,
            expected_plan=self._session.plan,
            correlation_id=self._session.correlation_id,
        )
