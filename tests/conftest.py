"""
Shared fixtures.

No test talks to Paystack or Google: the remote store, cache and audit
log are in-memory, and the gateway is a scripted fake.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from cashflow_billing.audit import AuditLogger
from cashflow_billing.billing import (
    EntitlementResolver,
    PaymentInitiator,
    PaymentVerifier,
)
from cashflow_billing.config import BillingSettings
from cashflow_billing.orchestrator import SubscriptionService
from cashflow_billing.services.gateway import GatewayUnreachableError
from cashflow_billing.services.storage import (
    EntitlementStore,
    InMemoryAuditStorage,
    InMemoryCache,
    InMemoryEntitlementStore,
    RemoteUnavailableError,
)


T0 = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGateway:
    """Scripted stand-in for PaystackClient."""

    def __init__(self):
        self.initialize_calls: list[dict[str, Any]] = []
        self.verify_calls: list[str] = []
        self.initialize_error: Optional[Exception] = None
        self.verify_error: Optional[Exception] = None
        self.verify_data: dict[str, Any] = {"status": "pending"}
        self.verify_delay: float = 0.0

    def succeed(
        self,
        amount: int,
        currency: str = "USD",
        plan: str = "monthly",
        user_id: str = "user-1",
        channel: str = "card",
    ) -> None:
        self.verify_data = {
            "status": "success",
            "amount": amount,
            "currency": currency,
            "channel": channel,
            "metadata": {"plan": plan, "userId": user_id, "payment_method": channel},
        }

    async def initialize_transaction(self, **kwargs) -> dict[str, Any]:
        self.initialize_calls.append(kwargs)
        if self.initialize_error:
            raise self.initialize_error
        reference = kwargs["reference"]
        return {
            "authorization_url": f"https://checkout.paystack.com/{reference}",
            "access_code": "ac_test",
            "reference": reference,
        }

    async def verify_transaction(self, reference: str) -> dict[str, Any]:
        self.verify_calls.append(reference)
        if self.verify_delay:
            await asyncio.sleep(self.verify_delay)
        if self.verify_error:
            raise self.verify_error
        return dict(self.verify_data)


class UnreachableRemote(InMemoryEntitlementStore):
    """Remote store whose reads all fail."""

    async def get_latest_subscription(self, user_id, status=None):
        raise RemoteUnavailableError("network down")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def remote():
    return InMemoryEntitlementStore()


@pytest.fixture
def cache():
    return InMemoryCache()


@pytest.fixture
def store(remote, cache):
    return EntitlementStore(remote, cache)


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


@pytest.fixture
def audit_logger(audit_storage):
    return AuditLogger(audit_storage)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def resolver(store, audit_logger, clock):
    return EntitlementResolver(
        store,
        audit_logger=audit_logger,
        trial_duration_days=14,
        remote_timeout_seconds=0.5,
        clock=clock,
    )


@pytest.fixture
def initiator(store, gateway, audit_logger, clock):
    return PaymentInitiator(store, gateway, audit_logger=audit_logger, clock=clock)


@pytest.fixture
def verifier(store, gateway, audit_logger, clock):
    return PaymentVerifier(store, gateway, audit_logger=audit_logger, clock=clock)


@pytest.fixture
def service(store, gateway, audit_logger, clock):
    return SubscriptionService(
        store,
        gateway,
        audit_logger=audit_logger,
        billing_settings=BillingSettings(remote_timeout_seconds=0.5),
        clock=clock,
    )


@pytest.fixture
def gateway_down():
    return GatewayUnreachableError("connection refused")
