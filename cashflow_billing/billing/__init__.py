"""
Billing Package

Entitlement resolution and the payment flow:
initiator -> (hosted page) -> interceptor -> verifier -> entitlement store.
"""

from cashflow_billing.billing.initiator import PaymentInitiator, new_reference
from cashflow_billing.billing.interceptor import (
    InterceptorState,
    RedirectInterceptor,
    classify,
)
from cashflow_billing.billing.plans import (
    PLAN_LABELS,
    PLAN_PRICES_USD,
    add_calendar_month,
    amount_for_plan,
    expires_at_for_plan,
)
from cashflow_billing.billing.resolver import EntitlementResolver, days_until
from cashflow_billing.billing.trial import (
    DEFAULT_TRIAL_DURATION_DAYS,
    trial_message,
    trial_state,
    trial_status_description,
)
from cashflow_billing.billing.verifier import (
    PaymentVerifier,
    subscription_id_for_reference,
)

__all__ = [
    # Trial clock
    "DEFAULT_TRIAL_DURATION_DAYS",
    "trial_message",
    "trial_state",
    "trial_status_description",
    # Plans
    "PLAN_LABELS",
    "PLAN_PRICES_USD",
    "add_calendar_month",
    "amount_for_plan",
    "expires_at_for_plan",
    # Components
    "EntitlementResolver",
    "InterceptorState",
    "PaymentInitiator",
    "PaymentVerifier",
    "RedirectInterceptor",
    # Helpers
    "classify",
    "days_until",
    "new_reference",
    "subscription_id_for_reference",
]
