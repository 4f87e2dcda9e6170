"""
Payment Gateway Package

Paystack is the only gateway. The billing components depend on the
two-method shape of PaystackClient (initialize_transaction, verify_transaction)
so tests can substitute a fake.
"""

from cashflow_billing.services.gateway.paystack import (
    DEFAULT_PAYSTACK_API_URL,
    GatewayError,
    GatewayRejectedError,
    GatewayUnreachableError,
    PaystackClient,
)

__all__ = [
    "DEFAULT_PAYSTACK_API_URL",
    "GatewayError",
    "GatewayRejectedError",
    "GatewayUnreachableError",
    "PaystackClient",
]
