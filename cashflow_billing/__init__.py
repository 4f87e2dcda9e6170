"""
Cashflow Billing - Source Package

Subscription entitlement and payment verification for the Cashflow
personal-finance tracker.

DESIGN PRINCIPLES:
1. The gateway confirms -> the verifier settles -> the resolver reads
2. Entitlement reads fail open, payment writes fail closed
3. A redirect is a hint, never proof of payment
4. Every payment step must be auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Cashflow Billing Team"
