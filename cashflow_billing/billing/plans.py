"""
Plan Catalogue

Prices are defined once in USD. Mobile money is settled in KES, so the
amount sent to the gateway is converted at a configurable rate.

All amounts handed to the gateway are in minor units (cents).
"""

import calendar
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from cashflow_billing.models.subscription import PaymentChannel, SubscriptionPlan


PLAN_PRICES_USD: dict[SubscriptionPlan, Decimal] = {
    SubscriptionPlan.DAILY: Decimal("0.50"),
    SubscriptionPlan.MONTHLY: Decimal("1.00"),
    SubscriptionPlan.YEARLY: Decimal("10.00"),
}

PLAN_LABELS: dict[SubscriptionPlan, str] = {
    SubscriptionPlan.DAILY: "Daily",
    SubscriptionPlan.MONTHLY: "Monthly",
    SubscriptionPlan.YEARLY: "Yearly",
}


def amount_for_plan(
    plan: SubscriptionPlan,
    channel: PaymentChannel,
    kes_per_usd: float = 130.0,
) -> int:
    """
    Price of a plan in minor units of the channel's currency.

    Card payments are charged in USD cents, mobile money in KES cents.
    """
    price = PLAN_PRICES_USD[SubscriptionPlan(plan)]
    if channel == PaymentChannel.MOBILE_MONEY:
        price = price * Decimal(str(kes_per_usd))
    return int((price * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def add_calendar_month(start: datetime) -> datetime:
    """
    Same day next month, clamped to the last day of a shorter month.

    Jan 31 -> Feb 28 (or 29), Dec 15 -> Jan 15.
    """
    year = start.year + (1 if start.month == 12 else 0)
    month = 1 if start.month == 12 else start.month + 1
    last_day = calendar.monthrange(year, month)[1]
    return start.replace(year=year, month=month, day=min(start.day, last_day))


def add_calendar_year(start: datetime) -> datetime:
    # Feb 29 -> Feb 28 in non-leap years
    last_day = calendar.monthrange(start.year + 1, start.month)[1]
    return start.replace(year=start.year + 1, day=min(start.day, last_day))


def expires_at_for_plan(plan: SubscriptionPlan, start: datetime) -> Optional[datetime]:
    """Expiry of a subscription period that begins at `start`."""
    plan = SubscriptionPlan(plan)
    if plan == SubscriptionPlan.DAILY:
        return start + timedelta(days=1)
    if plan == SubscriptionPlan.MONTHLY:
        return add_calendar_month(start)
    if plan == SubscriptionPlan.YEARLY:
        return add_calendar_year(start)
    return None
