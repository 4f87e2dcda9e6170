"""Tests for the trial clock and the plan catalogue."""

import pytest
from datetime import datetime, timedelta, timezone

from cashflow_billing.billing.plans import (
    add_calendar_month,
    amount_for_plan,
    expires_at_for_plan,
)
from cashflow_billing.billing.trial import (
    trial_message,
    trial_state,
    trial_status_description,
)
from cashflow_billing.models.subscription import (
    PaymentChannel,
    StatusSource,
    SubscriptionPlan,
    SubscriptionStatus,
)


T0 = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)


class TestTrialState:
    """Trial arithmetic."""

    def test_first_day(self):
        state = trial_state(T0, T0, 14)
        assert state.days_elapsed == 0
        assert state.days_remaining == 14
        assert state.ended is False

    def test_partial_days_round_down(self):
        """13 days and 23 hours still counts as day 13."""
        state = trial_state(T0, T0 + timedelta(days=13, hours=23), 14)
        assert state.days_elapsed == 13
        assert state.days_remaining == 1
        assert state.ended is False

    def test_ends_on_day_fourteen(self):
        state = trial_state(T0, T0 + timedelta(days=14), 14)
        assert state.days_remaining == 0
        assert state.ended is True

    def test_long_after_trial(self):
        state = trial_state(T0, T0 + timedelta(days=400), 14)
        assert state.days_remaining == 0
        assert state.ended is True

    def test_clock_skew_counts_as_day_zero(self):
        """A start time in the future never produces negative days."""
        state = trial_state(T0, T0 - timedelta(days=3), 14)
        assert state.days_elapsed == 0
        assert state.days_remaining == 14
        assert state.ended is False

    def test_is_deterministic(self):
        now = T0 + timedelta(days=5, minutes=7)
        assert trial_state(T0, now, 14) == trial_state(T0, now, 14)


class TestTrialMessages:
    """User-facing trial text."""

    def test_messages(self):
        assert trial_message(0) == "Your free trial has ended"
        assert trial_message(1) == "1 day left in your free trial"
        assert trial_message(9) == "9 days left in your free trial"

    def test_status_descriptions(self):
        paid = SubscriptionStatus(
            is_active=True, is_trial=False, trial_ended=False,
            days_remaining=20, plan="monthly", source=StatusSource.REMOTE,
        )
        trial = SubscriptionStatus(
            is_active=True, is_trial=True, trial_ended=False,
            days_remaining=3, plan="free_trial", source=StatusSource.TRIAL,
        )
        expired = SubscriptionStatus(
            is_active=False, is_trial=True, trial_ended=True,
            days_remaining=0, plan="free", source=StatusSource.EXPIRED,
        )
        assert trial_status_description(paid) == "Subscription active"
        assert trial_status_description(trial) == "3 days left in your free trial"
        assert trial_status_description(expired) == "Free trial ended"


class TestPlans:
    """Plan prices and period arithmetic."""

    def test_card_prices_in_usd_cents(self):
        assert amount_for_plan(SubscriptionPlan.DAILY, PaymentChannel.CARD) == 50
        assert amount_for_plan(SubscriptionPlan.MONTHLY, PaymentChannel.CARD) == 100
        assert amount_for_plan(SubscriptionPlan.YEARLY, PaymentChannel.CARD) == 1000

    def test_mobile_money_prices_in_kes_cents(self):
        assert amount_for_plan(SubscriptionPlan.DAILY, PaymentChannel.MOBILE_MONEY) == 6500
        assert amount_for_plan(
            SubscriptionPlan.MONTHLY, PaymentChannel.MOBILE_MONEY, kes_per_usd=150
        ) == 15000

    def test_daily_adds_one_day(self):
        assert expires_at_for_plan(SubscriptionPlan.DAILY, T0) == T0 + timedelta(days=1)

    def test_monthly_adds_calendar_month(self):
        assert expires_at_for_plan(SubscriptionPlan.MONTHLY, T0) == T0.replace(month=2)

    @pytest.mark.parametrize("start, expected", [
        (datetime(2026, 1, 31, tzinfo=timezone.utc), datetime(2026, 2, 28, tzinfo=timezone.utc)),
        (datetime(2028, 1, 31, tzinfo=timezone.utc), datetime(2028, 2, 29, tzinfo=timezone.utc)),
        (datetime(2026, 12, 15, tzinfo=timezone.utc), datetime(2027, 1, 15, tzinfo=timezone.utc)),
    ])
    def test_month_end_clamps(self, start, expected):
        assert add_calendar_month(start) == expected

    def test_yearly_from_leap_day(self):
        start = datetime(2028, 2, 29, 12, 0, tzinfo=timezone.utc)
        assert expires_at_for_plan(SubscriptionPlan.YEARLY, start) == datetime(
            2029, 2, 28, 12, 0, tzinfo=timezone.utc
        )
