"""
Trial Clock

Pure functions. No storage, no wall clock: the caller passes `now`.
"""

from datetime import datetime, timedelta

from cashflow_billing.models.subscription import SubscriptionStatus, TrialState


DEFAULT_TRIAL_DURATION_DAYS = 14


def trial_state(
    started_at: datetime,
    now: datetime,
    duration_days: int = DEFAULT_TRIAL_DURATION_DAYS,
) -> TrialState:
    """
    Compute where a user is in their trial.

    Whole days only: 13 days 23 hours elapsed counts as 13.
    A start time in the future (clock skew) counts as day 0.
    """
    elapsed = (now - started_at) // timedelta(days=1)
    days_elapsed = max(0, elapsed)
    return TrialState(
        days_elapsed=days_elapsed,
        days_remaining=max(0, duration_days - days_elapsed),
        ended=days_elapsed >= duration_days,
    )


def trial_message(days_remaining: int) -> str:
    """Short banner text for a user in (or just past) their trial."""
    if days_remaining <= 0:
        return "Your free trial has ended"
    if days_remaining == 1:
        return "1 day left in your free trial"
    return f"{days_remaining} days left in your free trial"


def trial_status_description(status: SubscriptionStatus) -> str:
    """One-line description of any resolved status, for settings screens."""
    if status.is_rewarded:
        return "Rewarded access active"
    if not status.is_trial:
        return "Subscription active"
    if status.trial_ended:
        return "Free trial ended"
    return trial_message(status.days_remaining)
