"""
Entitlement Resolver

Answers "may this user use the product right now?" by walking a fixed
list of tiers and returning the first one that has an answer:

1. Remote   - latest active subscription in the remote store
2. Cache    - last confirmed active subscription on this device
3. Trial    - free trial still running
4. Rewarded - a rewarded-access grant still running
5. Expired  - nothing left; the user must subscribe

DESIGN DECISION: Entitlement reads fail OPEN.
If anything unexpected goes wrong while resolving, the user gets a full
trial-shaped status rather than being locked out. A paying user who cannot
use the app is a worse failure than a free user who briefly can.

DESIGN DECISION: The remote store is authoritative, the cache is advisory.
The cache is only consulted when the remote store could not give an active
answer, and it is ignored once its own expiry has passed.

Each tier is a separate method so it can be tested in isolation.
"""

import asyncio
import math
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from cashflow_billing.audit import AuditLogger
from cashflow_billing.billing.trial import DEFAULT_TRIAL_DURATION_DAYS, trial_state
from cashflow_billing.models.subscription import (
    FREE_PLAN,
    FREE_TRIAL_PLAN,
    REWARDED_PLAN,
    StatusSource,
    SubscriptionSnapshot,
    SubscriptionState,
    SubscriptionStatus,
    utcnow,
)
from cashflow_billing.services.storage import EntitlementStore, StorageError


logger = structlog.get_logger(__name__)

NO_EXPIRY_DAYS_REMAINING = 999


def days_until(expires_at: Optional[datetime], now: datetime) -> int:
    """Whole days left before `expires_at`, rounded up. 999 when it never expires."""
    if expires_at is None:
        return NO_EXPIRY_DAYS_REMAINING
    return max(0, math.ceil((expires_at - now) / timedelta(days=1)))


class EntitlementResolver:
    """Resolves a user's SubscriptionStatus from the entitlement store."""

    def __init__(
        self,
        store: EntitlementStore,
        audit_logger: Optional[AuditLogger] = None,
        trial_duration_days: int = DEFAULT_TRIAL_DURATION_DAYS,
        remote_timeout_seconds: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            store: Entitlement store facade
            audit_logger: Optional audit logger
            trial_duration_days: Length of the free trial
            remote_timeout_seconds: Bound for each remote store call
            clock: Returns the current aware UTC time (injectable for tests)
        """
        self._store = store
        self._audit_logger = audit_logger
        self._trial_duration_days = trial_duration_days
        self._remote_timeout = remote_timeout_seconds
        self._clock = clock
        self._background: set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def resolve(self, user_id: str) -> SubscriptionStatus:
        """
        Resolve the user's current entitlement.

        Never raises.
        """
        try:
            return await self._resolve(user_id)
        except Exception as e:
            logger.error("entitlement_resolution_failed", user_id=user_id, error=str(e))
            if self._audit_logger:
                await self._audit_logger.log_fail_open(user_id, str(e))
            return self.fail_open_status()

    async def should_prompt_for_subscription(self, user_id: str) -> bool:
        """
        Whether to show the subscribe prompt.

        Never for an active user. Otherwise when the trial has ended or the
        user has paid before (a lapsed subscriber).
        """
        status = await self.resolve(user_id)
        if status.is_active:
            return False
        try:
            has_subscribed = await self._store.has_subscribed(user_id)
        except Exception as e:
            logger.warning("has_subscribed_read_failed", user_id=user_id, error=str(e))
            has_subscribed = False
        return status.trial_ended or has_subscribed

    async def drain(self) -> None:
        """Wait for background expiry corrections to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def fail_open_status(self) -> SubscriptionStatus:
        return SubscriptionStatus(
            is_active=True,
            is_trial=True,
            trial_ended=False,
            days_remaining=self._trial_duration_days,
            plan=FREE_PLAN,
            source=StatusSource.FAIL_OPEN,
        )

    # -------------------------------------------------------------------------
    # Tiers
    # -------------------------------------------------------------------------

    async def _resolve(self, user_id: str) -> SubscriptionStatus:
        now = self._clock()

        status = await self.remote_tier(user_id, now)
        if status is not None:
            return status

        status = await self.cache_tier(user_id, now)
        if status is not None:
            return status

        trial = await self.trial_tier(user_id, now)
        if trial is not None:
            return trial

        status = await self.rewarded_tier(user_id, now)
        if status is not None:
            return status

        return self.expired_status(has_subscribed=await self._store.has_subscribed(user_id))

    async def remote_tier(self, user_id: str, now: datetime) -> Optional[SubscriptionStatus]:
        """
        Latest active snapshot from the remote store.

        Returns None (fall through) when the store is unavailable, slow,
        has nothing active, or the active row has already expired.
        """
        try:
            snapshot = await asyncio.wait_for(
                self._store.remote.get_latest_subscription(user_id, SubscriptionState.ACTIVE),
                timeout=self._remote_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("remote_entitlement_timeout", user_id=user_id)
            return None
        except StorageError as e:
            logger.warning("remote_entitlement_unavailable", user_id=user_id, error=str(e))
            return None

        if snapshot is None:
            return None

        if snapshot.is_expired(now):
            self._schedule_expiry_correction(snapshot)
            await self._store.forget_active(user_id)
            return None

        await self._store.remember_active(snapshot)
        return SubscriptionStatus(
            is_active=True,
            is_trial=False,
            trial_ended=False,
            days_remaining=days_until(snapshot.expires_at, now),
            plan=snapshot.plan.value,
            expires_at=snapshot.expires_at,
            source=StatusSource.REMOTE,
        )

    async def cache_tier(self, user_id: str, now: datetime) -> Optional[SubscriptionStatus]:
        """Last confirmed active subscription, if it has not expired yet."""
        cached = await self._store.get_cached_snapshot(user_id)
        if cached is None or cached.is_expired(now):
            return None

        if self._audit_logger:
            await self._audit_logger.log_cache_fallback(
                user_id, "remote store had no active subscription"
            )
        return SubscriptionStatus(
            is_active=True,
            is_trial=False,
            trial_ended=False,
            days_remaining=days_until(cached.expires_at, now),
            plan=cached.plan.value,
            expires_at=cached.expires_at,
            source=StatusSource.CACHE,
        )

    async def trial_tier(self, user_id: str, now: datetime) -> Optional[SubscriptionStatus]:
        """Free trial, starting it now for a first-seen user."""
        record, created = await self._store.get_or_create_trial_record(user_id, now)
        if created and self._audit_logger:
            await self._audit_logger.log_trial_started(user_id, record.trial_started_at)

        state = trial_state(record.trial_started_at, now, self._trial_duration_days)
        if state.ended:
            return None
        return SubscriptionStatus(
            is_active=True,
            is_trial=True,
            trial_ended=False,
            days_remaining=state.days_remaining,
            plan=FREE_TRIAL_PLAN,
            source=StatusSource.TRIAL,
        )

    async def rewarded_tier(self, user_id: str, now: datetime) -> Optional[SubscriptionStatus]:
        """Rewarded access granted after the trial."""
        expires_at = await self._store.get_rewarded_expiry(user_id)
        if expires_at is None or expires_at <= now:
            return None
        return SubscriptionStatus(
            is_active=True,
            is_trial=False,
            trial_ended=True,
            days_remaining=days_until(expires_at, now),
            plan=REWARDED_PLAN,
            expires_at=expires_at,
            is_rewarded=True,
            source=StatusSource.REWARDED,
        )

    def expired_status(self, has_subscribed: bool = False) -> SubscriptionStatus:
        """Nothing grants access. A lapsed subscriber is no longer on trial."""
        return SubscriptionStatus(
            is_active=False,
            is_trial=not has_subscribed,
            trial_ended=True,
            days_remaining=0,
            plan=FREE_PLAN,
            source=StatusSource.EXPIRED,
        )

    # -------------------------------------------------------------------------
    # Lazy expiry correction
    # -------------------------------------------------------------------------

    def _schedule_expiry_correction(self, snapshot: SubscriptionSnapshot) -> None:
        task = asyncio.create_task(self._correct_expiry(snapshot))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _correct_expiry(self, snapshot: SubscriptionSnapshot) -> None:
        """Mark a stale active row expired. Failures are logged only."""
        try:
            await asyncio.wait_for(
                self._store.remote.update_subscription_status(
                    snapshot.id, SubscriptionState.EXPIRED
                ),
                timeout=self._remote_timeout,
            )
        except Exception as e:
            logger.warning(
                "expiry_correction_failed",
                user_id=snapshot.user_id,
                subscription_id=str(snapshot.id),
                error=str(e),
            )
            return

        logger.info(
            "expiry_corrected",
            user_id=snapshot.user_id,
            subscription_id=str(snapshot.id),
        )
        if self._audit_logger:
            await self._audit_logger.log_expiry_corrected(snapshot.user_id, snapshot.id)
