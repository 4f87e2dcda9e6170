"""
Entitlement Store

One handle over everything we know about a user's entitlement:
- the remote store (authoritative subscriptions and transactions)
- the local cache (trial start, last active snapshot, has-subscribed flag,
  rewarded access expiry)

LIFECYCLE: constructed once at startup by create_app_components() and kept
for the life of the process. It holds no per-user state in memory; every
method takes the user id explicitly.

Writes that only refresh advisory data (remember_active, forget_active)
never raise. A failed cache write must not fail the read path.
"""

from datetime import datetime
from typing import Optional

import structlog
from pydantic import ValidationError

from cashflow_billing.models.subscription import (
    CachedSnapshot,
    SubscriptionSnapshot,
    TrialRecord,
)
from cashflow_billing.services.storage.interface import (
    LocalCacheInterface,
    RemoteEntitlementStoreInterface,
)


logger = structlog.get_logger(__name__)

TRIAL_START_KEY = "trial_start_date"
SUBSCRIPTION_CACHE_KEY = "subscription_cache_v1"
HAS_SUBSCRIBED_KEY = "has_subscribed_v1"
REWARDED_ACCESS_KEY = "rewarded_access_expiry"


def _key(prefix: str, user_id: str) -> str:
    return f"{prefix}:{user_id}"


class EntitlementStore:
    """Facade over the remote store and the local cache."""

    def __init__(
        self,
        remote: RemoteEntitlementStoreInterface,
        cache: LocalCacheInterface,
    ):
        self._remote = remote
        self._cache = cache

    @property
    def remote(self) -> RemoteEntitlementStoreInterface:
        return self._remote

    # -------------------------------------------------------------------------
    # Trial record
    # -------------------------------------------------------------------------

    async def get_trial_record(self, user_id: str) -> Optional[TrialRecord]:
        raw = await self._cache.get(_key(TRIAL_START_KEY, user_id))
        if not raw:
            return None
        return TrialRecord(
            user_id=user_id,
            trial_started_at=datetime.fromisoformat(raw),
        )

    async def get_or_create_trial_record(
        self,
        user_id: str,
        now: datetime,
    ) -> tuple[TrialRecord, bool]:
        """
        Return the user's trial record, creating it at `now` if absent.

        Returns:
            (record, created)
        """
        existing = await self.get_trial_record(user_id)
        if existing is not None:
            return existing, False

        record = TrialRecord(user_id=user_id, trial_started_at=now)
        await self._cache.set(
            _key(TRIAL_START_KEY, user_id),
            record.trial_started_at.isoformat(),
        )
        return record, True

    async def delete_trial_record(self, user_id: str) -> None:
        await self._cache.delete(_key(TRIAL_START_KEY, user_id))

    # -------------------------------------------------------------------------
    # Cached snapshot
    # -------------------------------------------------------------------------

    async def get_cached_snapshot(self, user_id: str) -> Optional[CachedSnapshot]:
        raw = await self._cache.get(_key(SUBSCRIPTION_CACHE_KEY, user_id))
        if not raw:
            return None
        try:
            return CachedSnapshot.model_validate({**raw, "user_id": user_id})
        except (ValidationError, TypeError) as e:
            logger.warning("cached_snapshot_invalid", user_id=user_id, error=str(e))
            return None

    async def cache_snapshot(self, snapshot: CachedSnapshot) -> None:
        await self._cache.set(
            _key(SUBSCRIPTION_CACHE_KEY, snapshot.user_id),
            snapshot.model_dump(mode="json", exclude={"user_id"}),
        )

    async def clear_cached_snapshot(self, user_id: str) -> None:
        await self._cache.delete(_key(SUBSCRIPTION_CACHE_KEY, user_id))

    # -------------------------------------------------------------------------
    # Has-subscribed flag (monotonic)
    # -------------------------------------------------------------------------

    async def has_subscribed(self, user_id: str) -> bool:
        return await self._cache.get(_key(HAS_SUBSCRIBED_KEY, user_id)) == "1"

    async def mark_has_subscribed(self, user_id: str) -> None:
        await self._cache.set(_key(HAS_SUBSCRIBED_KEY, user_id), "1")

    # -------------------------------------------------------------------------
    # Rewarded access
    # -------------------------------------------------------------------------

    async def get_rewarded_expiry(self, user_id: str) -> Optional[datetime]:
        raw = await self._cache.get(_key(REWARDED_ACCESS_KEY, user_id))
        return datetime.fromisoformat(raw) if raw else None

    async def set_rewarded_expiry(self, user_id: str, expires_at: datetime) -> None:
        await self._cache.set(_key(REWARDED_ACCESS_KEY, user_id), expires_at.isoformat())

    # -------------------------------------------------------------------------
    # Best-effort refreshes
    # -------------------------------------------------------------------------

    async def remember_active(self, snapshot: SubscriptionSnapshot) -> bool:
        """
        Cache a confirmed active snapshot and set the has-subscribed flag.

        Returns False (and logs) instead of raising.
        """
        try:
            await self.cache_snapshot(CachedSnapshot(
                user_id=snapshot.user_id,
                plan=snapshot.plan,
                expires_at=snapshot.expires_at,
            ))
            await self.mark_has_subscribed(snapshot.user_id)
            return True
        except Exception as e:
            logger.warning(
                "entitlement_cache_refresh_failed",
                user_id=snapshot.user_id,
                error=str(e),
            )
            return False

    async def forget_active(self, user_id: str) -> bool:
        """Drop the cached snapshot. Returns False (and logs) instead of raising."""
        try:
            await self.clear_cached_snapshot(user_id)
            return True
        except Exception as e:
            logger.warning("entitlement_cache_clear_failed", user_id=user_id, error=str(e))
            return False
