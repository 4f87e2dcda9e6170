"""Tests for the storage layer (in-memory remote, file cache, facade)."""

import json
import pytest
from datetime import datetime, timedelta, timezone

from cashflow_billing.models.subscription import (
    CachedSnapshot,
    PendingTransaction,
    SubscriptionPlan,
    SubscriptionSnapshot,
    SubscriptionState,
    TransactionStatus,
)
from cashflow_billing.services.storage import (
    ConflictError,
    DuplicateError,
    EntitlementStore,
    InMemoryCache,
    InMemoryEntitlementStore,
    JsonFileCache,
    NotFoundError,
    StorageError,
    pick_latest,
)


T0 = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)


def _snapshot(**overrides) -> SubscriptionSnapshot:
    fields = dict(user_id="user-1", plan=SubscriptionPlan.MONTHLY, started_at=T0)
    fields.update(overrides)
    return SubscriptionSnapshot(**fields)


def _transaction(reference: str = "SUB_user-1_1") -> PendingTransaction:
    return PendingTransaction(
        reference=reference,
        user_id="user-1",
        plan=SubscriptionPlan.MONTHLY,
        amount=100,
    )


class BrokenCache(InMemoryCache):
    async def set(self, key, value):
        raise StorageError("disk full")


class TestPickLatest:
    """Ordering of a user's subscription rows."""

    def test_latest_expiry_wins(self):
        early = _snapshot(expires_at=T0 + timedelta(days=1))
        late = _snapshot(expires_at=T0 + timedelta(days=30))
        assert pick_latest([early, late]) == late

    def test_no_expiry_sorts_first(self):
        forever = _snapshot(expires_at=None)
        late = _snapshot(expires_at=T0 + timedelta(days=3650))
        assert pick_latest([late, forever]) == forever

    def test_started_at_breaks_ties(self):
        expires = T0 + timedelta(days=30)
        older = _snapshot(expires_at=expires, started_at=T0)
        newer = _snapshot(expires_at=expires, started_at=T0 + timedelta(hours=1))
        assert pick_latest([newer, older]) == newer

    def test_empty(self):
        assert pick_latest([]) is None


class TestInMemoryEntitlementStore:
    """Remote store contract."""

    @pytest.mark.asyncio
    async def test_latest_active_only(self):
        remote = InMemoryEntitlementStore()
        active = _snapshot(expires_at=T0 + timedelta(days=10))
        cancelled = _snapshot(
            expires_at=T0 + timedelta(days=300), status=SubscriptionState.CANCELLED
        )
        await remote.upsert_subscription(active)
        await remote.upsert_subscription(cancelled)

        assert await remote.get_latest_subscription("user-1") == active
        assert await remote.get_latest_subscription("user-2") is None

    @pytest.mark.asyncio
    async def test_duplicate_transaction_rejected(self):
        remote = InMemoryEntitlementStore()
        await remote.create_transaction(_transaction())
        with pytest.raises(DuplicateError):
            await remote.create_transaction(_transaction())

    @pytest.mark.asyncio
    async def test_transaction_settles_once(self):
        """PENDING -> SUCCESS once; SUCCESS -> FAILED is refused."""
        remote = InMemoryEntitlementStore()
        await remote.create_transaction(_transaction())

        settled = await remote.update_transaction(
            "SUB_user-1_1", TransactionStatus.SUCCESS, at=T0
        )
        assert settled.verified_at == T0

        again = await remote.update_transaction("SUB_user-1_1", TransactionStatus.SUCCESS)
        assert again.verified_at == T0

        with pytest.raises(ConflictError):
            await remote.update_transaction("SUB_user-1_1", TransactionStatus.FAILED)

    @pytest.mark.asyncio
    async def test_pending_update_keeps_verified_at_empty(self):
        remote = InMemoryEntitlementStore()
        await remote.create_transaction(_transaction())
        updated = await remote.update_transaction(
            "SUB_user-1_1", TransactionStatus.PENDING, gateway_payload={"access_code": "x"}
        )
        assert updated.verified_at is None
        assert updated.gateway_payload == {"access_code": "x"}

    @pytest.mark.asyncio
    async def test_update_unknown_transaction(self):
        remote = InMemoryEntitlementStore()
        with pytest.raises(NotFoundError):
            await remote.update_transaction("nope", TransactionStatus.FAILED)

    @pytest.mark.asyncio
    async def test_cancel_subscriptions(self):
        remote = InMemoryEntitlementStore()
        await remote.upsert_subscription(_snapshot())
        await remote.upsert_subscription(_snapshot(user_id="user-2"))

        assert await remote.cancel_subscriptions("user-1") == 1
        assert await remote.get_latest_subscription("user-1") is None
        assert await remote.get_latest_subscription("user-2") is not None


class TestJsonFileCache:
    """File-backed cache."""

    @pytest.mark.asyncio
    async def test_survives_restart(self, tmp_path):
        path = tmp_path / "cache.json"
        cache = JsonFileCache(path)
        await cache.set("trial_start_date:user-1", T0.isoformat())

        reopened = JsonFileCache(path)
        assert await reopened.get("trial_start_date:user-1") == T0.isoformat()

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path):
        cache = JsonFileCache(tmp_path / "cache.json")
        await cache.set("k", "v")
        await cache.delete("k")
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_corrupt_file_reads_as_empty(self, tmp_path):
        path = tmp_path / "cache.json"
        path.write_text("{not json", encoding="utf-8")
        cache = JsonFileCache(path)

        assert await cache.get("anything") is None
        await cache.set("k", "v")
        assert json.loads(path.read_text(encoding="utf-8")) == {"k": "v"}

    @pytest.mark.asyncio
    async def test_failed_write_keeps_memory_and_disk_in_step(self, tmp_path, monkeypatch):
        path = tmp_path / "cache.json"
        cache = JsonFileCache(path)
        await cache.set("k", "old")

        def refuse(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr("cashflow_billing.services.storage.local_cache.os.replace", refuse)
        with pytest.raises(StorageError):
            await cache.set("k", "new")
        with pytest.raises(StorageError):
            await cache.delete("k")
        monkeypatch.undo()

        assert await cache.get("k") == "old"
        assert json.loads(path.read_text(encoding="utf-8")) == {"k": "old"}
        assert list(tmp_path.iterdir()) == [path]

    @pytest.mark.asyncio
    async def test_unserialisable_value_is_rejected(self, tmp_path):
        cache = JsonFileCache(tmp_path / "cache.json")

        with pytest.raises(StorageError):
            await cache.set("k", object())
        assert await cache.get("k") is None


class TestEntitlementStore:
    """Facade over remote store and local cache."""

    @pytest.mark.asyncio
    async def test_trial_record_created_once(self):
        store = EntitlementStore(InMemoryEntitlementStore(), InMemoryCache())

        first, created = await store.get_or_create_trial_record("user-1", T0)
        second, created_again = await store.get_or_create_trial_record(
            "user-1", T0 + timedelta(days=5)
        )

        assert created is True
        assert created_again is False
        assert second.trial_started_at == first.trial_started_at == T0

    @pytest.mark.asyncio
    async def test_users_are_isolated(self):
        store = EntitlementStore(InMemoryEntitlementStore(), InMemoryCache())
        await store.mark_has_subscribed("user-1")

        assert await store.has_subscribed("user-1") is True
        assert await store.has_subscribed("user-2") is False

    @pytest.mark.asyncio
    async def test_cached_snapshot_round_trip(self):
        store = EntitlementStore(InMemoryEntitlementStore(), InMemoryCache())
        cached = CachedSnapshot(
            user_id="user-1",
            plan=SubscriptionPlan.YEARLY,
            expires_at=T0 + timedelta(days=365),
        )
        await store.cache_snapshot(cached)
        assert await store.get_cached_snapshot("user-1") == cached

    @pytest.mark.asyncio
    async def test_invalid_cached_snapshot_ignored(self):
        cache = InMemoryCache()
        cache.values["subscription_cache_v1:user-1"] = {"plan": "lifetime"}
        store = EntitlementStore(InMemoryEntitlementStore(), cache)

        assert await store.get_cached_snapshot("user-1") is None

    @pytest.mark.asyncio
    async def test_remember_active_sets_flag_and_cache(self):
        store = EntitlementStore(InMemoryEntitlementStore(), InMemoryCache())
        snapshot = _snapshot(expires_at=T0 + timedelta(days=31))

        assert await store.remember_active(snapshot) is True
        assert await store.has_subscribed("user-1") is True
        assert (await store.get_cached_snapshot("user-1")).expires_at == snapshot.expires_at

    @pytest.mark.asyncio
    async def test_remember_active_never_raises(self):
        store = EntitlementStore(InMemoryEntitlementStore(), BrokenCache())
        assert await store.remember_active(_snapshot()) is False

    @pytest.mark.asyncio
    async def test_forget_active_keeps_flag(self):
        store = EntitlementStore(InMemoryEntitlementStore(), InMemoryCache())
        await store.remember_active(_snapshot())
        await store.forget_active("user-1")

        assert await store.get_cached_snapshot("user-1") is None
        assert await store.has_subscribed("user-1") is True
