"""
In-Memory Storage Implementations

Used for tests and local development without Google credentials.
They follow exactly the same contracts as the Google Sheets backend,
including the one-way transaction status rule.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from cashflow_billing.models.audit import AuditEvent
from cashflow_billing.models.subscription import (
    PendingTransaction,
    SubscriptionSnapshot,
    SubscriptionState,
    TransactionStatus,
    utcnow,
)
from cashflow_billing.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    LocalCacheInterface,
    NotFoundError,
    RemoteEntitlementStoreInterface,
    pick_latest,
    transition_transaction,
)


class InMemoryEntitlementStore(RemoteEntitlementStoreInterface):
    """Dict-backed remote store."""

    def __init__(self):
        self.subscriptions: dict[UUID, SubscriptionSnapshot] = {}
        self.transactions: dict[str, PendingTransaction] = {}

    async def get_latest_subscription(
        self,
        user_id: str,
        status: SubscriptionState = SubscriptionState.ACTIVE,
    ) -> Optional[SubscriptionSnapshot]:
        matches = [
            s for s in self.subscriptions.values()
            if s.user_id == user_id and s.status == status
        ]
        return pick_latest(matches)

    async def get_subscription_by_reference(
        self,
        reference: str,
    ) -> Optional[SubscriptionSnapshot]:
        matches = [
            s for s in self.subscriptions.values()
            if s.reference == reference
        ]
        return pick_latest(matches)

    async def update_subscription_status(
        self,
        subscription_id: UUID,
        status: SubscriptionState,
    ) -> bool:
        snapshot = self.subscriptions.get(subscription_id)
        if snapshot is None:
            raise NotFoundError(f"Subscription not found: {subscription_id}")
        self.subscriptions[subscription_id] = snapshot.model_copy(
            update={"status": status, "updated_at": utcnow()}
        )
        return True

    async def upsert_subscription(self, snapshot: SubscriptionSnapshot) -> bool:
        self.subscriptions[snapshot.id] = snapshot
        return True

    async def cancel_subscriptions(self, user_id: str) -> int:
        count = 0
        for snapshot in list(self.subscriptions.values()):
            if snapshot.user_id == user_id and snapshot.status == SubscriptionState.ACTIVE:
                await self.update_subscription_status(snapshot.id, SubscriptionState.CANCELLED)
                count += 1
        return count

    async def create_transaction(self, transaction: PendingTransaction) -> bool:
        if transaction.reference in self.transactions:
            raise DuplicateError(f"Transaction already exists: {transaction.reference}")
        self.transactions[transaction.reference] = transaction
        return True

    async def get_transaction(self, reference: str) -> Optional[PendingTransaction]:
        return self.transactions.get(reference)

    async def update_transaction(
        self,
        reference: str,
        status: TransactionStatus,
        gateway_payload: Optional[dict[str, Any]] = None,
        at: Optional[datetime] = None,
    ) -> PendingTransaction:
        current = self.transactions.get(reference)
        if current is None:
            raise NotFoundError(f"Transaction not found: {reference}")
        updated = transition_transaction(current, status, gateway_payload, at)
        self.transactions[reference] = updated
        return updated


class InMemoryCache(LocalCacheInterface):
    """Process-local cache. Lost on restart."""

    def __init__(self):
        self.values: dict[str, Any] = {}

    async def get(self, key: str) -> Optional[Any]:
        return self.values.get(key)

    async def set(self, key: str, value: Any) -> None:
        self.values[key] = value

    async def delete(self, key: str) -> None:
        self.values.pop(key, None)


class InMemoryAuditStorage(AuditStorageInterface):
    """List-backed audit log."""

    def __init__(self):
        self.events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self.events.append(event)
        return True

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        events = [
            e for e in self.events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        events.sort(key=lambda e: e.timestamp)
        return events
