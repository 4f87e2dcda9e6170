"""
Abstract Storage Interfaces

DESIGN DECISION: We define abstract interfaces for every store the
billing core touches. This allows us to:
1. Swap Google Sheets for a real database later
2. Use in-memory storage for testing
3. Keep the resolver and verifier decoupled from storage implementation

There are three stores with very different guarantees:
- RemoteEntitlementStoreInterface: source of truth, shared across devices
- LocalCacheInterface: best-effort key-value store on this device
- AuditStorageInterface: append-only event log
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from cashflow_billing.models.audit import AuditEvent
from cashflow_billing.models.subscription import (
    PendingTransaction,
    SubscriptionSnapshot,
    SubscriptionState,
    TransactionStatus,
)


_NEVER = datetime.max.replace(tzinfo=timezone.utc)


def pick_latest(
    snapshots: list[SubscriptionSnapshot],
) -> Optional[SubscriptionSnapshot]:
    """
    Choose the latest snapshot by expires_at, then started_at.

    Snapshots without expires_at never expire, so they win.
    """
    if not snapshots:
        return None
    return max(
        snapshots,
        key=lambda s: (s.expires_at or _NEVER, s.started_at),
    )


class RemoteEntitlementStoreInterface(ABC):
    """
    Abstract interface for the remote subscription and transaction tables.

    Implementations must provide read-your-writes consistency per row.
    All methods raise RemoteUnavailableError when the backend cannot be
    reached, so callers can tell "no data" apart from "no answer".
    """

    @abstractmethod
    async def get_latest_subscription(
        self,
        user_id: str,
        status: SubscriptionState = SubscriptionState.ACTIVE,
    ) -> Optional[SubscriptionSnapshot]:
        """
        Get the most recent snapshot for a user with the given status.

        "Most recent" means latest expires_at, then latest started_at.
        A snapshot without expires_at never expires and sorts first.

        Returns:
            The snapshot if any row matches, None otherwise
        """
        pass

    @abstractmethod
    async def get_subscription_by_reference(
        self,
        reference: str,
    ) -> Optional[SubscriptionSnapshot]:
        """Get the snapshot activated by a payment reference, if any."""
        pass

    @abstractmethod
    async def update_subscription_status(
        self,
        subscription_id: UUID,
        status: SubscriptionState,
    ) -> bool:
        """
        Change the status of one snapshot.

        Raises:
            NotFoundError: If the snapshot doesn't exist
        """
        pass

    @abstractmethod
    async def upsert_subscription(self, snapshot: SubscriptionSnapshot) -> bool:
        """Insert a snapshot, or replace the row with the same id."""
        pass

    @abstractmethod
    async def cancel_subscriptions(self, user_id: str) -> int:
        """
        Mark every active snapshot of a user as cancelled.

        Returns:
            Number of snapshots changed
        """
        pass

    @abstractmethod
    async def create_transaction(self, transaction: PendingTransaction) -> bool:
        """
        Persist a new payment transaction.

        Raises:
            DuplicateError: If the reference already exists
        """
        pass

    @abstractmethod
    async def get_transaction(self, reference: str) -> Optional[PendingTransaction]:
        """Get a transaction by reference."""
        pass

    @abstractmethod
    async def update_transaction(
        self,
        reference: str,
        status: TransactionStatus,
        gateway_payload: Optional[dict[str, Any]] = None,
        at: Optional[datetime] = None,
    ) -> PendingTransaction:
        """
        Update a transaction's status and gateway payload.

        A transaction leaves PENDING exactly once. Re-applying the same
        final status is allowed (idempotent); changing a final status is not.
        `at` stamps updated_at (and verified_at on the final transition);
        it defaults to now.

        Returns:
            The updated transaction

        Raises:
            NotFoundError: If the reference doesn't exist
            ConflictError: If the transaction already has a different final status
        """
        pass


class LocalCacheInterface(ABC):
    """
    Abstract interface for the on-device key-value cache.

    Values are JSON-serializable. No consistency across devices.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """
        Get all events for a specific entity (e.g. one payment reference).

        Returns:
            List of events in chronological order
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class ConflictError(StorageError):
    """Stored state disagrees with the requested transition."""
    pass


class RemoteUnavailableError(StorageError):
    """Could not reach the storage backend (network, timeout, permissions)."""
    pass


def transition_transaction(
    current: PendingTransaction,
    status: TransactionStatus,
    gateway_payload: Optional[dict[str, Any]] = None,
    at: Optional[datetime] = None,
) -> PendingTransaction:
    """
    Apply a status change to a transaction, enforcing the one-way rule.

    PENDING -> PENDING only refreshes the gateway payload.
    PENDING -> SUCCESS/FAILED stamps verified_at.
    A final status may be re-applied but never changed.
    """
    if current.status != TransactionStatus.PENDING and status != current.status:
        raise ConflictError(
            f"Transaction {current.reference} is already {current.status.value}; "
            f"refusing to mark it {status.value}"
        )

    now = at or datetime.now(timezone.utc)
    update: dict[str, Any] = {"status": status, "updated_at": now}
    if gateway_payload is not None:
        update["gateway_payload"] = gateway_payload
    if status != TransactionStatus.PENDING and current.verified_at is None:
        update["verified_at"] = now
    return current.model_copy(update=update)
