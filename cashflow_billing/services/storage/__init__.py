"""
Storage Services Package

Provides abstract interfaces and concrete implementations for entitlement data.
The remote store is Google Sheets (in-memory for tests); the on-device cache
is a JSON file.
"""

from cashflow_billing.services.storage.interface import (
    AuditStorageInterface,
    ConflictError,
    DuplicateError,
    LocalCacheInterface,
    NotFoundError,
    RemoteEntitlementStoreInterface,
    RemoteUnavailableError,
    StorageError,
    pick_latest,
    transition_transaction,
)
from cashflow_billing.services.storage.entitlement_store import EntitlementStore
from cashflow_billing.services.storage.google_sheets import (
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsEntitlementStore,
)
from cashflow_billing.services.storage.local_cache import JsonFileCache
from cashflow_billing.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryCache,
    InMemoryEntitlementStore,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "LocalCacheInterface",
    "RemoteEntitlementStoreInterface",
    # Exceptions
    "ConflictError",
    "DuplicateError",
    "NotFoundError",
    "RemoteUnavailableError",
    "StorageError",
    # Helpers
    "pick_latest",
    "transition_transaction",
    # Facade
    "EntitlementStore",
    # Google Sheets implementation
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsEntitlementStore",
    # Local and in-memory implementations
    "InMemoryAuditStorage",
    "InMemoryCache",
    "InMemoryEntitlementStore",
    "JsonFileCache",
]
