"""Services package."""

from cashflow_billing.services.gateway import (
    GatewayError,
    GatewayRejectedError,
    GatewayUnreachableError,
    PaystackClient,
)
from cashflow_billing.services.storage import (
    AuditStorageInterface,
    ConflictError,
    DuplicateError,
    EntitlementStore,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsEntitlementStore,
    LocalCacheInterface,
    NotFoundError,
    RemoteEntitlementStoreInterface,
    RemoteUnavailableError,
    StorageError,
)

__all__ = [
    # Gateway
    "GatewayError",
    "GatewayRejectedError",
    "GatewayUnreachableError",
    "PaystackClient",
    # Storage services
    "AuditStorageInterface",
    "ConflictError",
    "DuplicateError",
    "EntitlementStore",
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsEntitlementStore",
    "LocalCacheInterface",
    "NotFoundError",
    "RemoteEntitlementStoreInterface",
    "RemoteUnavailableError",
    "StorageError",
]
