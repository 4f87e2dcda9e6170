"""
Google Sheets Storage Implementation

DESIGN DECISION: Google Sheets is used as the remote entitlement store because:
1. Support staff can inspect and reconcile pending payments directly in Sheets
2. No database setup required
3. Built-in backup (Google's infrastructure)
4. Easy to export/migrate later

TRADEOFFS:
- Not suitable for high-volume data (fine for one app's subscriptions)
- No transactions (we handle this with careful ordering in the verifier)
- Limited query capabilities (we filter in Python)

Every failure to talk to Google is raised as RemoteUnavailableError so the
resolver can fall back to the local cache instead of locking users out.

gspread is blocking. Every sheet call runs in a worker thread
(asyncio.to_thread) so a caller's asyncio.wait_for can give up on a slow
or offline Google instead of stalling the event loop.
"""

import asyncio
import json
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

import gspread
from gspread.utils import rowcol_to_a1
from google.oauth2.service_account import Credentials
from tenacity import retry, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from cashflow_billing.config import get_settings
from cashflow_billing.models.audit import AuditEvent, AuditEventType, AuditSeverity
from cashflow_billing.models.subscription import (
    PaymentChannel,
    PendingTransaction,
    SubscriptionPlan,
    SubscriptionSnapshot,
    SubscriptionState,
    TransactionStatus,
    utcnow,
)
from cashflow_billing.services.storage.interface import (
    AuditStorageInterface,
    ConflictError,
    DuplicateError,
    NotFoundError,
    RemoteEntitlementStoreInterface,
    RemoteUnavailableError,
    StorageError,
    pick_latest,
    transition_transaction,
)


# Column mappings for Subscriptions sheet
SUBSCRIPTION_COLUMNS = [
    "id",
    "user_id",
    "plan",
    "status",
    "started_at",
    "expires_at",
    "reference",
    "updated_at",
]

# Column mappings for PaymentTransactions sheet
TRANSACTION_COLUMNS = [
    "reference",
    "user_id",
    "plan",
    "amount",
    "currency",
    "channel",
    "status",
    "gateway_payload_json",
    "created_at",
    "updated_at",
    "verified_at",
]

# Column mappings for Audit sheet
AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "entity_type",
    "entity_id",
    "correlation_id",
    "description",
    "details_json",
    "error_message",
    "is_user_action",
]

# Domain errors are final; only transport problems are worth retrying.
_sheets_retry = retry(
    retry=retry_if_not_exception_type((NotFoundError, DuplicateError, ConflictError)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)


def _safe_get(row: list, index: int, default: str = "") -> str:
    try:
        return row[index] if row[index] else default
    except IndexError:
        return default


def _parse_dt(value: str) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and lazily creates missing worksheets.
    """

    def __init__(self):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._settings = get_settings().google_sheets

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise RemoteUnavailableError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise RemoteUnavailableError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(
                    self._settings.spreadsheet_id
                )
            except gspread.SpreadsheetNotFound:
                raise RemoteUnavailableError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def _get_or_create(self, title: str, columns: list[str], rows: int) -> gspread.Worksheet:
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            sheet = spreadsheet.add_worksheet(
                title=title,
                rows=rows,
                cols=len(columns),
            )
            sheet.append_row(columns)
        return sheet

    def get_subscriptions_sheet(self) -> gspread.Worksheet:
        """Get or create the Subscriptions worksheet."""
        return self._get_or_create(
            self._settings.subscriptions_sheet_name, SUBSCRIPTION_COLUMNS, 1000
        )

    def get_transactions_sheet(self) -> gspread.Worksheet:
        """Get or create the PaymentTransactions worksheet."""
        return self._get_or_create(
            self._settings.transactions_sheet_name, TRANSACTION_COLUMNS, 2000
        )

    def get_audit_sheet(self) -> gspread.Worksheet:
        """Get or create the Audit worksheet."""
        return self._get_or_create(
            self._settings.audit_sheet_name, AUDIT_COLUMNS, 5000
        )


class GoogleSheetsEntitlementStore(RemoteEntitlementStoreInterface):
    """
    Google Sheets implementation of the remote entitlement store.

    Snapshots and transactions live in separate worksheets, one per row.
    The gateway payload is JSON-serialized into a single cell.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    # -------------------------------------------------------------------------
    # Row conversion
    # -------------------------------------------------------------------------

    def _snapshot_to_row(self, snapshot: SubscriptionSnapshot) -> list:
        return [
            str(snapshot.id),
            snapshot.user_id,
            snapshot.plan.value,
            snapshot.status.value,
            snapshot.started_at.isoformat(),
            snapshot.expires_at.isoformat() if snapshot.expires_at else "",
            snapshot.reference or "",
            snapshot.updated_at.isoformat(),
        ]

    def _row_to_snapshot(self, row: list) -> SubscriptionSnapshot:
        return SubscriptionSnapshot(
            id=UUID(_safe_get(row, 0)),
            user_id=_safe_get(row, 1),
            plan=SubscriptionPlan(_safe_get(row, 2)),
            status=SubscriptionState(_safe_get(row, 3)),
            started_at=datetime.fromisoformat(_safe_get(row, 4)),
            expires_at=_parse_dt(_safe_get(row, 5)),
            reference=_safe_get(row, 6) or None,
            updated_at=_parse_dt(_safe_get(row, 7)) or utcnow(),
        )

    def _transaction_to_row(self, tx: PendingTransaction) -> list:
        return [
            tx.reference,
            tx.user_id,
            tx.plan.value,
            str(tx.amount),
            tx.currency,
            tx.channel.value,
            tx.status.value,
            json.dumps(tx.gateway_payload, default=str) if tx.gateway_payload else "",
            tx.created_at.isoformat(),
            tx.updated_at.isoformat(),
            tx.verified_at.isoformat() if tx.verified_at else "",
        ]

    def _row_to_transaction(self, row: list) -> PendingTransaction:
        payload_json = _safe_get(row, 7)
        return PendingTransaction(
            reference=_safe_get(row, 0),
            user_id=_safe_get(row, 1),
            plan=SubscriptionPlan(_safe_get(row, 2)),
            amount=int(_safe_get(row, 3)),
            currency=_safe_get(row, 4, "USD"),
            channel=PaymentChannel(_safe_get(row, 5, PaymentChannel.CARD.value)),
            status=TransactionStatus(_safe_get(row, 6)),
            gateway_payload=json.loads(payload_json) if payload_json else {},
            created_at=datetime.fromisoformat(_safe_get(row, 8)),
            updated_at=datetime.fromisoformat(_safe_get(row, 9)),
            verified_at=_parse_dt(_safe_get(row, 10)),
        )

    def _read_snapshots(self) -> list[tuple[int, SubscriptionSnapshot]]:
        """All parseable snapshots with their 1-based sheet row index."""
        sheet = self._client.get_subscriptions_sheet()
        result = []
        for idx, row in enumerate(sheet.get_all_values()[1:], start=2):
            if not row or not row[0]:
                continue
            try:
                result.append((idx, self._row_to_snapshot(row)))
            except Exception:
                continue  # Skip malformed rows
        return result

    def _find_transaction_row(self, reference: str) -> tuple[Optional[int], Optional[list]]:
        sheet = self._client.get_transactions_sheet()
        for idx, row in enumerate(sheet.get_all_values()[1:], start=2):
            if row and row[0] == reference:
                return idx, row
        return None, None

    def _write_row(self, sheet: gspread.Worksheet, row_index: int, values: list) -> None:
        end_col = rowcol_to_a1(row_index, len(values))
        sheet.update(
            range_name=f"A{row_index}:{end_col}",
            values=[values],
            value_input_option="RAW",
        )

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def _latest_for_user(self, user_id: str, status: SubscriptionState) -> Optional[SubscriptionSnapshot]:
        return pick_latest([
            s for _, s in self._read_snapshots()
            if s.user_id == user_id and s.status == status
        ])

    def _latest_for_reference(self, reference: str) -> Optional[SubscriptionSnapshot]:
        return pick_latest([s for _, s in self._read_snapshots() if s.reference == reference])

    def _set_status(self, subscription_id: UUID, status: SubscriptionState) -> bool:
        sheet = self._client.get_subscriptions_sheet()
        for idx, snapshot in self._read_snapshots():
            if snapshot.id == subscription_id:
                updated = snapshot.model_copy(
                    update={"status": status, "updated_at": utcnow()}
                )
                self._write_row(sheet, idx, self._snapshot_to_row(updated))
                return True
        raise NotFoundError(f"Subscription not found: {subscription_id}")

    def _upsert(self, snapshot: SubscriptionSnapshot) -> bool:
        sheet = self._client.get_subscriptions_sheet()
        row = self._snapshot_to_row(snapshot)
        for idx, existing in self._read_snapshots():
            if existing.id == snapshot.id:
                self._write_row(sheet, idx, row)
                return True
        sheet.append_row(row, value_input_option="RAW")
        return True

    @_sheets_retry
    async def get_latest_subscription(
        self,
        user_id: str,
        status: SubscriptionState = SubscriptionState.ACTIVE,
    ) -> Optional[SubscriptionSnapshot]:
        try:
            return await asyncio.to_thread(self._latest_for_user, user_id, status)
        except StorageError:
            raise
        except Exception as e:
            raise RemoteUnavailableError(f"Failed to read subscriptions: {e}")

    @_sheets_retry
    async def get_subscription_by_reference(
        self,
        reference: str,
    ) -> Optional[SubscriptionSnapshot]:
        try:
            return await asyncio.to_thread(self._latest_for_reference, reference)
        except StorageError:
            raise
        except Exception as e:
            raise RemoteUnavailableError(f"Failed to read subscriptions: {e}")

    @_sheets_retry
    async def update_subscription_status(
        self,
        subscription_id: UUID,
        status: SubscriptionState,
    ) -> bool:
        try:
            return await asyncio.to_thread(self._set_status, subscription_id, status)
        except StorageError:
            raise
        except Exception as e:
            raise RemoteUnavailableError(f"Failed to update subscription: {e}")

    @_sheets_retry
    async def upsert_subscription(self, snapshot: SubscriptionSnapshot) -> bool:
        try:
            return await asyncio.to_thread(self._upsert, snapshot)
        except StorageError:
            raise
        except Exception as e:
            raise RemoteUnavailableError(f"Failed to save subscription: {e}")

    async def cancel_subscriptions(self, user_id: str) -> int:
        try:
            snapshots = await asyncio.to_thread(self._read_snapshots)
        except StorageError:
            raise
        except Exception as e:
            raise RemoteUnavailableError(f"Failed to read subscriptions: {e}")

        count = 0
        for _, snapshot in snapshots:
            if snapshot.user_id == user_id and snapshot.status == SubscriptionState.ACTIVE:
                await self.update_subscription_status(snapshot.id, SubscriptionState.CANCELLED)
                count += 1
        return count

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def _append_transaction(self, transaction: PendingTransaction) -> bool:
        idx, _ = self._find_transaction_row(transaction.reference)
        if idx is not None:
            raise DuplicateError(f"Transaction already exists: {transaction.reference}")
        sheet = self._client.get_transactions_sheet()
        sheet.append_row(self._transaction_to_row(transaction), value_input_option="RAW")
        return True

    def _load_transaction(self, reference: str) -> Optional[PendingTransaction]:
        _, row = self._find_transaction_row(reference)
        return self._row_to_transaction(row) if row else None

    def _transition(
        self,
        reference: str,
        status: TransactionStatus,
        gateway_payload: Optional[dict[str, Any]],
        at: Optional[datetime],
    ) -> PendingTransaction:
        idx, row = self._find_transaction_row(reference)
        if idx is None:
            raise NotFoundError(f"Transaction not found: {reference}")
        updated = transition_transaction(
            self._row_to_transaction(row), status, gateway_payload, at
        )
        sheet = self._client.get_transactions_sheet()
        self._write_row(sheet, idx, self._transaction_to_row(updated))
        return updated

    @_sheets_retry
    async def create_transaction(self, transaction: PendingTransaction) -> bool:
        try:
            return await asyncio.to_thread(self._append_transaction, transaction)
        except StorageError:
            raise
        except Exception as e:
            raise RemoteUnavailableError(f"Failed to save transaction: {e}")

    @_sheets_retry
    async def get_transaction(self, reference: str) -> Optional[PendingTransaction]:
        try:
            return await asyncio.to_thread(self._load_transaction, reference)
        except StorageError:
            raise
        except Exception as e:
            raise RemoteUnavailableError(f"Failed to read transaction: {e}")

    @_sheets_retry
    async def update_transaction(
        self,
        reference: str,
        status: TransactionStatus,
        gateway_payload: Optional[dict[str, Any]] = None,
        at: Optional[datetime] = None,
    ) -> PendingTransaction:
        try:
            return await asyncio.to_thread(
                self._transition, reference, status, gateway_payload, at
            )
        except StorageError:
            raise
        except Exception as e:
            raise RemoteUnavailableError(f"Failed to update transaction: {e}")




class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Google Sheets implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _row_to_event(self, row: list) -> AuditEvent:
        """Convert a spreadsheet row to an AuditEvent."""
        return AuditEvent(
            event_id=UUID(_safe_get(row, 0)),
            timestamp=datetime.fromisoformat(_safe_get(row, 1)),
            event_type=AuditEventType(_safe_get(row, 2)),
            severity=AuditSeverity(_safe_get(row, 3)),
            entity_type=_safe_get(row, 4) or None,
            entity_id=_safe_get(row, 5) or None,
            correlation_id=UUID(_safe_get(row, 6)) if _safe_get(row, 6) else None,
            description=_safe_get(row, 7),
            details=json.loads(_safe_get(row, 8)) if _safe_get(row, 8) else {},
            error_message=_safe_get(row, 9) or None,
            is_user_action=_safe_get(row, 10).lower() == "true",
        )
    def _append(self, event: AuditEvent) -> bool:
        sheet = self._client.get_audit_sheet()
        sheet.append_row(event.to_sheets_row(), value_input_option="RAW")
        return True

    def _events_for(self, entity_type: str, entity_id: str) -> list[AuditEvent]:
        sheet = self._client.get_audit_sheet()
        events = []
        for row in sheet.get_all_values()[1:]:
            if (
                row
                and len(row) > 5
                and row[4] == entity_type
                and row[5] == entity_id
            ):
                try:
                    events.append(self._row_to_event(row))
                except Exception:
                    continue

        events.sort(key=lambda e: e.timestamp)
        return events

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        try:
            return await asyncio.to_thread(self._append, event)
        except Exception as e:
            raise StorageError(f"Failed to write audit event: {e}")

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """Get events by entity."""
        try:
            return await asyncio.to_thread(self._events_for, entity_type, entity_id)
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")
