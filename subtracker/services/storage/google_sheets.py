"""
Google Sheets Storage Implementation

DESIGN DECISION: Google Sheets is used as the storage backend because:
1. Users can inspect their subscriptions and the audit trail directly
2. No database setup required
3. Easy to export/migrate later

TRADEOFFS:
- Not suitable for high-volume data (we're fine for personal use)
- No transactions or unique constraints. Ledger claims are serialized
  with an in-process lock, so they are claim-or-reject only within a
  single worker process. Run one scheduler worker per spreadsheet.
- Limited query capabilities (we filter in Python)
"""

import asyncio
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Iterable, Optional
from uuid import UUID

import gspread
import structlog
from google.oauth2.service_account import Credentials
from tenacity import retry, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from subtracker.config import get_settings
from subtracker.models.audit import AuditEvent, AuditEventType, AuditSeverity
from subtracker.models.subscription import (
    BillingFrequency,
    LedgerEntry,
    LedgerStatus,
    PotentialConfidence,
    PotentialReason,
    PotentialSubscription,
    RecurringPattern,
    Subscription,
    SubscriptionConfidence,
    SubscriptionSource,
    SubscriptionStatus,
    UserAction,
)
from subtracker.services.storage.interface import (
    AuditStorageInterface,
    ConnectionError,
    DuplicateError,
    LedgerStorageInterface,
    NotFoundError,
    PotentialSubscriptionRepository,
    StorageError,
    SubscriptionRepository,
)


logger = structlog.get_logger(__name__)


SUBSCRIPTION_COLUMNS = [
    "id",
    "user_id",
    "company_name",
    "price",
    "currency",
    "start_date",
    "next_renewal_date",
    "cancellation_date",
    "access_end_date",
    "status",
    "confidence",
    "source",
    "frequency",
    "plan_name",
    "last_applied_event_id",
    "last_applied_event_date",
    "renewal_alert_sent_at",
    "created_at",
    "updated_at",
]

POTENTIAL_COLUMNS = [
    "id",
    "user_id",
    "merchant_name",
    "amount",
    "currency",
    "transaction_date",
    "transaction_id",
    "account_id",
    "confidence",
    "reason",
    "recurring_pattern_json",
    "matched_email_id",
    "matched_email_date",
    "user_action_json",
    "subscription_id",
    "created_at",
    "updated_at",
]

LEDGER_COLUMNS = [
    "user_id",
    "source_id",
    "status",
    "linked_subscription_id",
    "claimed_at",
    "updated_at",
]

CHECKPOINT_COLUMNS = [
    "user_id",
    "stream",
    "at",
]

AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "user_id",
    "entity_type",
    "entity_id",
    "correlation_id",
    "description",
    "details_json",
    "error_message",
    "is_user_action",
]

# ConnectionError and NotFoundError are not transient. Writes that
# append a row must recognize their own earlier attempt on retry.
_sheets_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    retry=retry_if_not_exception_type((ConnectionError, NotFoundError, DuplicateError)),
    reraise=True,
)


def _safe_getter(row: list) -> Callable[..., str]:
    def safe_get(index: int, default: str = "") -> str:
        try:
            return row[index] if row[index] else default
        except IndexError:
            return default
    return safe_get


def _iso(value) -> str:
    return value.isoformat() if value else ""


def _parse_date(value: str) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _parse_datetime(value: str) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and provides retry logic for API calls.
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
                raise ConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise ConnectionError(f"Failed to connect to Google Sheets: {e}")

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
                raise ConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def get_worksheet(self, title: str, columns: list[str], rows: int = 1000) -> gspread.Worksheet:
        """Get or create a worksheet with the given header row."""
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
        return self.get_worksheet(self._settings.subscriptions_sheet_name, SUBSCRIPTION_COLUMNS)

    def get_potentials_sheet(self) -> gspread.Worksheet:
        return self.get_worksheet(self._settings.potentials_sheet_name, POTENTIAL_COLUMNS)

    def get_ledger_sheet(self) -> gspread.Worksheet:
        return self.get_worksheet(self._settings.ledger_sheet_name, LEDGER_COLUMNS, rows=5000)

    def get_checkpoints_sheet(self) -> gspread.Worksheet:
        return self.get_worksheet(self._settings.checkpoints_sheet_name, CHECKPOINT_COLUMNS)

    def get_audit_sheet(self) -> gspread.Worksheet:
        # More rows for audit log
        return self.get_worksheet(self._settings.audit_sheet_name, AUDIT_COLUMNS, rows=5000)


def _replace_row(sheet: gspread.Worksheet, row_number: int, values: list) -> None:
    sheet.update(values=[values], range_name=f"A{row_number}", value_input_option="RAW")


class GoogleSheetsSubscriptionRepository(SubscriptionRepository):
    """
    Subscriptions are stored one per row.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _to_row(self, sub: Subscription) -> list:
        return [
            str(sub.id),
            sub.user_id,
            sub.company_name,
            str(sub.price),
            sub.currency,
            sub.start_date.isoformat(),
            _iso(sub.next_renewal_date),
            _iso(sub.cancellation_date),
            _iso(sub.access_end_date),
            sub.status.value,
            sub.confidence.value,
            sub.source.value,
            sub.frequency.value,
            sub.plan_name or "",
            sub.last_applied_event_id or "",
            _iso(sub.last_applied_event_date),
            _iso(sub.renewal_alert_sent_at),
            sub.created_at.isoformat(),
            sub.updated_at.isoformat(),
        ]

    def _from_row(self, row: list) -> Subscription:
        safe_get = _safe_getter(row)
        return Subscription(
            id=UUID(safe_get(0)),
            user_id=safe_get(1),
            company_name=safe_get(2),
            price=Decimal(safe_get(3, "0")),
            currency=safe_get(4, "USD"),
            start_date=date.fromisoformat(safe_get(5)),
            next_renewal_date=_parse_date(safe_get(6)),
            cancellation_date=_parse_date(safe_get(7)),
            access_end_date=_parse_date(safe_get(8)),
            status=SubscriptionStatus(safe_get(9, "active")),
            confidence=SubscriptionConfidence(safe_get(10, "confirmed")),
            source=SubscriptionSource(safe_get(11, "email")),
            frequency=BillingFrequency(safe_get(12, "unknown")),
            plan_name=safe_get(13) or None,
            last_applied_event_id=safe_get(14) or None,
            last_applied_event_date=_parse_datetime(safe_get(15)),
            renewal_alert_sent_at=_parse_datetime(safe_get(16)),
            created_at=datetime.fromisoformat(safe_get(17)),
            updated_at=datetime.fromisoformat(safe_get(18)),
        )

    def _all(self) -> list[tuple[int, Subscription]]:
        sheet = self._client.get_subscriptions_sheet()
        rows = []
        for idx, row in enumerate(sheet.get_all_values()[1:], start=2):
            if not row or not row[0]:
                continue
            try:
                rows.append((idx, self._from_row(row)))
            except Exception as e:
                logger.warning("malformed_row_skipped", sheet="subscriptions", row=idx, error=str(e))
        return rows

    @_sheets_retry
    async def create(self, subscription: Subscription) -> Subscription:
        try:
            row = self._to_row(subscription)
            for _, sub in self._all():
                if sub.id != subscription.id:
                    continue
                if self._to_row(sub) == row:
                    # An earlier attempt landed before its response failed
                    return subscription
                raise DuplicateError(f"Subscription already exists: {subscription.id}")
            sheet = self._client.get_subscriptions_sheet()
            sheet.append_row(row, value_input_option="RAW")
            return subscription
        except (DuplicateError, ConnectionError):
            raise
        except Exception as e:
            raise StorageError(f"Failed to save subscription: {e}")

    @_sheets_retry
    async def update(self, subscription: Subscription) -> Subscription:
        try:
            for idx, sub in self._all():
                if sub.id == subscription.id:
                    _replace_row(
                        self._client.get_subscriptions_sheet(), idx, self._to_row(subscription)
                    )
                    return subscription
            raise NotFoundError(f"Subscription not found: {subscription.id}")
        except (NotFoundError, ConnectionError):
            raise
        except Exception as e:
            raise StorageError(f"Failed to update subscription: {e}")

    async def get(self, user_id: str, subscription_id: UUID) -> Optional[Subscription]:
        for sub in await self.list_for_user(user_id):
            if sub.id == subscription_id:
                return sub
        return None

    async def find_by_identity(self, user_id: str, identity: str) -> list[Subscription]:
        needle = identity.lower()
        if not needle:
            return []
        matches = [
            sub for sub in await self.list_for_user(user_id)
            if needle in sub.company_name.lower()
        ]
        matches.sort(key=lambda s: s.updated_at, reverse=True)
        return matches

    @_sheets_retry
    async def list_for_user(
        self,
        user_id: str,
        status: Optional[SubscriptionStatus] = None,
    ) -> list[Subscription]:
        try:
            return [
                sub for _, sub in self._all()
                if sub.user_id == user_id and (status is None or sub.status == status)
            ]
        except ConnectionError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to list subscriptions: {e}")

    @_sheets_retry
    async def list_user_ids(self) -> list[str]:
        try:
            return sorted({sub.user_id for _, sub in self._all()})
        except ConnectionError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to list users: {e}")


class GoogleSheetsPotentialSubscriptionRepository(PotentialSubscriptionRepository):
    """
    Potential subscriptions, one per bank transaction.

    The nested recurring pattern and user action are JSON-serialized.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _to_row(self, p: PotentialSubscription) -> list:
        return [
            str(p.id),
            p.user_id,
            p.merchant_name,
            str(p.amount),
            p.currency,
            p.transaction_date.isoformat(),
            p.transaction_id,
            p.account_id or "",
            p.confidence.value,
            p.reason.value,
            p.recurring_pattern.model_dump_json(),
            p.matched_email_id or "",
            _iso(p.matched_email_date),
            p.user_action.model_dump_json(),
            str(p.subscription_id) if p.subscription_id else "",
            p.created_at.isoformat(),
            p.updated_at.isoformat(),
        ]

    def _from_row(self, row: list) -> PotentialSubscription:
        safe_get = _safe_getter(row)
        return PotentialSubscription(
            id=UUID(safe_get(0)),
            user_id=safe_get(1),
            merchant_name=safe_get(2),
            amount=Decimal(safe_get(3, "0")),
            currency=safe_get(4, "USD"),
            transaction_date=date.fromisoformat(safe_get(5)),
            transaction_id=safe_get(6),
            account_id=safe_get(7) or None,
            confidence=PotentialConfidence(safe_get(8, "potential")),
            reason=PotentialReason(safe_get(9, "transaction_only")),
            recurring_pattern=RecurringPattern(**json.loads(safe_get(10, "{}"))),
            matched_email_id=safe_get(11) or None,
            matched_email_date=_parse_datetime(safe_get(12)),
            user_action=UserAction(**json.loads(safe_get(13, "{}"))),
            subscription_id=UUID(safe_get(14)) if safe_get(14) else None,
            created_at=datetime.fromisoformat(safe_get(15)),
            updated_at=datetime.fromisoformat(safe_get(16)),
        )

    def _all(self) -> list[tuple[int, PotentialSubscription]]:
        sheet = self._client.get_potentials_sheet()
        rows = []
        for idx, row in enumerate(sheet.get_all_values()[1:], start=2):
            if not row or not row[0]:
                continue
            try:
                rows.append((idx, self._from_row(row)))
            except Exception as e:
                logger.warning("malformed_row_skipped", sheet="potentials", row=idx, error=str(e))
        return rows

    @_sheets_retry
    async def upsert(self, potential: PotentialSubscription) -> PotentialSubscription:
        try:
            sheet = self._client.get_potentials_sheet()
            for idx, existing in self._all():
                if (
                    existing.user_id == potential.user_id
                    and existing.transaction_id == potential.transaction_id
                ):
                    potential = potential.model_copy(
                        update={"id": existing.id, "created_at": existing.created_at}
                    )
                    _replace_row(sheet, idx, self._to_row(potential))
                    return potential
            sheet.append_row(self._to_row(potential), value_input_option="RAW")
            return potential
        except ConnectionError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to save potential subscription: {e}")

    @_sheets_retry
    async def update(self, potential: PotentialSubscription) -> PotentialSubscription:
        try:
            for idx, existing in self._all():
                if existing.id == potential.id:
                    _replace_row(
                        self._client.get_potentials_sheet(), idx, self._to_row(potential)
                    )
                    return potential
            raise NotFoundError(f"Potential subscription not found: {potential.id}")
        except (NotFoundError, ConnectionError):
            raise
        except Exception as e:
            raise StorageError(f"Failed to update potential subscription: {e}")

    async def get(self, user_id: str, potential_id: UUID) -> Optional[PotentialSubscription]:
        for p in await self.list_for_user(user_id):
            if p.id == potential_id:
                return p
        return None

    async def get_by_transaction(
        self,
        user_id: str,
        transaction_id: str,
    ) -> Optional[PotentialSubscription]:
        for p in await self.list_for_user(user_id):
            if p.transaction_id == transaction_id:
                return p
        return None

    async def find_by_merchant(
        self,
        user_id: str,
        identity: str,
        since: date,
        confidences: Iterable[PotentialConfidence],
    ) -> list[PotentialSubscription]:
        needle = identity.lower()
        allowed = set(confidences)
        return [
            p for p in await self.list_for_user(user_id)
            if needle in p.merchant_name.lower()
            and p.transaction_date >= since
            and p.confidence in allowed
        ]

    @_sheets_retry
    async def list_for_user(
        self,
        user_id: str,
        confidence: Optional[PotentialConfidence] = None,
    ) -> list[PotentialSubscription]:
        try:
            return [
                p for _, p in self._all()
                if p.user_id == user_id and (confidence is None or p.confidence == confidence)
            ]
        except ConnectionError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to list potential subscriptions: {e}")


class GoogleSheetsLedgerStorage(LedgerStorageInterface):
    """
    Idempotency ledger, one row per (user_id, source_id).

    Claims are read-then-write, serialized by an asyncio.Lock.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()
        self._claim_lock = asyncio.Lock()

    def _to_row(self, entry: LedgerEntry) -> list:
        return [
            entry.user_id,
            entry.source_id,
            entry.status.value,
            str(entry.linked_subscription_id) if entry.linked_subscription_id else "",
            entry.claimed_at.isoformat(),
            entry.updated_at.isoformat(),
        ]

    def _from_row(self, row: list) -> LedgerEntry:
        safe_get = _safe_getter(row)
        return LedgerEntry(
            user_id=safe_get(0),
            source_id=safe_get(1),
            status=LedgerStatus(safe_get(2, "pending")),
            linked_subscription_id=UUID(safe_get(3)) if safe_get(3) else None,
            claimed_at=datetime.fromisoformat(safe_get(4)),
            updated_at=datetime.fromisoformat(safe_get(5)),
        )

    def _find(self, user_id: str, source_id: str) -> Optional[tuple[int, LedgerEntry]]:
        sheet = self._client.get_ledger_sheet()
        for idx, row in enumerate(sheet.get_all_values()[1:], start=2):
            if len(row) > 1 and row[0] == user_id and row[1] == source_id:
                return idx, self._from_row(row)
        return None

    @_sheets_retry
    async def insert_claim(self, entry: LedgerEntry) -> None:
        async with self._claim_lock:
            try:
                sheet = self._client.get_ledger_sheet()
                found = self._find(entry.user_id, entry.source_id)
                if found is None:
                    sheet.append_row(self._to_row(entry), value_input_option="RAW")
                    return
                idx, existing = found
                if existing.status == LedgerStatus.PENDING and existing.claimed_at == entry.claimed_at:
                    # This claim, written by an earlier attempt
                    return
                if existing.status != LedgerStatus.FAILED:
                    raise DuplicateError(
                        f"{entry.source_id} already claimed for {entry.user_id}"
                    )
                _replace_row(sheet, idx, self._to_row(entry))
            except (DuplicateError, ConnectionError):
                raise
            except Exception as e:
                raise StorageError(f"Failed to claim {entry.source_id}: {e}")

    @_sheets_retry
    async def update_entry(
        self,
        user_id: str,
        source_id: str,
        status: LedgerStatus,
        linked_subscription_id: Optional[UUID] = None,
    ) -> LedgerEntry:
        try:
            found = self._find(user_id, source_id)
            if found is None:
                raise NotFoundError(f"No claim for {source_id}")
            idx, entry = found
            entry = entry.model_copy(update={
                "status": status,
                "linked_subscription_id": linked_subscription_id or entry.linked_subscription_id,
                "updated_at": datetime.utcnow(),
            })
            _replace_row(self._client.get_ledger_sheet(), idx, self._to_row(entry))
            return entry
        except (NotFoundError, ConnectionError):
            raise
        except Exception as e:
            raise StorageError(f"Failed to update claim {source_id}: {e}")

    @_sheets_retry
    async def get_entry(self, user_id: str, source_id: str) -> Optional[LedgerEntry]:
        try:
            found = self._find(user_id, source_id)
            return found[1] if found else None
        except ConnectionError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to read claim {source_id}: {e}")

    @_sheets_retry
    async def list_entries(
        self,
        user_id: str,
        status: Optional[LedgerStatus] = None,
    ) -> list[LedgerEntry]:
        try:
            sheet = self._client.get_ledger_sheet()
            entries = []
            for row in sheet.get_all_values()[1:]:
                if len(row) < 2 or row[0] != user_id:
                    continue
                try:
                    entry = self._from_row(row)
                except Exception as e:
                    logger.warning("malformed_row_skipped", sheet="ledger", source_id=row[1], error=str(e))
                    continue
                if status is None or entry.status == status:
                    entries.append(entry)
            return entries
        except ConnectionError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to list claims: {e}")

    @_sheets_retry
    async def get_checkpoint(self, user_id: str, stream: str) -> Optional[datetime]:
        try:
            sheet = self._client.get_checkpoints_sheet()
            for row in sheet.get_all_values()[1:]:
                if len(row) > 2 and row[0] == user_id and row[1] == stream:
                    return _parse_datetime(row[2])
            return None
        except ConnectionError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to read checkpoint: {e}")

    @_sheets_retry
    async def set_checkpoint(self, user_id: str, stream: str, at: datetime) -> None:
        try:
            sheet = self._client.get_checkpoints_sheet()
            values = [user_id, stream, at.isoformat()]
            for idx, row in enumerate(sheet.get_all_values()[1:], start=2):
                if len(row) > 1 and row[0] == user_id and row[1] == stream:
                    _replace_row(sheet, idx, values)
                    return
            sheet.append_row(values, value_input_option="RAW")
        except ConnectionError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to write checkpoint: {e}")


class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Google Sheets implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _row_to_event(self, row: list) -> AuditEvent:
        safe_get = _safe_getter(row)
        return AuditEvent(
            event_id=UUID(safe_get(0)),
            timestamp=datetime.fromisoformat(safe_get(1)),
            event_type=AuditEventType(safe_get(2)),
            severity=AuditSeverity(safe_get(3)),
            user_id=safe_get(4) or None,
            entity_type=safe_get(5) or None,
            entity_id=safe_get(6) or None,
            correlation_id=UUID(safe_get(7)) if safe_get(7) else None,
            description=safe_get(8),
            details=json.loads(safe_get(9)) if safe_get(9) else {},
            error_message=safe_get(10) or None,
            is_user_action=safe_get(11).lower() == "true",
        )

    def _events(self, keep: Callable[[list], bool]) -> list[AuditEvent]:
        sheet = self._client.get_audit_sheet()
        events = []
        for row in sheet.get_all_values()[1:]:
            if row and row[0] and keep(row):
                try:
                    events.append(self._row_to_event(row))
                except Exception:
                    continue
        return events

    @_sheets_retry
    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        try:
            sheet = self._client.get_audit_sheet()
            sheet.append_row(event.to_sheets_row(), value_input_option="RAW")
            return True
        except Exception as e:
            raise StorageError(f"Failed to write audit event: {e}")

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        try:
            events = self._events(lambda row: len(row) > 7 and row[7] == str(correlation_id))
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        try:
            events = self._events(
                lambda row: len(row) > 6 and row[5] == entity_type and row[6] == entity_id
            )
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        try:
            events = self._events(lambda row: True)
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")
        # Sort newest first
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
