"""
In-Memory Storage Implementation

Dict-backed implementations of every storage interface. Used by the
test-suite and for local runs without Google credentials.

Claims are atomic here because no await happens between the existence
check and the insert.
"""

from datetime import date, datetime
from typing import Iterable, Optional
from uuid import UUID

from subtracker.models.audit import AuditEvent
from subtracker.models.subscription import (
    LedgerEntry,
    LedgerStatus,
    PotentialConfidence,
    PotentialSubscription,
    Subscription,
    SubscriptionStatus,
)
from subtracker.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    LedgerStorageInterface,
    NotFoundError,
    PotentialSubscriptionRepository,
    SubscriptionRepository,
)


class InMemorySubscriptionRepository(SubscriptionRepository):

    def __init__(self):
        self._rows: dict[UUID, Subscription] = {}

    async def create(self, subscription: Subscription) -> Subscription:
        if subscription.id in self._rows:
            raise DuplicateError(f"Subscription {subscription.id} already exists")
        self._rows[subscription.id] = subscription.model_copy(deep=True)
        return subscription

    async def update(self, subscription: Subscription) -> Subscription:
        if subscription.id not in self._rows:
            raise NotFoundError(f"Subscription {subscription.id} not found")
        self._rows[subscription.id] = subscription.model_copy(deep=True)
        return subscription

    async def get(self, user_id: str, subscription_id: UUID) -> Optional[Subscription]:
        row = self._rows.get(subscription_id)
        if row is None or row.user_id != user_id:
            return None
        return row.model_copy(deep=True)

    async def find_by_identity(self, user_id: str, identity: str) -> list[Subscription]:
        needle = identity.lower()
        if not needle:
            return []
        matches = [
            row.model_copy(deep=True)
            for row in self._rows.values()
            if row.user_id == user_id and needle in row.company_name.lower()
        ]
        return sorted(matches, key=lambda s: s.updated_at, reverse=True)

    async def list_for_user(
        self,
        user_id: str,
        status: Optional[SubscriptionStatus] = None,
    ) -> list[Subscription]:
        return [
            row.model_copy(deep=True)
            for row in self._rows.values()
            if row.user_id == user_id and (status is None or row.status == status)
        ]

    async def list_user_ids(self) -> list[str]:
        return sorted({row.user_id for row in self._rows.values()})


class InMemoryPotentialSubscriptionRepository(PotentialSubscriptionRepository):

    def __init__(self):
        self._rows: dict[UUID, PotentialSubscription] = {}

    def _by_transaction(self, user_id: str, transaction_id: str) -> Optional[PotentialSubscription]:
        for row in self._rows.values():
            if row.user_id == user_id and row.transaction_id == transaction_id:
                return row
        return None

    async def upsert(self, potential: PotentialSubscription) -> PotentialSubscription:
        existing = self._by_transaction(potential.user_id, potential.transaction_id)
        if existing is not None:
            potential = potential.model_copy(
                update={"id": existing.id, "created_at": existing.created_at}
            )
        self._rows[potential.id] = potential.model_copy(deep=True)
        return potential

    async def update(self, potential: PotentialSubscription) -> PotentialSubscription:
        if potential.id not in self._rows:
            raise NotFoundError(f"Potential subscription {potential.id} not found")
        self._rows[potential.id] = potential.model_copy(deep=True)
        return potential

    async def get(self, user_id: str, potential_id: UUID) -> Optional[PotentialSubscription]:
        row = self._rows.get(potential_id)
        if row is None or row.user_id != user_id:
            return None
        return row.model_copy(deep=True)

    async def get_by_transaction(
        self,
        user_id: str,
        transaction_id: str,
    ) -> Optional[PotentialSubscription]:
        row = self._by_transaction(user_id, transaction_id)
        return row.model_copy(deep=True) if row else None

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
            row.model_copy(deep=True)
            for row in self._rows.values()
            if row.user_id == user_id
            and needle in row.merchant_name.lower()
            and row.transaction_date >= since
            and row.confidence in allowed
        ]

    async def list_for_user(
        self,
        user_id: str,
        confidence: Optional[PotentialConfidence] = None,
    ) -> list[PotentialSubscription]:
        return [
            row.model_copy(deep=True)
            for row in self._rows.values()
            if row.user_id == user_id and (confidence is None or row.confidence == confidence)
        ]


class InMemoryLedgerStorage(LedgerStorageInterface):

    def __init__(self):
        self._entries: dict[tuple[str, str], LedgerEntry] = {}
        self._checkpoints: dict[tuple[str, str], datetime] = {}

    async def insert_claim(self, entry: LedgerEntry) -> None:
        existing = self._entries.get(entry.key)
        if existing is not None and existing.status != LedgerStatus.FAILED:
            raise DuplicateError(f"{entry.source_id} already claimed for {entry.user_id}")
        self._entries[entry.key] = entry.model_copy()

    async def update_entry(
        self,
        user_id: str,
        source_id: str,
        status: LedgerStatus,
        linked_subscription_id: Optional[UUID] = None,
    ) -> LedgerEntry:
        entry = self._entries.get((user_id, source_id))
        if entry is None:
            raise NotFoundError(f"No claim for {source_id}")
        entry = entry.model_copy(update={
            "status": status,
            "linked_subscription_id": linked_subscription_id or entry.linked_subscription_id,
            "updated_at": datetime.utcnow(),
        })
        self._entries[(user_id, source_id)] = entry
        return entry

    async def get_entry(self, user_id: str, source_id: str) -> Optional[LedgerEntry]:
        entry = self._entries.get((user_id, source_id))
        return entry.model_copy() if entry else None

    async def list_entries(
        self,
        user_id: str,
        status: Optional[LedgerStatus] = None,
    ) -> list[LedgerEntry]:
        return [
            entry.model_copy()
            for (owner, _), entry in self._entries.items()
            if owner == user_id and (status is None or entry.status == status)
        ]

    async def get_checkpoint(self, user_id: str, stream: str) -> Optional[datetime]:
        return self._checkpoints.get((user_id, stream))

    async def set_checkpoint(self, user_id: str, stream: str, at: datetime) -> None:
        self._checkpoints[(user_id, stream)] = at


class InMemoryAuditStorage(AuditStorageInterface):

    def __init__(self):
        self.events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self.events.append(event)
        return True

    async def get_events_by_correlation_id(self, correlation_id: UUID) -> list[AuditEvent]:
        return [e for e in self.events if e.correlation_id == correlation_id]

    async def get_events_by_entity(self, entity_type: str, entity_id: str) -> list[AuditEvent]:
        return [
            e for e in self.events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        return list(reversed(self.events))[:limit]
