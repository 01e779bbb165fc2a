"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Swap Google Sheets for a real database later
2. Use in-memory storage for testing
3. Keep the reconciliation engine decoupled from storage implementation

The interface is intentionally simple - we're not building a full ORM.
Just the operations the reconciliation engine needs.

CRITICAL: insert_claim must be claim-or-reject. Two concurrent claims
for the same (user_id, source_id) must not both succeed.
"""

from abc import ABC, abstractmethod
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


class SubscriptionRepository(ABC):
    """
    Abstract interface for canonical subscription storage.

    Subscriptions are never deleted by the engine.
    """

    @abstractmethod
    async def create(self, subscription: Subscription) -> Subscription:
        """
        Insert a new subscription.

        Raises:
            DuplicateError: If the id already exists
        """
        pass

    @abstractmethod
    async def update(self, subscription: Subscription) -> Subscription:
        """
        Replace an existing subscription.

        Raises:
            NotFoundError: If the subscription doesn't exist
        """
        pass

    @abstractmethod
    async def get(self, user_id: str, subscription_id: UUID) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def find_by_identity(self, user_id: str, identity: str) -> list[Subscription]:
        """
        Subscriptions whose company_name contains the identity token.

        Args:
            user_id: Owner of the subscriptions
            identity: Base brand token (case-insensitive)

        Returns:
            Matching subscriptions, most recently updated first
        """
        pass

    @abstractmethod
    async def list_for_user(
        self,
        user_id: str,
        status: Optional[SubscriptionStatus] = None,
    ) -> list[Subscription]:
        pass

    @abstractmethod
    async def list_user_ids(self) -> list[str]:
        """Users that own at least one subscription."""
        pass


class PotentialSubscriptionRepository(ABC):
    """Abstract interface for potential subscription storage."""

    @abstractmethod
    async def upsert(self, potential: PotentialSubscription) -> PotentialSubscription:
        """
        Insert or replace by (user_id, transaction_id).

        Replacing keeps the id and created_at of the stored record.
        """
        pass

    @abstractmethod
    async def update(self, potential: PotentialSubscription) -> PotentialSubscription:
        """
        Raises:
            NotFoundError: If the potential doesn't exist
        """
        pass

    @abstractmethod
    async def get(self, user_id: str, potential_id: UUID) -> Optional[PotentialSubscription]:
        pass

    @abstractmethod
    async def get_by_transaction(
        self,
        user_id: str,
        transaction_id: str,
    ) -> Optional[PotentialSubscription]:
        pass

    @abstractmethod
    async def find_by_merchant(
        self,
        user_id: str,
        identity: str,
        since: date,
        confidences: Iterable[PotentialConfidence],
    ) -> list[PotentialSubscription]:
        """
        Potentials whose merchant contains the identity token.

        Args:
            user_id: Owner
            identity: Base brand token (case-insensitive)
            since: Only transactions on or after this date
            confidences: Confidence labels to include
        """
        pass

    @abstractmethod
    async def list_for_user(
        self,
        user_id: str,
        confidence: Optional[PotentialConfidence] = None,
    ) -> list[PotentialSubscription]:
        pass


class LedgerStorageInterface(ABC):
    """
    Abstract interface for the idempotency ledger.

    Also keeps per-user sync checkpoints (last email scan, last bank sync).
    """

    @abstractmethod
    async def insert_claim(self, entry: LedgerEntry) -> None:
        """
        Record a claim for (entry.user_id, entry.source_id).

        A previous claim whose status is FAILED is replaced.

        Raises:
            DuplicateError: If a non-failed claim already exists
        """
        pass

    @abstractmethod
    async def update_entry(
        self,
        user_id: str,
        source_id: str,
        status: LedgerStatus,
        linked_subscription_id: Optional[UUID] = None,
    ) -> LedgerEntry:
        """
        Raises:
            NotFoundError: If no claim exists
        """
        pass

    @abstractmethod
    async def get_entry(self, user_id: str, source_id: str) -> Optional[LedgerEntry]:
        pass

    @abstractmethod
    async def list_entries(
        self,
        user_id: str,
        status: Optional[LedgerStatus] = None,
    ) -> list[LedgerEntry]:
        pass

    @abstractmethod
    async def get_checkpoint(self, user_id: str, stream: str) -> Optional[datetime]:
        pass

    @abstractmethod
    async def set_checkpoint(self, user_id: str, stream: str, at: datetime) -> None:
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
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID (e.g., one batch run).

        Returns:
            List of related events in chronological order
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """
        Get all events for a specific entity.

        Args:
            entity_type: Type of entity (e.g., 'subscription', 'evidence')
            entity_id: The entity's ID

        Returns:
            List of events in chronological order
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Returns:
            List of recent events (newest first)
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


class ConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass
