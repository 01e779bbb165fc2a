"""
Idempotency Ledger

Guarantees at-most-once application of an evidence item per user.

A claim is an insert against the (user_id, source_id) uniqueness
constraint of the ledger store. DuplicateError from the store means
"already claimed": the caller treats the item as handled and skips it.

DESIGN DECISION: a FAILED claim may be claimed again. The item was
never applied, so re-running it cannot double-apply anything.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog

from subtracker.models.subscription import LedgerEntry, LedgerStatus
from subtracker.services.storage import DuplicateError, LedgerStorageInterface


logger = structlog.get_logger(__name__)


class IdempotencyLedger:

    def __init__(self, storage: LedgerStorageInterface):
        self._storage = storage

    async def try_claim(self, user_id: str, source_id: str) -> bool:
        """
        Record a pending claim.

        Returns:
            True if this call owns the item, False if it was already claimed
        """
        try:
            await self._storage.insert_claim(
                LedgerEntry(user_id=user_id, source_id=source_id)
            )
        except DuplicateError:
            logger.debug("ledger_claim_exists", user_id=user_id, source_id=source_id)
            return False
        return True

    async def mark_result(
        self,
        user_id: str,
        source_id: str,
        status: LedgerStatus,
        linked_subscription_id: Optional[UUID] = None,
    ) -> LedgerEntry:
        return await self._storage.update_entry(
            user_id, source_id, status, linked_subscription_id
        )

    async def get(self, user_id: str, source_id: str) -> Optional[LedgerEntry]:
        return await self._storage.get_entry(user_id, source_id)

    async def claimed_ids(self, user_id: str) -> set[str]:
        """
        Source ids a batch may skip without claiming.

        Failed claims are left out so the batch retries them.
        """
        entries = await self._storage.list_entries(user_id)
        return {e.source_id for e in entries if e.status != LedgerStatus.FAILED}

    async def entries(
        self,
        user_id: str,
        status: Optional[LedgerStatus] = None,
    ) -> list[LedgerEntry]:
        return await self._storage.list_entries(user_id, status)

    async def record(
        self,
        user_id: str,
        source_id: str,
        status: LedgerStatus,
        linked_subscription_id: Optional[UUID] = None,
    ) -> bool:
        """
        Claim and settle in one step, for items handled outside the
        event processor (rejected by the classifier, extraction failed).

        Returns:
            False if the item was already claimed
        """
        if not await self.try_claim(user_id, source_id):
            return False
        await self.mark_result(user_id, source_id, status, linked_subscription_id)
        return True

    async def get_checkpoint(self, user_id: str, stream: str) -> Optional[datetime]:
        """When the given stream ("email", "bank") was last scanned for the user."""
        return await self._storage.get_checkpoint(user_id, stream)

    async def set_checkpoint(self, user_id: str, stream: str, at: datetime) -> None:
        await self._storage.set_checkpoint(user_id, stream, at)
