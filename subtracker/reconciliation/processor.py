"""
Event Processor

The state machine applying one evidence item to the canonical
Subscription aggregate.

Persisted states are ACTIVE and CANCELLED. A subscription that was
never seen is modeled as absence.

    event          no subscription       active              cancelled
    ------------   -------------------   -----------------   ------------------
    start          create active         update              reactivate, update
    renewal        create active         update              reactivate, update
    cancellation   create cancelled      cancel              cancel (re-dated)
    change         create active         update plan/price   update plan/price

CRITICAL: evidence older than the last applied event is discarded
(staleness guard). A cancellation is ordered by its own effective date
instead, so a late-arriving cancellation email still lands, while a
cancellation the user has since resubscribed over does not.

Failure semantics: a storage error while applying marks the ledger
claim FAILED and re-raises, so a later pass may re-claim the item.
Evidence whose values cannot be stored on a Subscription is SKIPPED
and raised as ValidationError; retrying it would never succeed.
"""

import asyncio
import weakref
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog
from pydantic import ValidationError as PydanticValidationError

from subtracker.audit import AuditLogger
from subtracker.config import AppSettings, ReconciliationSettings, get_settings
from subtracker.errors import ValidationError
from subtracker.models.subscription import (
    ApplyAction,
    ApplyOutcome,
    BillingFrequency,
    CandidateEvidence,
    EventType,
    LedgerStatus,
    Subscription,
    SubscriptionConfidence,
    SubscriptionStatus,
)
from subtracker.reconciliation.identity import IdentityResolver
from subtracker.reconciliation.ledger import IdempotencyLedger
from subtracker.reconciliation.patterns import classify_interval
from subtracker.services.storage import StorageError, SubscriptionRepository


logger = structlog.get_logger(__name__)


class EventProcessor:
    """
    Applies evidence items, one at a time, at most once each.

    Items for the same (user, identity) are serialized with an
    asyncio.Lock, so concurrent manual and scheduled passes for one
    user cannot interleave between resolve and persist. A lock lives
    only while some pass holds or waits on it.
    """

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        ledger: IdempotencyLedger,
        resolver: IdentityResolver,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[ReconciliationSettings] = None,
        app_settings: Optional[AppSettings] = None,
    ):
        self._subscriptions = subscriptions
        self._ledger = ledger
        self._resolver = resolver
        self._audit_logger = audit_logger
        self._settings = settings or get_settings().reconciliation
        self._default_currency = (app_settings or get_settings().app).default_currency
        self._locks = weakref.WeakValueDictionary()

    def _lock_for(self, user_id: str, service_name: str) -> asyncio.Lock:
        key = (user_id, self._resolver.identity_key(service_name))
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def apply(
        self,
        user_id: str,
        evidence: CandidateEvidence,
        correlation_id: Optional[UUID] = None,
    ) -> Optional[Subscription]:
        """
        Apply one evidence item.

        Returns:
            The resulting subscription. For a duplicate, the subscription
            the first application linked to (None if it linked nothing).

        Raises:
            ValidationError: If service_name, event_type or source_id is missing,
                or a value cannot be stored on a Subscription
            StorageError: If the subscription could not be persisted
        """
        outcome = await self.apply_with_outcome(user_id, evidence, correlation_id)
        return outcome.subscription

    async def apply_with_outcome(
        self,
        user_id: str,
        evidence: CandidateEvidence,
        correlation_id: Optional[UUID] = None,
    ) -> ApplyOutcome:
        """Same as apply, also reporting what happened (for batch counts)."""
        missing = evidence.missing_fields()
        if missing:
            await self._skip(user_id, evidence, missing, correlation_id)
            raise ValidationError(evidence.source_id, missing)

        source_id = evidence.source_id
        if not await self._ledger.try_claim(user_id, source_id):
            return await self._duplicate(user_id, source_id, correlation_id)

        try:
            async with self._lock_for(user_id, evidence.service_name):
                outcome = await self._transition(user_id, evidence, correlation_id)
        except PydanticValidationError as e:
            detail = "; ".join(
                f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
                for err in e.errors()
            )
            await self._mark_invalid(user_id, source_id, detail, correlation_id)
            raise ValidationError(source_id, [], detail) from e
        except Exception as e:
            await self._mark_failed(user_id, source_id, e, correlation_id)
            raise

        # A claim left pending here is never re-applied
        await self._ledger.mark_result(
            user_id, source_id, LedgerStatus.PROCESSED, outcome.subscription.id
        )
        return outcome

    # =========================================================================
    # Ledger outcomes
    # =========================================================================

    async def _skip(
        self,
        user_id: str,
        evidence: CandidateEvidence,
        missing: list[str],
        correlation_id: Optional[UUID],
    ) -> None:
        if evidence.source_id and await self._ledger.try_claim(user_id, evidence.source_id):
            await self._ledger.mark_result(user_id, evidence.source_id, LedgerStatus.SKIPPED)
        if self._audit_logger:
            await self._audit_logger.log_evidence_skipped(
                user_id=user_id,
                source_id=evidence.source_id,
                reason=f"missing {', '.join(missing)}",
                correlation_id=correlation_id,
            )

    async def _mark_invalid(
        self,
        user_id: str,
        source_id: str,
        detail: str,
        correlation_id: Optional[UUID],
    ) -> None:
        await self._ledger.mark_result(user_id, source_id, LedgerStatus.SKIPPED)
        if self._audit_logger:
            await self._audit_logger.log_evidence_skipped(
                user_id=user_id,
                source_id=source_id,
                reason=f"invalid {detail}",
                correlation_id=correlation_id,
            )

    async def _duplicate(
        self,
        user_id: str,
        source_id: str,
        correlation_id: Optional[UUID],
    ) -> ApplyOutcome:
        entry = await self._ledger.get(user_id, source_id)
        linked = None
        if entry and entry.linked_subscription_id:
            linked = await self._subscriptions.get(user_id, entry.linked_subscription_id)
        if self._audit_logger:
            await self._audit_logger.log_evidence_duplicate(
                user_id=user_id,
                source_id=source_id,
                correlation_id=correlation_id,
            )
        return ApplyOutcome(action=ApplyAction.DUPLICATE, subscription=linked)

    async def _mark_failed(
        self,
        user_id: str,
        source_id: str,
        error: Exception,
        correlation_id: Optional[UUID],
    ) -> None:
        try:
            await self._ledger.mark_result(user_id, source_id, LedgerStatus.FAILED)
        except StorageError as mark_error:
            logger.error(
                "ledger_mark_failed_failed",
                user_id=user_id,
                source_id=source_id,
                error=str(mark_error),
            )
        if self._audit_logger:
            await self._audit_logger.log_evidence_failed(
                user_id=user_id,
                source_id=source_id,
                error_message=str(error),
                correlation_id=correlation_id,
            )

    # =========================================================================
    # Transitions
    # =========================================================================

    async def _transition(
        self,
        user_id: str,
        evidence: CandidateEvidence,
        correlation_id: Optional[UUID],
    ) -> ApplyOutcome:
        existing = await self._resolver.resolve(user_id, evidence.service_name)

        if existing is None:
            created = await self._subscriptions.create(self._new_subscription(user_id, evidence))
            await self._audit_applied(user_id, evidence, ApplyAction.CREATED, created, correlation_id)
            return ApplyOutcome(action=ApplyAction.CREATED, subscription=created)

        if self._is_stale(existing, evidence):
            if self._audit_logger:
                await self._audit_logger.log_evidence_stale(
                    user_id=user_id,
                    source_id=evidence.source_id,
                    event_type=evidence.event_type.value,
                    source_date=evidence.source_date,
                    last_applied_event_date=existing.last_applied_event_date,
                    correlation_id=correlation_id,
                )
            return ApplyOutcome(action=ApplyAction.STALE, subscription=existing)

        if evidence.event_type == EventType.CANCELLATION:
            action = ApplyAction.CANCELLED
            self._cancel(existing, evidence)
        elif evidence.event_type == EventType.CHANGE:
            action = ApplyAction.UPDATED
            self._change(existing, evidence)
        else:
            action = (
                ApplyAction.REACTIVATED
                if existing.status == SubscriptionStatus.CANCELLED
                else ApplyAction.UPDATED
            )
            self._renew(existing, evidence)

        self._stamp(existing, evidence)
        updated = await self._subscriptions.update(existing)
        await self._audit_applied(user_id, evidence, action, updated, correlation_id)
        return ApplyOutcome(action=action, subscription=updated)

    def _is_stale(self, existing: Subscription, evidence: CandidateEvidence) -> bool:
        last = existing.last_applied_event_date
        if last is None:
            return False
        if evidence.event_type == EventType.CANCELLATION:
            # Date granularity: a cancellation effective the same day still applies
            if evidence.cancellation_date is not None:
                return evidence.cancellation_date < last.date()
            return evidence.source_date < last
        return evidence.source_date < last

    def _new_subscription(self, user_id: str, evidence: CandidateEvidence) -> Subscription:
        cancelled = evidence.event_type == EventType.CANCELLATION
        effective = evidence.effective_cancellation_date if cancelled else None
        now = datetime.utcnow()
        return Subscription(
            user_id=user_id,
            company_name=evidence.service_name,
            price=evidence.amount if evidence.amount is not None else Decimal("0"),
            currency=evidence.currency or self._default_currency,
            start_date=evidence.start_date or evidence.source_date.date(),
            next_renewal_date=None if cancelled else evidence.next_billing_date,
            cancellation_date=effective,
            access_end_date=effective,
            status=SubscriptionStatus.CANCELLED if cancelled else SubscriptionStatus.ACTIVE,
            confidence=evidence.confidence,
            source=evidence.source,
            frequency=evidence.frequency or BillingFrequency.UNKNOWN,
            plan_name=evidence.plan_name,
            last_applied_event_id=evidence.source_id,
            last_applied_event_date=evidence.source_date,
            created_at=now,
            updated_at=now,
        )

    def _update_charge(self, sub: Subscription, evidence: CandidateEvidence) -> None:
        if evidence.amount is not None:
            sub.price = evidence.amount
        if evidence.currency:
            sub.currency = evidence.currency
        if evidence.next_billing_date:
            sub.next_renewal_date = evidence.next_billing_date

    def _renew(self, sub: Subscription, evidence: CandidateEvidence) -> None:
        """start and renewal: a charge is proof of current activity."""
        previous_event = sub.last_applied_event_date
        self._update_charge(sub, evidence)
        if evidence.event_type == EventType.START:
            sub.plan_name = evidence.plan_name
        else:
            sub.plan_name = evidence.plan_name or sub.plan_name

        if sub.status == SubscriptionStatus.CANCELLED:
            sub.status = SubscriptionStatus.ACTIVE
            sub.cancellation_date = None
            sub.access_end_date = None

        if evidence.frequency:
            sub.frequency = evidence.frequency
        elif evidence.event_type == EventType.RENEWAL and previous_event:
            gap = (evidence.source_date.date() - previous_event.date()).days
            inferred = classify_interval(gap, self._settings)
            if inferred != BillingFrequency.UNKNOWN:
                sub.frequency = inferred

        if sub.confidence != SubscriptionConfidence.USER_CONFIRMED:
            sub.confidence = evidence.confidence

    def _change(self, sub: Subscription, evidence: CandidateEvidence) -> None:
        """Plan and price only; status is untouched."""
        self._update_charge(sub, evidence)
        sub.plan_name = evidence.plan_name or sub.plan_name
        if evidence.frequency:
            sub.frequency = evidence.frequency

    def _cancel(self, sub: Subscription, evidence: CandidateEvidence) -> None:
        effective = evidence.effective_cancellation_date
        sub.status = SubscriptionStatus.CANCELLED
        sub.cancellation_date = effective
        sub.access_end_date = effective

    def _stamp(self, sub: Subscription, evidence: CandidateEvidence) -> None:
        sub.last_applied_event_id = evidence.source_id
        if sub.last_applied_event_date is None or evidence.source_date > sub.last_applied_event_date:
            sub.last_applied_event_date = evidence.source_date
        sub.updated_at = datetime.utcnow()

    async def _audit_applied(
        self,
        user_id: str,
        evidence: CandidateEvidence,
        action: ApplyAction,
        subscription: Subscription,
        correlation_id: Optional[UUID],
    ) -> None:
        if not self._audit_logger:
            return
        await self._audit_logger.log_evidence_applied(
            user_id=user_id,
            source_id=evidence.source_id,
            event_type=evidence.event_type.value,
            action=action.value,
            subscription_id=subscription.id,
            company_name=subscription.company_name,
            status=subscription.status.value,
            correlation_id=correlation_id,
        )
