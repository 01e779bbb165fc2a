"""
Main Orchestrator for the Subscription Tracker

This module ties together all the components and defines the
end-to-end flows for:
1. Evidence (email event → validate → claim → apply)
2. Bank transactions (transaction → pattern + email match → confidence → maybe apply)
3. Statement uploads (document → text → recurring charges → apply)
4. Renewal alerts (projected renewals → notify)

DESIGN DECISION: The orchestrator enforces the boundaries:
- Only confirmed evidence reaches the event processor automatically
- Potential subscriptions wait for the user
- Every evidence item is applied at most once
- Every step is audited

Batch flows are per user. A failing item is recorded in the ledger and
counted; only an unreachable store or a terminal credential failure
ends a user's pass early.
"""

import asyncio
import hashlib
from datetime import date, datetime, time, timedelta
from typing import Any, Awaitable, Callable, Iterable, NamedTuple, Optional, TypeVar
from uuid import UUID

import structlog

from subtracker.agents import EvidenceExtractionAgent
from subtracker.audit import AuditLogger, create_correlation_id
from subtracker.config import AppSettings, ReconciliationSettings, get_settings
from subtracker.errors import (
    AuthExpiredError,
    ExternalServiceError,
    PotentialNotFoundError,
    SubscriptionNotFoundError,
    SubscriptionTrackerError,
    ValidationError,
)
from subtracker.models.sources import BankTransaction, EmailMessage, EmailQuery, StatementCharge
from subtracker.models.subscription import (
    ApplyAction,
    ApplyOutcome,
    BatchSummary,
    BillingFrequency,
    CandidateEvidence,
    EmailOnlySubscription,
    EventType,
    LedgerStatus,
    PotentialConfidence,
    PotentialReason,
    PotentialSubscription,
    Subscription,
    SubscriptionConfidence,
    SubscriptionSource,
    SubscriptionStatus,
    UserAction,
    UserActionType,
)
from subtracker.reconciliation import (
    CrossSourceMatcher,
    EventProcessor,
    IdempotencyLedger,
    IdentityMatcher,
    IdentityResolver,
    RecurringPatternDetector,
    RenewalDateProjector,
    classify,
    email_source_id,
    within_tolerance,
)
from subtracker.reconciliation.projector import period
from subtracker.services.sources import (
    BankSource,
    CredentialProvider,
    EmailSource,
    EvidenceClassifier,
    NotificationSender,
    StatementExtractor,
    call_with_timeout,
)
from subtracker.services.storage import (
    ConnectionError,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsLedgerStorage,
    GoogleSheetsPotentialSubscriptionRepository,
    GoogleSheetsSubscriptionRepository,
    InMemoryLedgerStorage,
    InMemoryPotentialSubscriptionRepository,
    InMemorySubscriptionRepository,
    LedgerStorageInterface,
    PotentialSubscriptionRepository,
    StorageError,
    SubscriptionRepository,
)


logger = structlog.get_logger(__name__)

T = TypeVar("T")


def transaction_source_id(transaction_id: str) -> str:
    return f"txn:{transaction_id}"


def statement_source_id(statement_id: str, index: int) -> str:
    return f"statement:{statement_id}:{index}"


class SubscriptionTracker:
    """
    Public facade of the reconciliation engine.

    Reads pass through the renewal date projector; writes go through
    the event processor so that every change is claimed in the ledger.
    """

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        potentials: PotentialSubscriptionRepository,
        ledger_storage: LedgerStorageInterface,
        email_source: Optional[EmailSource] = None,
        audit_logger: Optional[AuditLogger] = None,
        identity_matcher: Optional[IdentityMatcher] = None,
        settings: Optional[ReconciliationSettings] = None,
        app_settings: Optional[AppSettings] = None,
    ):
        self._settings = settings or get_settings().reconciliation
        self._subscriptions = subscriptions
        self._potentials = potentials
        self._audit_logger = audit_logger

        self._ledger = IdempotencyLedger(ledger_storage)
        self._resolver = IdentityResolver(subscriptions, identity_matcher)
        self._processor = EventProcessor(
            subscriptions,
            self._ledger,
            self._resolver,
            audit_logger=audit_logger,
            settings=self._settings,
            app_settings=app_settings,
        )
        self._detector = RecurringPatternDetector(potentials, subscriptions, self._settings)
        self._matcher = CrossSourceMatcher(email_source, self._ledger, self._settings)
        self._projector = RenewalDateProjector(self._settings)

    @property
    def settings(self) -> ReconciliationSettings:
        return self._settings

    @property
    def ledger(self) -> IdempotencyLedger:
        return self._ledger

    @property
    def processor(self) -> EventProcessor:
        return self._processor

    @property
    def subscriptions(self) -> SubscriptionRepository:
        return self._subscriptions

    # =========================================================================
    # Evidence
    # =========================================================================

    async def apply_evidence(
        self,
        user_id: str,
        evidence: CandidateEvidence,
        correlation_id: Optional[UUID] = None,
    ) -> Optional[Subscription]:
        """
        Apply one confirmed evidence item.

        Raises:
            ValidationError: If service_name, event_type or source_id is missing
        """
        return await self._processor.apply(
            user_id, evidence, correlation_id or create_correlation_id()
        )

    async def analyze_transaction(
        self,
        user_id: str,
        transaction: BankTransaction,
        credentials: Any = None,
        correlation_id: Optional[UUID] = None,
    ) -> PotentialSubscription:
        """
        Classify a bank transaction and record it as a potential subscription.

        A confirmed transaction is applied as a start event unless a
        subscription with the same identity and a similar price exists.

        Args:
            credentials: Email credentials for corroboration, None to skip it

        Raises:
            AuthExpiredError: If the email credentials were rejected
        """
        potential, _ = await self.analyze_transaction_with_outcome(
            user_id, transaction, credentials, correlation_id
        )
        return potential

    async def analyze_transaction_with_outcome(
        self,
        user_id: str,
        transaction: BankTransaction,
        credentials: Any = None,
        correlation_id: Optional[UUID] = None,
    ) -> tuple[PotentialSubscription, Optional[ApplyOutcome]]:
        """Same as analyze_transaction, also reporting the auto-applied outcome."""
        correlation_id = correlation_id or create_correlation_id()

        existing = await self._potentials.get_by_transaction(user_id, transaction.transaction_id)
        if existing and existing.user_action.action == UserActionType.REJECTED:
            # The user's rejection sticks across re-syncs
            return existing, None

        pattern = await self._detector.detect(
            user_id,
            self._resolver.identity_key(transaction.merchant_name),
            transaction.amount,
            transaction.date,
            exclude_transaction_id=transaction.transaction_id,
        )
        email_match = await self._matcher.match(
            user_id,
            transaction.merchant_name,
            transaction.amount,
            transaction.date,
            credentials,
        )
        result = classify(email_match, pattern)
        confirmed = result.confidence == PotentialConfidence.CONFIRMED

        if existing:
            user_action = existing.user_action
        elif confirmed:
            user_action = UserAction(action=UserActionType.CONFIRMED, action_date=datetime.utcnow())
        else:
            user_action = UserAction()

        potential = await self._potentials.upsert(PotentialSubscription(
            user_id=user_id,
            merchant_name=transaction.merchant_name,
            amount=transaction.amount,
            currency=transaction.currency,
            transaction_date=transaction.date,
            transaction_id=transaction.transaction_id,
            account_id=transaction.account_id,
            confidence=result.confidence,
            reason=result.reason,
            recurring_pattern=pattern,
            matched_email_id=email_match.email_id,
            matched_email_date=email_match.email_date,
            user_action=user_action,
            subscription_id=existing.subscription_id if existing else None,
        ))

        if self._audit_logger:
            await self._audit_logger.log_transaction_analyzed(
                user_id=user_id,
                transaction_id=transaction.transaction_id,
                merchant_name=transaction.merchant_name,
                confidence=result.confidence.value,
                reason=result.reason.value,
                correlation_id=correlation_id,
            )

        if not confirmed:
            return potential, None

        outcome = None
        linked = await self._resolver.resolve(user_id, transaction.merchant_name)
        if linked is None or not within_tolerance(
            linked.price, transaction.amount, self._settings.amount_tolerance
        ):
            source = (
                SubscriptionSource.TRANSACTION_EMAIL
                if result.reason == PotentialReason.TRANSACTION_EMAIL_MATCH
                else SubscriptionSource.TRANSACTION
            )
            outcome = await self._processor.apply_with_outcome(
                user_id,
                self._transaction_evidence(potential, source, SubscriptionConfidence.CONFIRMED),
                correlation_id,
            )
            linked = outcome.subscription

        if linked is not None and potential.subscription_id != linked.id:
            potential.subscription_id = linked.id
            potential.updated_at = datetime.utcnow()
            potential = await self._potentials.update(potential)

        return potential, outcome

    def _transaction_evidence(
        self,
        potential: PotentialSubscription,
        source: SubscriptionSource,
        confidence: SubscriptionConfidence,
    ) -> CandidateEvidence:
        pattern = potential.recurring_pattern
        next_billing = None
        if pattern.detected and pattern.frequency == BillingFrequency.MONTHLY:
            next_billing = potential.transaction_date + timedelta(
                days=self._settings.auto_next_billing_days
            )
        frequency = None
        if pattern.detected and pattern.frequency != BillingFrequency.UNKNOWN:
            frequency = pattern.frequency

        return CandidateEvidence(
            event_type=EventType.START,
            service_name=potential.merchant_name,
            amount=potential.amount,
            currency=potential.currency,
            start_date=potential.transaction_date,
            next_billing_date=next_billing,
            source_id=transaction_source_id(potential.transaction_id),
            source_date=potential.transaction_date,
            source=source,
            confidence=confidence,
            frequency=frequency,
        )

    # =========================================================================
    # Reads
    # =========================================================================

    async def list_subscriptions(
        self,
        user_id: str,
        status: Optional[SubscriptionStatus] = None,
        now: Optional[datetime] = None,
    ) -> list[Subscription]:
        """Subscriptions with renewal dates projected to now. Nothing is written."""
        subscriptions = await self._subscriptions.list_for_user(user_id, status)
        return [self._projector.project(sub, now) for sub in subscriptions]

    async def list_pending_potentials(self, user_id: str) -> list[PotentialSubscription]:
        """Potential subscriptions awaiting a user decision, newest first."""
        potentials = await self._potentials.list_for_user(user_id)
        pending = [p for p in potentials if p.user_action.action == UserActionType.PENDING]
        return sorted(pending, key=lambda p: p.transaction_date, reverse=True)

    # =========================================================================
    # User decisions
    # =========================================================================

    async def _get_potential(self, user_id: str, potential_id: UUID) -> PotentialSubscription:
        potential = await self._potentials.get(user_id, potential_id)
        if potential is None:
            raise PotentialNotFoundError(f"Potential subscription {potential_id} not found")
        return potential

    async def confirm_potential(
        self,
        user_id: str,
        potential_id: UUID,
        reason: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Subscription:
        """
        Promote a potential subscription.

        Args:
            reason: "transaction_late" means the email simply never came;
                the result is then labeled confirmed instead of user_confirmed.

        Raises:
            PotentialNotFoundError: If the potential doesn't belong to the user
        """
        correlation_id = correlation_id or create_correlation_id()
        potential = await self._get_potential(user_id, potential_id)

        confidence = (
            SubscriptionConfidence.CONFIRMED
            if reason == "transaction_late"
            else SubscriptionConfidence.USER_CONFIRMED
        )
        outcome = await self._processor.apply_with_outcome(
            user_id,
            self._transaction_evidence(potential, SubscriptionSource.TRANSACTION, confidence),
            correlation_id,
        )
        subscription = outcome.subscription
        if subscription is None:
            subscription = await self._resolver.resolve(user_id, potential.merchant_name)
            if subscription is None:
                raise SubscriptionNotFoundError(
                    f"No subscription for potential {potential_id}"
                )

        if outcome.action == ApplyAction.DUPLICATE:
            # Already auto-applied; the user's decision still relabels it
            subscription.confidence = confidence
            subscription.source = SubscriptionSource.TRANSACTION
            subscription.updated_at = datetime.utcnow()
            subscription = await self._subscriptions.update(subscription)

        now = datetime.utcnow()
        potential.confidence = PotentialConfidence.CONFIRMED
        potential.user_action = UserAction(
            action=UserActionType.CONFIRMED,
            action_date=now,
            reason=reason or "user_confirmed",
        )
        potential.subscription_id = subscription.id
        potential.updated_at = now
        await self._potentials.update(potential)

        if self._audit_logger:
            await self._audit_logger.log_potential_decided(
                user_id=user_id,
                potential_id=potential.id,
                confirmed=True,
                reason=reason,
                correlation_id=correlation_id,
            )

        return subscription

    async def reject_potential(
        self,
        user_id: str,
        potential_id: UUID,
        reason: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """
        Raises:
            PotentialNotFoundError: If the potential doesn't belong to the user
        """
        potential = await self._get_potential(user_id, potential_id)

        now = datetime.utcnow()
        potential.confidence = PotentialConfidence.REJECTED
        potential.user_action = UserAction(
            action=UserActionType.REJECTED,
            action_date=now,
            reason=reason or "user_rejected",
        )
        potential.updated_at = now
        await self._potentials.update(potential)

        if self._audit_logger:
            await self._audit_logger.log_potential_decided(
                user_id=user_id,
                potential_id=potential.id,
                confirmed=False,
                reason=reason,
                correlation_id=correlation_id,
            )

    async def find_email_only_subscriptions(self, user_id: str) -> list[EmailOnlySubscription]:
        """
        Subscriptions created from email that no bank transaction backs up.

        One entry per subscription. Subscriptions the user already
        confirmed are left out.
        """
        entries = await self._ledger.entries(user_id, LedgerStatus.PROCESSED)
        found: list[EmailOnlySubscription] = []
        seen: set[UUID] = set()

        for entry in entries:
            if not entry.source_id.startswith("email:") or entry.linked_subscription_id is None:
                continue
            if entry.linked_subscription_id in seen:
                continue
            subscription = await self._subscriptions.get(user_id, entry.linked_subscription_id)
            if subscription is None:
                continue
            seen.add(subscription.id)
            if subscription.confidence == SubscriptionConfidence.USER_CONFIRMED:
                continue

            backing = await self._potentials.find_by_merchant(
                user_id,
                self._resolver.identity_key(subscription.company_name),
                date.min,
                (PotentialConfidence.CONFIRMED, PotentialConfidence.POTENTIAL),
            )
            if any(
                within_tolerance(p.amount, subscription.price, self._settings.amount_tolerance)
                for p in backing
            ):
                continue

            found.append(EmailOnlySubscription(
                email_id=entry.source_id.split(":", 1)[1],
                subscription=subscription,
            ))

        return found

    async def confirm_email_subscription(
        self,
        user_id: str,
        subscription_id: UUID,
        reason: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Subscription:
        """
        Mark an email-only subscription as confirmed by the user.

        Raises:
            SubscriptionNotFoundError: If the subscription doesn't belong to the user
        """
        subscription = await self._subscriptions.get(user_id, subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")

        subscription.confidence = SubscriptionConfidence.USER_CONFIRMED
        subscription.updated_at = datetime.utcnow()
        subscription = await self._subscriptions.update(subscription)

        logger.info(
            "email_subscription_confirmed",
            user_id=user_id,
            subscription_id=str(subscription_id),
            reason=reason,
        )
        if self._audit_logger:
            email_id = ""
            for entry in await self._ledger.entries(user_id, LedgerStatus.PROCESSED):
                if entry.linked_subscription_id == subscription_id and entry.source_id.startswith("email:"):
                    email_id = entry.source_id.split(":", 1)[1]
                    break
            await self._audit_logger.log_email_subscription_confirmed(
                user_id=user_id,
                email_id=email_id,
                subscription_id=subscription_id,
                correlation_id=correlation_id,
            )

        return subscription

    # =========================================================================
    # Statements and alerts
    # =========================================================================

    async def add_statement_charge(
        self,
        user_id: str,
        charge: StatementCharge,
        statement_id: str,
        index: int,
        correlation_id: Optional[UUID] = None,
    ) -> Optional[Subscription]:
        """
        Track a recurring charge found in an uploaded statement.

        A charge whose identity is already tracked returns that
        subscription unchanged.
        """
        outcome = await self.add_statement_charge_with_outcome(
            user_id, charge, statement_id, index, correlation_id
        )
        return outcome.subscription

    async def add_statement_charge_with_outcome(
        self,
        user_id: str,
        charge: StatementCharge,
        statement_id: str,
        index: int,
        correlation_id: Optional[UUID] = None,
    ) -> ApplyOutcome:
        """Same as add_statement_charge. An already tracked identity reports DUPLICATE."""
        existing = await self._resolver.resolve(user_id, charge.merchant_name)
        if existing is not None:
            return ApplyOutcome(action=ApplyAction.DUPLICATE, subscription=existing)

        last_seen = charge.last_seen
        next_billing = last_seen + period(charge.frequency) if last_seen else None
        evidence = CandidateEvidence(
            event_type=EventType.START,
            service_name=charge.merchant_name,
            amount=charge.amount,
            currency=charge.currency,
            start_date=charge.first_seen,
            next_billing_date=next_billing,
            source_id=statement_source_id(statement_id, index),
            source_date=datetime.combine(last_seen, time()) if last_seen else datetime.utcnow(),
            source=SubscriptionSource.DOCUMENT,
            confidence=SubscriptionConfidence.USER_CONFIRMED,
            frequency=None if charge.frequency == BillingFrequency.UNKNOWN else charge.frequency,
        )
        return await self._processor.apply_with_outcome(
            user_id, evidence, correlation_id or create_correlation_id()
        )

    async def mark_renewal_alert_sent(
        self,
        user_id: str,
        subscription_id: UUID,
        at: datetime,
    ) -> Subscription:
        """Stamp the stored record, not a projected copy."""
        subscription = await self._subscriptions.get(user_id, subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
        subscription.renewal_alert_sent_at = at
        subscription.updated_at = datetime.utcnow()
        return await self._subscriptions.update(subscription)


# =============================================================================
# BATCH FLOWS
# =============================================================================

async def fetch_with_refresh(
    credentials: CredentialProvider,
    user_id: str,
    service: str,
    fetch: Callable[[Any], Awaitable[T]],
    audit_logger: Optional[AuditLogger] = None,
    correlation_id: Optional[UUID] = None,
) -> tuple[T, Any]:
    """
    Run fetch with the user's credentials, refreshing them once if
    they are rejected.

    Returns:
        (result, the credentials that worked)

    Raises:
        AuthExpiredError: If the refresh fails or the fresh credentials
            are rejected too
    """
    current = await credentials.get(user_id, service)
    try:
        return await fetch(current), current
    except AuthExpiredError:
        logger.info("credentials_rejected_refreshing", user_id=user_id, service=service)

    current = await credentials.refresh(user_id, service)
    result = await fetch(current)
    if audit_logger:
        await audit_logger.log_auth(
            user_id=user_id,
            service=service,
            refreshed=True,
            correlation_id=correlation_id,
        )
    return result, current


class BatchFlow:
    """Shared plumbing for per-user batch passes."""

    batch_name = "batch"

    def __init__(
        self,
        tracker: SubscriptionTracker,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._tracker = tracker
        self._audit_logger = audit_logger
        self._settings = tracker.settings

    async def _started(self, user_id: str, item_count: int, correlation_id: UUID) -> None:
        logger.info(f"{self.batch_name}_started", user_id=user_id, item_count=item_count)
        if self._audit_logger:
            await self._audit_logger.log_batch_started(
                user_id=user_id,
                batch=self.batch_name,
                item_count=item_count,
                correlation_id=correlation_id,
            )

    async def _completed(self, summary: BatchSummary, correlation_id: UUID) -> BatchSummary:
        logger.info(f"{self.batch_name}_completed", **summary.model_dump())
        if self._audit_logger:
            await self._audit_logger.log_batch_completed(
                user_id=summary.user_id,
                batch=self.batch_name,
                summary=summary.model_dump(mode="json"),
                correlation_id=correlation_id,
            )
        return summary

    async def _terminal(
        self,
        summary: BatchSummary,
        error: SubscriptionTrackerError,
        correlation_id: UUID,
    ) -> BatchSummary:
        """End a user's pass with an error recorded in the summary."""
        summary.error = str(error)
        if self._audit_logger:
            if isinstance(error, AuthExpiredError):
                await self._audit_logger.log_auth(
                    user_id=summary.user_id,
                    service=error.service,
                    refreshed=False,
                    correlation_id=correlation_id,
                )
            elif isinstance(error, ExternalServiceError):
                await self._audit_logger.log_external_service_error(
                    service=error.service,
                    error_message=str(error),
                    user_id=summary.user_id,
                    correlation_id=correlation_id,
                )
        return await self._completed(summary, correlation_id)


class EmailScanFlow(BatchFlow):
    """
    Scans a user's mailbox for subscription emails.

    Flow:
    1. Fetch emails since the last scan (or the initial window)
    2. Drop emails already in the ledger
    3. Classify → extract → apply, oldest first
    4. Move the scan checkpoint forward

    IMPORTANT: an email the classifier rejects is still recorded
    (skipped) so it is never sent to the model again.
    """

    batch_name = "email_scan"
    stream = "email"

    def __init__(
        self,
        tracker: SubscriptionTracker,
        email_source: EmailSource,
        credentials: CredentialProvider,
        classifier: Optional[EvidenceClassifier] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        super().__init__(tracker, audit_logger)
        self._email_source = email_source
        self._credentials = credentials
        self._classifier = classifier or EvidenceExtractionAgent()

    def _query(self, last_scan: Optional[datetime]) -> EmailQuery:
        if last_scan is not None:
            return EmailQuery(after=last_scan.date(), max_results=self._settings.max_emails_per_scan)
        return EmailQuery(
            newer_than_days=self._settings.initial_scan_days,
            max_results=self._settings.max_emails_per_scan,
        )

    async def process_user(
        self,
        user_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> BatchSummary:
        """
        Raises:
            ConnectionError: If the store cannot be reached
        """
        correlation_id = correlation_id or create_correlation_id()
        summary = BatchSummary(user_id=user_id)
        started_at = datetime.utcnow()
        ledger = self._tracker.ledger

        query = self._query(await ledger.get_checkpoint(user_id, self.stream))
        try:
            emails, _ = await fetch_with_refresh(
                self._credentials,
                user_id,
                "email",
                lambda creds: call_with_timeout(
                    self._email_source.fetch(creds, query),
                    self._settings.io_timeout_seconds,
                    "email",
                ),
                self._audit_logger,
                correlation_id,
            )
        except (AuthExpiredError, ExternalServiceError) as e:
            return await self._terminal(summary, e, correlation_id)

        summary.total = len(emails)
        await self._started(user_id, len(emails), correlation_id)

        claimed = await ledger.claimed_ids(user_id)
        for email in sorted(emails, key=lambda e: e.date):
            source_id = email_source_id(email.id)
            if source_id in claimed:
                summary.already_processed += 1
                continue

            try:
                await self._process_email(user_id, email, summary, correlation_id)
            except ValidationError:
                summary.skipped += 1
            except ExternalServiceError as e:
                summary.failed += 1
                logger.warning("email_item_failed", user_id=user_id, email_id=email.id, error=str(e))
                await ledger.record(user_id, source_id, LedgerStatus.FAILED)
                if self._audit_logger:
                    await self._audit_logger.log_evidence_failed(
                        user_id=user_id,
                        source_id=source_id,
                        error_message=str(e),
                        correlation_id=correlation_id,
                    )
            except ConnectionError:
                raise
            except StorageError as e:
                # The processor already marked the claim failed
                summary.failed += 1
                logger.error("email_item_storage_failed", user_id=user_id, email_id=email.id, error=str(e))

        await ledger.set_checkpoint(user_id, self.stream, started_at)
        return await self._completed(summary, correlation_id)

    async def _process_email(
        self,
        user_id: str,
        email: EmailMessage,
        summary: BatchSummary,
        correlation_id: UUID,
    ) -> None:
        source_id = email_source_id(email.id)
        text = f"Subject: {email.subject}\nFrom: {email.sender}\n\n{email.text}"
        timeout = self._settings.io_timeout_seconds

        if not await call_with_timeout(self._classifier.classify(text), timeout, "gemini"):
            await self._skip(user_id, source_id, "not a subscription email", summary, correlation_id)
            return

        evidence = await call_with_timeout(self._classifier.extract(text), timeout, "gemini")
        if evidence is None:
            await self._skip(user_id, source_id, "nothing extracted", summary, correlation_id)
            return

        evidence = evidence.model_copy(update={
            "source_id": source_id,
            "source_date": email.date,
            "source": SubscriptionSource.EMAIL,
        })
        outcome = await self._tracker.processor.apply_with_outcome(user_id, evidence, correlation_id)
        summary.record(outcome)

    async def _skip(
        self,
        user_id: str,
        source_id: str,
        reason: str,
        summary: BatchSummary,
        correlation_id: UUID,
    ) -> None:
        summary.skipped += 1
        await self._tracker.ledger.record(user_id, source_id, LedgerStatus.SKIPPED)
        if self._audit_logger:
            await self._audit_logger.log_evidence_skipped(
                user_id=user_id,
                source_id=source_id,
                reason=reason,
                correlation_id=correlation_id,
            )


class BankSyncFlow(BatchFlow):
    """
    Pulls recent bank transactions and analyzes each one.

    Email credentials are optional: without them transactions are
    judged on recurrence alone.
    """

    batch_name = "bank_sync"
    stream = "bank"

    def __init__(
        self,
        tracker: SubscriptionTracker,
        bank_source: BankSource,
        credentials: CredentialProvider,
        audit_logger: Optional[AuditLogger] = None,
    ):
        super().__init__(tracker, audit_logger)
        self._bank_source = bank_source
        self._credentials = credentials

    async def _email_credentials(self, user_id: str) -> Any:
        try:
            return await self._credentials.get(user_id, "email")
        except AuthExpiredError:
            logger.info("email_credentials_unavailable", user_id=user_id)
            return None

    async def process_user(
        self,
        user_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> BatchSummary:
        """
        Raises:
            ConnectionError: If the store cannot be reached
        """
        correlation_id = correlation_id or create_correlation_id()
        summary = BatchSummary(user_id=user_id)
        started_at = datetime.utcnow()
        since = (started_at - timedelta(days=self._settings.bank_sync_days)).date()

        try:
            transactions, _ = await fetch_with_refresh(
                self._credentials,
                user_id,
                "bank",
                lambda creds: call_with_timeout(
                    self._bank_source.fetch_all(creds, since),
                    self._settings.io_timeout_seconds,
                    "bank",
                ),
                self._audit_logger,
                correlation_id,
            )
        except (AuthExpiredError, ExternalServiceError) as e:
            return await self._terminal(summary, e, correlation_id)

        summary.total = len(transactions)
        await self._started(user_id, len(transactions), correlation_id)

        email_credentials = await self._email_credentials(user_id)
        email_refreshed = False

        for transaction in sorted(transactions, key=lambda t: t.date):
            try:
                try:
                    potential, outcome = await self._tracker.analyze_transaction_with_outcome(
                        user_id, transaction, email_credentials, correlation_id
                    )
                except AuthExpiredError:
                    if email_refreshed:
                        raise
                    email_refreshed = True
                    email_credentials = await self._credentials.refresh(user_id, "email")
                    if self._audit_logger:
                        await self._audit_logger.log_auth(
                            user_id=user_id,
                            service="email",
                            refreshed=True,
                            correlation_id=correlation_id,
                        )
                    potential, outcome = await self._tracker.analyze_transaction_with_outcome(
                        user_id, transaction, email_credentials, correlation_id
                    )
            except AuthExpiredError as e:
                return await self._terminal(summary, e, correlation_id)
            except ConnectionError:
                raise
            except (SubscriptionTrackerError, StorageError) as e:
                summary.failed += 1
                logger.warning(
                    "transaction_item_failed",
                    user_id=user_id,
                    transaction_id=transaction.transaction_id,
                    error=str(e),
                )
                continue

            if outcome is not None:
                summary.record(outcome)
            elif potential.confidence == PotentialConfidence.POTENTIAL:
                summary.potential += 1

        await self._tracker.ledger.set_checkpoint(user_id, self.stream, started_at)
        return await self._completed(summary, correlation_id)


class StatementUploadFlow(BatchFlow):
    """
    Turns an uploaded statement into tracked subscriptions.

    Flow:
    1. Extract → plain text
    2. Analyze → recurring charges, merged with this user's earlier findings
    3. Add each charge not already tracked

    DESIGN DECISION: the statement id defaults to a hash of the
    document, so re-uploading the same file is a no-op.
    """

    batch_name = "statement_upload"

    def __init__(
        self,
        tracker: SubscriptionTracker,
        extractor: StatementExtractor,
        classifier: Optional[EvidenceClassifier] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        super().__init__(tracker, audit_logger)
        self._extractor = extractor
        self._classifier = classifier or EvidenceExtractionAgent()
        self._previous: dict[str, list[StatementCharge]] = {}

    async def process_document(
        self,
        user_id: str,
        document: bytes,
        statement_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> BatchSummary:
        correlation_id = correlation_id or create_correlation_id()
        statement_id = statement_id or hashlib.sha256(document).hexdigest()[:16]
        summary = BatchSummary(user_id=user_id)
        timeout = self._settings.io_timeout_seconds

        try:
            text = await call_with_timeout(self._extractor.extract(document), timeout, "statement")
            if len(text.strip()) < self._settings.min_statement_chars:
                raise ExternalServiceError("statement", "no readable text in document")
            charges = await call_with_timeout(
                self._classifier.analyze_statement(text, self._previous.get(user_id)),
                timeout,
                "gemini",
            )
        except ExternalServiceError as e:
            return await self._terminal(summary, e, correlation_id)

        self._previous[user_id] = charges
        summary.total = len(charges)
        await self._started(user_id, len(charges), correlation_id)

        for index, charge in enumerate(charges):
            try:
                outcome = await self._tracker.add_statement_charge_with_outcome(
                    user_id, charge, statement_id, index, correlation_id
                )
            except ValidationError:
                summary.skipped += 1
                continue
            except ConnectionError:
                raise
            except StorageError as e:
                summary.failed += 1
                logger.error(
                    "statement_charge_failed",
                    user_id=user_id,
                    merchant_name=charge.merchant_name,
                    error=str(e),
                )
                continue
            summary.record(outcome)

        if self._audit_logger:
            await self._audit_logger.log_statement_analyzed(
                user_id=user_id,
                statement_id=statement_id,
                charge_count=len(charges),
                correlation_id=correlation_id,
            )
        return await self._completed(summary, correlation_id)


def build_alert_message(subscriptions: list[Subscription], today: date) -> str:
    if len(subscriptions) == 1:
        title = f"Renewal Alert: {subscriptions[0].company_name} renews soon"
    else:
        title = f"Renewal Alert: {len(subscriptions)} subscriptions renewing soon"

    lines = [title, ""]
    for sub in sorted(subscriptions, key=lambda s: s.next_renewal_date):
        days = (sub.next_renewal_date - today).days
        when = "today" if days == 0 else "tomorrow" if days == 1 else f"in {days} days"
        plan = f" ({sub.plan_name})" if sub.plan_name else ""
        lines.append(f"- {sub.company_name}{plan}: {sub.price:.2f} {sub.currency}, renews {when}")
    return "\n".join(lines)


class RenewalAlertFlow(BatchFlow):
    """
    Notifies users about subscriptions renewing within alert_days.

    A subscription is alerted at most once per alert window.
    """

    batch_name = "renewal_alert"

    def __init__(
        self,
        tracker: SubscriptionTracker,
        notifier: NotificationSender,
        audit_logger: Optional[AuditLogger] = None,
    ):
        super().__init__(tracker, audit_logger)
        self._notifier = notifier

    async def due_for_alert(self, user_id: str, now: datetime) -> list[Subscription]:
        today = now.date()
        window = timedelta(days=self._settings.alert_days)
        subscriptions = await self._tracker.list_subscriptions(
            user_id, SubscriptionStatus.ACTIVE, now
        )
        return [
            sub for sub in subscriptions
            if sub.next_renewal_date is not None
            and today <= sub.next_renewal_date <= today + window
            and (sub.renewal_alert_sent_at is None or sub.renewal_alert_sent_at < now - window)
        ]

    async def process_user(
        self,
        user_id: str,
        now: Optional[datetime] = None,
        correlation_id: Optional[UUID] = None,
    ) -> BatchSummary:
        correlation_id = correlation_id or create_correlation_id()
        now = now or datetime.utcnow()
        summary = BatchSummary(user_id=user_id)

        due = await self.due_for_alert(user_id, now)
        summary.total = len(due)
        if not due:
            return summary

        await self._started(user_id, len(due), correlation_id)
        try:
            await call_with_timeout(
                self._notifier.send(user_id, build_alert_message(due, now.date())),
                self._settings.io_timeout_seconds,
                "notification",
            )
        except ExternalServiceError as e:
            summary.failed = len(due)
            return await self._terminal(summary, e, correlation_id)

        for sub in due:
            await self._tracker.mark_renewal_alert_sent(user_id, sub.id, now)
            summary.processed += 1
            if self._audit_logger:
                await self._audit_logger.log_renewal_alert_sent(
                    user_id=user_id,
                    subscription_id=sub.id,
                    company_name=sub.company_name,
                    days_until_renewal=(sub.next_renewal_date - now.date()).days,
                    correlation_id=correlation_id,
                )

        return await self._completed(summary, correlation_id)


async def run_for_users(
    user_ids: Iterable[str],
    process: Callable[[str], Awaitable[BatchSummary]],
) -> list[BatchSummary]:
    """
    Run one per-user pass for every user concurrently.

    A user whose pass raised gets a summary carrying the error; the
    other users are unaffected.
    """
    user_ids = list(user_ids)
    results = await asyncio.gather(
        *(process(user_id) for user_id in user_ids),
        return_exceptions=True,
    )

    summaries = []
    for user_id, result in zip(user_ids, results):
        if isinstance(result, BaseException):
            logger.error("user_pass_failed", user_id=user_id, error=str(result))
            summaries.append(BatchSummary(user_id=user_id, error=str(result)))
        else:
            summaries.append(result)
    return summaries


# =============================================================================
# FACTORY
# =============================================================================

class AppComponents(NamedTuple):
    tracker: SubscriptionTracker
    email_scan: Optional[EmailScanFlow]
    bank_sync: Optional[BankSyncFlow]
    statement_upload: Optional[StatementUploadFlow]
    renewal_alert: Optional[RenewalAlertFlow]
    sheets_client: Optional[GoogleSheetsClient]


def create_app_components(
    use_storage: bool = True,
    email_source: Optional[EmailSource] = None,
    bank_source: Optional[BankSource] = None,
    credentials: Optional[CredentialProvider] = None,
    statement_extractor: Optional[StatementExtractor] = None,
    notifier: Optional[NotificationSender] = None,
    classifier: Optional[EvidenceClassifier] = None,
) -> AppComponents:
    """
    Factory function to create all application components.

    Args:
        use_storage: Whether to initialize Google Sheets storage.
                    Set to False for testing without storage.

    A flow is only built when its collaborators are supplied.
    """
    sheets_client = None
    audit_logger = None

    if use_storage:
        try:
            sheets_client = GoogleSheetsClient()
            subscriptions = GoogleSheetsSubscriptionRepository(sheets_client)
            potentials = GoogleSheetsPotentialSubscriptionRepository(sheets_client)
            ledger_storage = GoogleSheetsLedgerStorage(sheets_client)
            audit_logger = AuditLogger(GoogleSheetsAuditStorage(sheets_client))
        except Exception as e:
            # Storage not configured - continue in memory
            logger.warning("storage_not_configured", error=str(e))
            sheets_client = None

    if sheets_client is None:
        subscriptions = InMemorySubscriptionRepository()
        potentials = InMemoryPotentialSubscriptionRepository()
        ledger_storage = InMemoryLedgerStorage()
        audit_logger = AuditLogger()  # Local-only logging

    tracker = SubscriptionTracker(
        subscriptions,
        potentials,
        ledger_storage,
        email_source=email_source,
        audit_logger=audit_logger,
    )

    email_scan = None
    bank_sync = None
    statement_upload = None
    renewal_alert = None

    if email_source is not None and credentials is not None:
        email_scan = EmailScanFlow(tracker, email_source, credentials, classifier, audit_logger)
    if bank_source is not None and credentials is not None:
        bank_sync = BankSyncFlow(tracker, bank_source, credentials, audit_logger)
    if statement_extractor is not None:
        statement_upload = StatementUploadFlow(tracker, statement_extractor, classifier, audit_logger)
    if notifier is not None:
        renewal_alert = RenewalAlertFlow(tracker, notifier, audit_logger)

    return AppComponents(
        tracker=tracker,
        email_scan=email_scan,
        bank_sync=bank_sync,
        statement_upload=statement_upload,
        renewal_alert=renewal_alert,
        sheets_client=sheets_client,
    )
