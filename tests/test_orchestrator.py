"""
Tests for the tracker facade and the per-user batch flows.

All collaborators are fakes from conftest; storage is in memory.
"""

import asyncio
import hashlib
from datetime import date, datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from subtracker.errors import (
    AuthExpiredError,
    ExternalServiceError,
    PotentialNotFoundError,
    SubscriptionNotFoundError,
)
from subtracker.models.audit import AuditEventType
from subtracker.models.sources import BankTransaction, EmailMessage, StatementCharge
from subtracker.models.subscription import (
    BatchSummary,
    BillingFrequency,
    CandidateEvidence,
    EventType,
    LedgerStatus,
    PotentialConfidence,
    PotentialReason,
    Subscription,
    SubscriptionConfidence,
    SubscriptionSource,
    SubscriptionStatus,
    UserActionType,
)
from subtracker.orchestrator import (
    BankSyncFlow,
    EmailScanFlow,
    RenewalAlertFlow,
    StatementUploadFlow,
    build_alert_message,
    create_app_components,
    run_for_users,
)


D0 = date(2024, 1, 10)
USER = "user-1"


def _txn(transaction_id: str, day: date, merchant: str = "SPOTIFY", amount: str = "9.99") -> BankTransaction:
    return BankTransaction(
        transaction_id=transaction_id,
        merchant_name=merchant,
        amount=Decimal(amount),
        date=day,
    )


def _email(email_id: str, subject: str, day: date, text: str = "") -> EmailMessage:
    return EmailMessage(
        id=email_id,
        subject=subject,
        sender="no-reply@example.com",
        date=datetime.combine(day, datetime.min.time()) + timedelta(hours=10),
        text=text,
    )


def _audit_types(store):
    return [e.event_type for e in store.audit.events]


# =============================================================================
# Tracker facade
# =============================================================================

class TestAnalyzeTransaction:
    """Tests for the bank transaction pipeline."""

    def test_lone_charge_is_potential_only(self, make_tracker, store):
        """Test a first charge with no email and no history is not applied."""
        tracker = make_tracker()

        potential = asyncio.run(tracker.analyze_transaction(USER, _txn("t1", D0)))

        assert potential.confidence == PotentialConfidence.POTENTIAL
        assert potential.reason == PotentialReason.TRANSACTION_ONLY
        assert potential.user_action.action == UserActionType.PENDING
        assert potential.subscription_id is None
        assert asyncio.run(store.subscriptions.list_for_user(USER)) == []
        assert AuditEventType.TRANSACTION_ANALYZED in _audit_types(store)

    def test_email_match_applies_subscription(self, make_tracker, store, fakes):
        """Test ACME STREAMING 12.00 with a receipt 3 days later is tracked."""
        email = _email("m1", "Your Acme receipt", D0 + timedelta(days=3), "Acme Plus charged $12.00")
        tracker = make_tracker(email_source=fakes.EmailSource([email]))

        potential = asyncio.run(tracker.analyze_transaction(
            USER, _txn("t1", D0, "ACME STREAMING", "12.00"), credentials="fresh"
        ))

        assert potential.confidence == PotentialConfidence.CONFIRMED
        assert potential.reason == PotentialReason.TRANSACTION_EMAIL_MATCH
        assert potential.matched_email_id == "m1"
        assert potential.user_action.action == UserActionType.CONFIRMED

        [sub] = asyncio.run(store.subscriptions.list_for_user(USER))
        assert potential.subscription_id == sub.id
        assert sub.source == SubscriptionSource.TRANSACTION_EMAIL
        assert sub.confidence == SubscriptionConfidence.CONFIRMED
        assert sub.price == Decimal("12.00")

    def test_recurring_charge_applies_once(self, make_tracker, store):
        """Test the second monthly charge creates the subscription and the third links to it."""
        tracker = make_tracker()
        asyncio.run(tracker.analyze_transaction(USER, _txn("t1", D0)))
        second = asyncio.run(tracker.analyze_transaction(USER, _txn("t2", D0 + timedelta(days=31))))

        assert second.reason == PotentialReason.TRANSACTION_PATTERN
        [sub] = asyncio.run(store.subscriptions.list_for_user(USER))
        assert sub.source == SubscriptionSource.TRANSACTION
        assert sub.frequency == BillingFrequency.MONTHLY
        assert sub.next_renewal_date == D0 + timedelta(days=61)

        third, outcome = asyncio.run(tracker.analyze_transaction_with_outcome(
            USER, _txn("t3", D0 + timedelta(days=60))
        ))

        assert outcome is None
        assert third.subscription_id == sub.id
        assert len(asyncio.run(store.subscriptions.list_for_user(USER))) == 1

    def test_rejection_sticks_across_resync(self, make_tracker):
        """Test that re-analyzing a rejected transaction keeps it rejected."""
        tracker = make_tracker()
        potential = asyncio.run(tracker.analyze_transaction(USER, _txn("t1", D0)))
        asyncio.run(tracker.reject_potential(USER, potential.id))

        again = asyncio.run(tracker.analyze_transaction(USER, _txn("t1", D0)))

        assert again.id == potential.id
        assert again.confidence == PotentialConfidence.REJECTED
        assert again.user_action.action == UserActionType.REJECTED

    def test_reanalysis_updates_in_place(self, make_tracker):
        """Test one potential per transaction id."""
        tracker = make_tracker()
        first = asyncio.run(tracker.analyze_transaction(USER, _txn("t1", D0)))
        second = asyncio.run(tracker.analyze_transaction(USER, _txn("t1", D0)))

        assert second.id == first.id
        assert len(asyncio.run(tracker.list_pending_potentials(USER))) == 1

    def test_expired_email_credentials_propagate(self, make_tracker, fakes):
        """Test that the caller is told to refresh email credentials."""
        tracker = make_tracker(email_source=fakes.EmailSource([]))

        with pytest.raises(AuthExpiredError):
            asyncio.run(tracker.analyze_transaction(USER, _txn("t1", D0), credentials="stale"))


class TestUserDecisions:
    """Tests for confirming and rejecting potential subscriptions."""

    def test_confirm_potential_creates_user_confirmed(self, make_tracker, store):
        """Test that a confirmed potential becomes a tracked subscription."""
        tracker = make_tracker()
        potential = asyncio.run(tracker.analyze_transaction(USER, _txn("t1", D0)))

        sub = asyncio.run(tracker.confirm_potential(USER, potential.id))

        assert sub.confidence == SubscriptionConfidence.USER_CONFIRMED
        assert sub.source == SubscriptionSource.TRANSACTION
        stored = asyncio.run(store.potentials.get(USER, potential.id))
        assert stored.confidence == PotentialConfidence.CONFIRMED
        assert stored.user_action.action == UserActionType.CONFIRMED
        assert stored.subscription_id == sub.id
        assert asyncio.run(tracker.list_pending_potentials(USER)) == []
        assert AuditEventType.POTENTIAL_CONFIRMED in _audit_types(store)

    def test_late_transaction_reason_keeps_confirmed_label(self, make_tracker):
        """Test that "transaction_late" does not mark the result user confirmed."""
        tracker = make_tracker()
        potential = asyncio.run(tracker.analyze_transaction(USER, _txn("t1", D0)))

        sub = asyncio.run(tracker.confirm_potential(USER, potential.id, reason="transaction_late"))

        assert sub.confidence == SubscriptionConfidence.CONFIRMED

    def test_confirm_after_auto_apply_relabels(self, make_tracker, store):
        """Test confirming an auto-applied potential relabels, not duplicates."""
        tracker = make_tracker()
        asyncio.run(tracker.analyze_transaction(USER, _txn("t1", D0)))
        second = asyncio.run(tracker.analyze_transaction(USER, _txn("t2", D0 + timedelta(days=31))))

        sub = asyncio.run(tracker.confirm_potential(USER, second.id))

        [stored] = asyncio.run(store.subscriptions.list_for_user(USER))
        assert stored.id == sub.id
        assert stored.confidence == SubscriptionConfidence.USER_CONFIRMED

    def test_reject_potential(self, make_tracker, store):
        """Test that a rejected potential leaves the pending list."""
        tracker = make_tracker()
        potential = asyncio.run(tracker.analyze_transaction(USER, _txn("t1", D0)))

        asyncio.run(tracker.reject_potential(USER, potential.id))

        stored = asyncio.run(store.potentials.get(USER, potential.id))
        assert stored.confidence == PotentialConfidence.REJECTED
        assert stored.user_action.reason == "user_rejected"
        assert asyncio.run(tracker.list_pending_potentials(USER)) == []
        assert AuditEventType.POTENTIAL_REJECTED in _audit_types(store)

    def test_unknown_potential_raises(self, make_tracker):
        """Test that another user's potential cannot be decided."""
        tracker = make_tracker()
        potential = asyncio.run(tracker.analyze_transaction(USER, _txn("t1", D0)))

        with pytest.raises(PotentialNotFoundError):
            asyncio.run(tracker.confirm_potential("user-2", potential.id))
        with pytest.raises(PotentialNotFoundError):
            asyncio.run(tracker.reject_potential(USER, uuid4()))

    def test_pending_potentials_newest_first(self, make_tracker):
        """Test the pending list ordering."""
        tracker = make_tracker()
        asyncio.run(tracker.analyze_transaction(USER, _txn("t1", D0, "GYM", "40.00")))
        asyncio.run(tracker.analyze_transaction(USER, _txn("t2", D0 + timedelta(days=3), "CINEMA", "12.00")))

        pending = asyncio.run(tracker.list_pending_potentials(USER))

        assert [p.transaction_id for p in pending] == ["t2", "t1"]


class TestEmailOnlySubscriptions:
    """Tests for email subscriptions without a backing charge."""

    def _apply_email(self, tracker, email_id: str, event_type=EventType.START, day: int = 0):
        return asyncio.run(tracker.apply_evidence(USER, CandidateEvidence(
            event_type=event_type,
            service_name="Netflix",
            amount=Decimal("15.99"),
            source_id=f"email:{email_id}",
            source_date=datetime(2024, 1, 1) + timedelta(days=day),
        )))

    def test_email_subscription_without_charge_is_listed_once(self, make_tracker):
        """Test one entry per subscription even with several emails."""
        tracker = make_tracker()
        sub = self._apply_email(tracker, "m1")
        self._apply_email(tracker, "m2", EventType.RENEWAL, 30)

        found = asyncio.run(tracker.find_email_only_subscriptions(USER))

        assert len(found) == 1
        assert found[0].subscription.id == sub.id
        assert found[0].reason == PotentialReason.EMAIL_ONLY

    def test_backing_transaction_excludes_subscription(self, make_tracker):
        """Test that a similar bank charge counts as corroboration."""
        tracker = make_tracker()
        self._apply_email(tracker, "m1")
        asyncio.run(tracker.analyze_transaction(USER, _txn("t1", D0, "NETFLIX.COM", "15.99")))

        assert asyncio.run(tracker.find_email_only_subscriptions(USER)) == []

    def test_confirmed_email_subscription_is_no_longer_listed(self, make_tracker, store):
        """Test confirming an email-only subscription."""
        tracker = make_tracker()
        sub = self._apply_email(tracker, "m1")

        confirmed = asyncio.run(tracker.confirm_email_subscription(USER, sub.id))

        assert confirmed.confidence == SubscriptionConfidence.USER_CONFIRMED
        assert asyncio.run(tracker.find_email_only_subscriptions(USER)) == []
        event = next(
            e for e in store.audit.events
            if e.event_type == AuditEventType.EMAIL_SUBSCRIPTION_CONFIRMED
        )
        assert event.is_user_action is True

    def test_confirm_unknown_subscription_raises(self, make_tracker):
        """Test that confirming a missing subscription fails."""
        with pytest.raises(SubscriptionNotFoundError):
            asyncio.run(make_tracker().confirm_email_subscription(USER, uuid4()))


class TestStatementCharges:
    """Tests for subscriptions added from uploaded statements."""

    def test_new_charge_is_user_confirmed_document(self, make_tracker, store):
        """Test the dates derived from a statement charge."""
        tracker = make_tracker()
        charge = StatementCharge(
            merchant_name="Netflix",
            amount=Decimal("15.99"),
            transaction_dates=[date(2024, 1, 5), date(2024, 2, 5), date(2024, 3, 5)],
        )

        sub = asyncio.run(tracker.add_statement_charge(USER, charge, "s1", 0))

        assert sub.source == SubscriptionSource.DOCUMENT
        assert sub.confidence == SubscriptionConfidence.USER_CONFIRMED
        assert sub.start_date == date(2024, 1, 5)
        assert sub.next_renewal_date == date(2024, 4, 5)
        assert sub.frequency == BillingFrequency.MONTHLY
        entry = asyncio.run(tracker.ledger.get(USER, "statement:s1:0"))
        assert entry.status == LedgerStatus.PROCESSED

    def test_tracked_identity_is_returned_unchanged(self, make_tracker, store):
        """Test that a statement does not overwrite an existing subscription."""
        tracker = make_tracker()
        first = asyncio.run(tracker.add_statement_charge(
            USER, StatementCharge(merchant_name="Netflix", amount=Decimal("15.99")), "s1", 0
        ))
        second = asyncio.run(tracker.add_statement_charge(
            USER, StatementCharge(merchant_name="NETFLIX", amount=Decimal("17.99")), "s2", 0
        ))

        assert second.id == first.id
        [stored] = asyncio.run(store.subscriptions.list_for_user(USER))
        assert stored.price == Decimal("15.99")


class TestReads:

    def test_list_subscriptions_projects_without_writing(self, make_tracker, store):
        """Test that reads roll renewal dates forward on a copy only."""
        tracker = make_tracker()
        sub = Subscription(
            user_id=USER,
            company_name="Netflix",
            start_date=date(2023, 1, 1),
            next_renewal_date=date(2024, 1, 1),
            frequency=BillingFrequency.MONTHLY,
        )
        asyncio.run(store.subscriptions.create(sub))

        [projected] = asyncio.run(tracker.list_subscriptions(USER, now=datetime(2024, 3, 10)))

        assert projected.next_renewal_date == date(2024, 4, 1)
        [stored] = asyncio.run(store.subscriptions.list_for_user(USER))
        assert stored.next_renewal_date == date(2024, 1, 1)

    def test_mark_alert_on_missing_subscription_raises(self, make_tracker):
        with pytest.raises(SubscriptionNotFoundError):
            asyncio.run(make_tracker().mark_renewal_alert_sent(USER, uuid4(), datetime(2024, 1, 1)))


# =============================================================================
# Email scan
# =============================================================================

NETFLIX_START = CandidateEvidence(event_type=EventType.START, service_name="Netflix", amount=Decimal("15.99"))
NETFLIX_RENEWAL = CandidateEvidence(event_type=EventType.RENEWAL, service_name="Netflix", amount=Decimal("16.49"))


def _mailbox():
    return [
        _email("m1", "Welcome to Netflix", D0),
        _email("m2", "Your weekly newsletter", D0 + timedelta(days=1)),
        _email("m3", "Netflix receipt", D0 + timedelta(days=30)),
    ]


class TestEmailScanFlow:
    """Tests for the scheduled mailbox scan."""

    def _flow(self, make_tracker, store, fakes, classifier, emails=None, credentials=None, source=None):
        source = source or fakes.EmailSource(emails if emails is not None else _mailbox())
        flow = EmailScanFlow(
            make_tracker(),
            source,
            credentials or fakes.Credentials(),
            classifier=classifier,
            audit_logger=store.audit_logger,
        )
        return flow, source

    def test_scan_applies_oldest_first(self, make_tracker, store, fakes):
        """Test start then renewal from one scan, newsletter skipped."""
        classifier = fakes.Classifier({"Welcome to Netflix": NETFLIX_START, "Netflix receipt": NETFLIX_RENEWAL})
        flow, _ = self._flow(make_tracker, store, fakes, classifier)

        summary = asyncio.run(flow.process_user(USER))

        assert summary.total == 3
        assert summary.processed == 2
        assert summary.created == 1
        assert summary.updated == 1
        assert summary.skipped == 1
        assert summary.error is None

        [sub] = asyncio.run(store.subscriptions.list_for_user(USER))
        assert sub.price == Decimal("16.49")
        assert sub.source == SubscriptionSource.EMAIL
        assert sub.last_applied_event_id == "email:m3"
        skipped = asyncio.run(flow._tracker.ledger.get(USER, "email:m2"))
        assert skipped.status == LedgerStatus.SKIPPED
        assert AuditEventType.BATCH_COMPLETED in _audit_types(store)

    def test_rescan_is_a_noop(self, make_tracker, store, fakes):
        """Test every email is already processed on the second pass."""
        classifier = fakes.Classifier({"Welcome to Netflix": NETFLIX_START, "Netflix receipt": NETFLIX_RENEWAL})
        flow, _ = self._flow(make_tracker, store, fakes, classifier)
        asyncio.run(flow.process_user(USER))
        classified = len(classifier.classified)

        summary = asyncio.run(flow.process_user(USER))

        assert summary.already_processed == 3
        assert summary.processed == 0
        assert len(classifier.classified) == classified

    def test_checkpoint_drives_query(self, make_tracker, store, fakes):
        """Test first scan uses the initial window, later scans start at the checkpoint."""
        flow, source = self._flow(make_tracker, store, fakes, fakes.Classifier())

        asyncio.run(flow.process_user(USER))
        checkpoint = asyncio.run(flow._tracker.ledger.get_checkpoint(USER, "email"))
        asyncio.run(flow.process_user(USER))

        assert source.queries[0].newer_than_days == 90
        assert source.queries[0].after is None
        assert source.queries[1].after == checkpoint.date()

    def test_nothing_extracted_is_skipped(self, make_tracker, store, fakes):
        """Test that a subscription email with no usable facts is skipped."""
        classifier = fakes.Classifier({"Netflix receipt": None})
        flow, _ = self._flow(make_tracker, store, fakes, classifier, [_email("m3", "Netflix receipt", D0)])

        summary = asyncio.run(flow.process_user(USER))

        assert summary.skipped == 1
        assert asyncio.run(store.subscriptions.list_for_user(USER)) == []

    def test_incomplete_evidence_is_skipped(self, make_tracker, store, fakes):
        """Test that evidence without a service name is recorded skipped."""
        classifier = fakes.Classifier({"Netflix receipt": CandidateEvidence(event_type=EventType.RENEWAL)})
        flow, _ = self._flow(make_tracker, store, fakes, classifier, [_email("m3", "Netflix receipt", D0)])

        summary = asyncio.run(flow.process_user(USER))

        assert summary.skipped == 1
        entry = asyncio.run(flow._tracker.ledger.get(USER, "email:m3"))
        assert entry.status == LedgerStatus.SKIPPED

    def test_unstorable_evidence_skipped_and_batch_continues(self, make_tracker, store, fakes):
        """Test that evidence a Subscription rejects does not stop later emails."""
        # A collaborator that skips model validation
        bad = CandidateEvidence.model_construct(
            event_type=EventType.START,
            service_name="Netflix",
            amount=Decimal("15.99"),
            currency="Euros",
        )
        good = CandidateEvidence(
            event_type=EventType.START,
            service_name="Spotify",
            amount=Decimal("9.99"),
            currency="USD",
        )
        classifier = fakes.Classifier({"Welcome to Netflix": bad, "Welcome to Spotify": good})
        emails = [
            _email("m1", "Welcome to Netflix", D0),
            _email("m2", "Welcome to Spotify", D0 + timedelta(days=1)),
        ]
        flow, _ = self._flow(make_tracker, store, fakes, classifier, emails)

        summary = asyncio.run(flow.process_user(USER))

        assert summary.skipped == 1
        assert summary.created == 1
        assert summary.error is None
        [sub] = asyncio.run(store.subscriptions.list_for_user(USER))
        assert sub.company_name == "Spotify"
        assert asyncio.run(flow._tracker.ledger.get(USER, "email:m1")).status == LedgerStatus.SKIPPED
        assert asyncio.run(flow._tracker.ledger.get_checkpoint(USER, "email")) is not None

    def test_failed_item_does_not_abort_batch_and_is_retried(self, make_tracker, store, fakes):
        """Test a classifier outage on one email, then a successful retry."""
        evidence = {"Welcome to Netflix": NETFLIX_START, "Netflix receipt": NETFLIX_RENEWAL}
        tracker = make_tracker()
        source = fakes.EmailSource(_mailbox())
        failing = EmailScanFlow(
            tracker, source, fakes.Credentials(),
            classifier=fakes.Classifier(evidence, fail_subjects=("Netflix receipt",)),
            audit_logger=store.audit_logger,
        )

        summary = asyncio.run(failing.process_user(USER))

        assert summary.failed == 1
        assert summary.created == 1
        assert summary.error is None
        assert asyncio.run(tracker.ledger.get(USER, "email:m3")).status == LedgerStatus.FAILED

        healthy = EmailScanFlow(
            tracker, source, fakes.Credentials(),
            classifier=fakes.Classifier(evidence),
            audit_logger=store.audit_logger,
        )
        retry = asyncio.run(healthy.process_user(USER))

        assert retry.updated == 1
        assert retry.already_processed == 2
        assert asyncio.run(tracker.ledger.get(USER, "email:m3")).status == LedgerStatus.PROCESSED

    def test_expired_credentials_refreshed_once(self, make_tracker, store, fakes):
        """Test one refresh-and-retry on expired credentials."""
        credentials = fakes.Credentials(initial="stale")
        flow, source = self._flow(make_tracker, store, fakes, fakes.Classifier(), credentials=credentials)

        summary = asyncio.run(flow.process_user(USER))

        assert summary.error is None
        assert credentials.refreshed == [(USER, "email")]
        assert source.credentials_seen == ["stale", "fresh"]
        assert AuditEventType.AUTH_REFRESHED in _audit_types(store)

    def test_failed_refresh_is_terminal(self, make_tracker, store, fakes):
        """Test that a second auth failure ends the user's pass."""
        credentials = fakes.Credentials(initial="stale", refresh_fails=True)
        flow, _ = self._flow(make_tracker, store, fakes, fakes.Classifier(), credentials=credentials)

        summary = asyncio.run(flow.process_user(USER))

        assert summary.error == "email: refresh token revoked"
        assert summary.processed == 0
        assert AuditEventType.AUTH_EXPIRED in _audit_types(store)
        assert asyncio.run(flow._tracker.ledger.get_checkpoint(USER, "email")) is None

    def test_source_outage_is_terminal(self, make_tracker, store, fakes):
        """Test that an unreachable mailbox ends the pass with an error."""
        source = fakes.EmailSource(error=ExternalServiceError("email", "503"))
        flow, _ = self._flow(make_tracker, store, fakes, fakes.Classifier(), source=source)

        summary = asyncio.run(flow.process_user(USER))

        assert summary.error == "email: 503"
        assert AuditEventType.EXTERNAL_SERVICE_ERROR in _audit_types(store)


# =============================================================================
# Bank sync
# =============================================================================

class TestBankSyncFlow:
    """Tests for the scheduled bank sync."""

    def test_sync_counts_potential_and_applied(self, make_tracker, store, fakes):
        """Test paging, ordering and counts over a small account history."""
        pages = [
            [_txn("t1", D0)],
            [_txn("t2", D0 + timedelta(days=31)), _txn("t3", D0 + timedelta(days=5), "GYM", "40.00")],
        ]
        flow = BankSyncFlow(make_tracker(), fakes.BankSource(pages), fakes.Credentials(), store.audit_logger)

        summary = asyncio.run(flow.process_user(USER))

        assert summary.total == 3
        assert summary.potential == 2
        assert summary.created == 1
        assert summary.error is None
        assert asyncio.run(flow._tracker.ledger.get_checkpoint(USER, "bank")) is not None

    def test_expired_credentials_refreshed_for_bank_and_email(self, make_tracker, store, fakes):
        """Test one refresh per service when both credentials are stale."""
        credentials = fakes.Credentials(initial="stale")
        tracker = make_tracker(email_source=fakes.EmailSource([]))
        flow = BankSyncFlow(tracker, fakes.BankSource([[_txn("t1", D0)]]), credentials, store.audit_logger)

        summary = asyncio.run(flow.process_user(USER))

        assert summary.error is None
        assert summary.potential == 1
        assert credentials.refreshed == [(USER, "bank"), (USER, "email")]

    def test_second_email_auth_failure_is_terminal(self, make_tracker, store, fakes):
        """Test that email credentials rejected after a refresh end the pass."""

        class EmailAlwaysStale(fakes.Credentials):
            async def get(self, user_id, service):
                return "fresh" if service == "bank" else "stale"

            async def refresh(self, user_id, service):
                self.refreshed.append((user_id, service))
                return "stale"

        credentials = EmailAlwaysStale()
        tracker = make_tracker(email_source=fakes.EmailSource([]))
        pages = [[_txn("t1", D0), _txn("t2", D0 + timedelta(days=3), "GYM", "40.00")]]
        flow = BankSyncFlow(tracker, fakes.BankSource(pages), credentials, store.audit_logger)

        summary = asyncio.run(flow.process_user(USER))

        assert summary.error == "email: credentials expired"
        assert credentials.refreshed == [(USER, "email")]
        assert AuditEventType.AUTH_EXPIRED in _audit_types(store)


# =============================================================================
# Statement upload
# =============================================================================

STATEMENT_TEXT = "ACCOUNT STATEMENT\n" + "\n".join(f"2024-01-{d:02d} CARD PURCHASE" for d in range(1, 20))


def _charges():
    return [
        StatementCharge(
            merchant_name="Netflix",
            amount=Decimal("15.99"),
            transaction_dates=[date(2024, 1, 5), date(2024, 2, 5)],
        ),
        StatementCharge(merchant_name="Spotify", amount=Decimal("9.99")),
    ]


class TestStatementUploadFlow:

    def test_upload_tracks_each_charge(self, make_tracker, store, fakes):
        """Test that every recurring charge becomes a subscription."""
        classifier = fakes.Classifier(charges=_charges())
        flow = StatementUploadFlow(make_tracker(), fakes.Extractor(STATEMENT_TEXT), classifier, store.audit_logger)
        document = b"%PDF-1.7 statement"

        summary = asyncio.run(flow.process_document(USER, document))

        assert summary.total == 2
        assert summary.created == 2
        statement_id = hashlib.sha256(document).hexdigest()[:16]
        entry = asyncio.run(flow._tracker.ledger.get(USER, f"statement:{statement_id}:0"))
        assert entry.status == LedgerStatus.PROCESSED
        assert AuditEventType.STATEMENT_ANALYZED in _audit_types(store)

    def test_second_upload_merges_and_skips_tracked(self, make_tracker, store, fakes):
        """Test earlier findings are passed back and tracked charges not re-added."""
        classifier = fakes.Classifier(charges=_charges())
        flow = StatementUploadFlow(make_tracker(), fakes.Extractor(STATEMENT_TEXT), classifier, store.audit_logger)
        asyncio.run(flow.process_document(USER, b"january"))

        summary = asyncio.run(flow.process_document(USER, b"february"))

        assert summary.already_processed == 2
        assert summary.created == 0
        assert classifier.previous_seen[0] is None
        assert classifier.previous_seen[1] == _charges()
        assert len(asyncio.run(store.subscriptions.list_for_user(USER))) == 2

    def test_unreadable_document_is_terminal(self, make_tracker, store, fakes):
        """Test that a document with almost no text is rejected."""
        classifier = fakes.Classifier(charges=_charges())
        flow = StatementUploadFlow(make_tracker(), fakes.Extractor("  "), classifier, store.audit_logger)

        summary = asyncio.run(flow.process_document(USER, b"scan.png"))

        assert summary.error == "statement: no readable text in document"
        assert classifier.previous_seen == []
        assert asyncio.run(store.subscriptions.list_for_user(USER)) == []


# =============================================================================
# Renewal alerts
# =============================================================================

NOW = datetime(2024, 6, 15, 8, 0)


def _renewing(name: str, next_renewal: date, **fields) -> Subscription:
    return Subscription(
        user_id=USER,
        company_name=name,
        price=Decimal("10.00"),
        start_date=date(2024, 1, 1),
        next_renewal_date=next_renewal,
        frequency=BillingFrequency.MONTHLY,
        **fields,
    )


class TestRenewalAlertFlow:
    """Tests for renewal notifications."""

    def _seed(self, store):
        subs = [
            _renewing("Netflix", date(2024, 6, 18)),
            _renewing("Spotify", date(2024, 6, 30)),
            _renewing("Gym", date(2024, 6, 16), status=SubscriptionStatus.CANCELLED),
            _renewing("Hulu", date(2024, 6, 17), renewal_alert_sent_at=datetime(2024, 6, 13)),
        ]
        for sub in subs:
            asyncio.run(store.subscriptions.create(sub))
        return subs

    def test_alerts_only_due_subscriptions(self, make_tracker, store, fakes):
        """Test one message for renewals inside the window, not yet alerted."""
        netflix = self._seed(store)[0]
        notifier = fakes.Notifier()
        flow = RenewalAlertFlow(make_tracker(), notifier, store.audit_logger)

        summary = asyncio.run(flow.process_user(USER, now=NOW))

        assert summary.processed == 1
        assert len(notifier.sent) == 1
        message = notifier.sent[0][1]
        assert "Netflix" in message
        assert "in 3 days" in message
        assert "Hulu" not in message
        stored = asyncio.run(store.subscriptions.get(USER, netflix.id))
        assert stored.renewal_alert_sent_at == NOW
        assert AuditEventType.RENEWAL_ALERT_SENT in _audit_types(store)

    def test_alert_sent_once_per_window(self, make_tracker, store, fakes):
        """Test a second run on the same day sends nothing."""
        self._seed(store)
        notifier = fakes.Notifier()
        flow = RenewalAlertFlow(make_tracker(), notifier, store.audit_logger)
        asyncio.run(flow.process_user(USER, now=NOW))

        summary = asyncio.run(flow.process_user(USER, now=NOW + timedelta(hours=1)))

        assert summary.total == 0
        assert len(notifier.sent) == 1

    def test_delivery_failure_leaves_subscriptions_unmarked(self, make_tracker, store, fakes):
        """Test that a failed send is retried on the next run."""
        netflix = self._seed(store)[0]
        flow = RenewalAlertFlow(make_tracker(), fakes.Notifier(fail=True), store.audit_logger)

        summary = asyncio.run(flow.process_user(USER, now=NOW))

        assert summary.failed == 1
        assert summary.error is not None
        stored = asyncio.run(store.subscriptions.get(USER, netflix.id))
        assert stored.renewal_alert_sent_at is None

    def test_alert_message_for_several_subscriptions(self):
        """Test the summary title and relative days."""
        message = build_alert_message(
            [_renewing("Spotify", date(2024, 6, 16)), _renewing("Netflix", date(2024, 6, 15), plan_name="Premium")],
            date(2024, 6, 15),
        )

        lines = message.splitlines()
        assert lines[0] == "Renewal Alert: 2 subscriptions renewing soon"
        assert lines[2] == "- Netflix (Premium): 10.00 USD, renews today"
        assert lines[3] == "- Spotify: 10.00 USD, renews tomorrow"


# =============================================================================
# Fan-out and wiring
# =============================================================================

class TestRunForUsers:

    def test_one_failing_user_does_not_affect_others(self):
        """Test that an exception becomes that user's summary error."""
        async def process(user_id):
            if user_id == "broken":
                raise RuntimeError("sheet unreachable")
            return BatchSummary(user_id=user_id, processed=1)

        summaries = asyncio.run(run_for_users(["user-1", "broken", "user-2"], process))

        assert [s.user_id for s in summaries] == ["user-1", "broken", "user-2"]
        assert summaries[0].processed == 1
        assert summaries[1].error == "sheet unreachable"
        assert summaries[2].error is None


class TestCreateAppComponents:

    def test_flows_built_only_with_collaborators(self, fakes):
        """Test in-memory wiring without Google credentials."""
        components = create_app_components(
            use_storage=False,
            email_source=fakes.EmailSource(),
            credentials=fakes.Credentials(),
            notifier=fakes.Notifier(),
            classifier=fakes.Classifier(),
        )

        assert components.sheets_client is None
        assert components.email_scan is not None
        assert components.renewal_alert is not None
        assert components.bank_sync is None
        assert components.statement_upload is None
