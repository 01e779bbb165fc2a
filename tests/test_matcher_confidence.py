"""
Tests for cross-source email matching and confidence classification.
"""

import asyncio
from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from subtracker.errors import AuthExpiredError, ExternalServiceError
from subtracker.models.sources import EmailMessage
from subtracker.models.subscription import (
    BillingFrequency,
    EmailMatch,
    LedgerStatus,
    PotentialConfidence,
    PotentialReason,
    RecurringPattern,
)
from subtracker.reconciliation import CrossSourceMatcher, IdempotencyLedger, classify
from subtracker.reconciliation.matcher import merchant_keywords
from subtracker.services.storage import InMemoryLedgerStorage


D0 = date(2024, 4, 1)


def _email(email_id: str, day: date, subject: str = "Your Acme receipt", text: str = "") -> EmailMessage:
    return EmailMessage(
        id=email_id,
        subject=subject,
        sender="billing@acme.example",
        date=datetime.combine(day, datetime.min.time()) + timedelta(hours=15),
        text=text,
    )


class TestMerchantKeywords:

    def test_short_tokens_dropped(self):
        """Test that tokens of two characters or fewer are not keywords."""
        assert merchant_keywords("ACME STREAMING CO") == ["acme", "streaming"]


class TestCrossSourceMatcher:
    """Tests for email corroboration of bank charges."""

    def _matcher(self, fakes, settings, emails, ledger=None):
        source = fakes.EmailSource(emails)
        ledger = ledger or IdempotencyLedger(InMemoryLedgerStorage())
        return CrossSourceMatcher(source, ledger, settings), source

    def test_receipt_matches_transaction(self, fakes, settings):
        """Test ACME STREAMING 12.00 matched by an email 3 days later."""
        email = _email("m1", D0 + timedelta(days=3), text="Acme Plus charged $12.00 today")
        matcher, _ = self._matcher(fakes, settings, [email])

        match = asyncio.run(matcher.match("user-1", "ACME STREAMING", Decimal("12.00"), D0, "fresh"))

        assert match.matched is True
        assert match.email_id == "m1"
        assert match.email_subject == "Your Acme receipt"
        assert match.already_processed is False

    def test_window_boundary_is_inclusive(self, fakes, settings):
        """Test that 7 days away matches but 8 days away does not."""
        at_edge = _email("edge", D0 - timedelta(days=7), text="acme 12.00")
        matcher, _ = self._matcher(fakes, settings, [at_edge])
        assert asyncio.run(matcher.match("user-1", "ACME", Decimal("12.00"), D0, "fresh")).matched is True

        outside = _email("out", D0 + timedelta(days=8), text="acme 12.00")
        matcher, _ = self._matcher(fakes, settings, [outside])
        assert asyncio.run(matcher.match("user-1", "ACME", Decimal("12.00"), D0, "fresh")).matched is False

    def test_query_covers_window(self, fakes, settings):
        """Test the email query spans the whole window, end day included."""
        matcher, source = self._matcher(fakes, settings, [])
        asyncio.run(matcher.match("user-1", "ACME", Decimal("12.00"), D0, "fresh"))

        query = source.queries[0]
        assert query.after == D0 - timedelta(days=7)
        assert query.before == D0 + timedelta(days=8)

    def test_amount_must_match_exactly(self, fakes, settings):
        """Test that a close but different amount does not match."""
        email = _email("m1", D0, text="Acme renewal: $12.49")
        matcher, _ = self._matcher(fakes, settings, [email])

        assert asyncio.run(matcher.match("user-1", "ACME", Decimal("12.00"), D0, "fresh")).matched is False

    def test_merchant_must_be_mentioned(self, fakes, settings):
        """Test that the right amount from another merchant does not match."""
        email = _email("m1", D0, subject="Globex invoice", text="Total 12.00")
        matcher, _ = self._matcher(fakes, settings, [email])

        assert asyncio.run(matcher.match("user-1", "ACME", Decimal("12.00"), D0, "fresh")).matched is False

    def test_already_processed_email_reported(self, fakes, settings):
        """Test that a matched email already in the ledger is flagged."""
        ledger = IdempotencyLedger(InMemoryLedgerStorage())
        asyncio.run(ledger.record("user-1", "email:m1", LedgerStatus.PROCESSED))
        email = _email("m1", D0, text="acme 12.00")
        matcher, _ = self._matcher(fakes, settings, [email], ledger)

        match = asyncio.run(matcher.match("user-1", "ACME", Decimal("12.00"), D0, "fresh"))

        assert match.matched is True
        assert match.already_processed is True

    def test_no_credentials_means_no_match(self, fakes, settings):
        """Test that users without email access are judged on transactions alone."""
        email = _email("m1", D0, text="acme 12.00")
        matcher, source = self._matcher(fakes, settings, [email])

        match = asyncio.run(matcher.match("user-1", "ACME", Decimal("12.00"), D0, None))

        assert match.matched is False
        assert source.queries == []

    def test_source_failure_is_no_match(self, fakes, settings):
        """Test that an email outage does not fail the transaction."""
        source = fakes.EmailSource(error=ExternalServiceError("email", "503"))
        matcher = CrossSourceMatcher(source, IdempotencyLedger(InMemoryLedgerStorage()), settings)

        match = asyncio.run(matcher.match("user-1", "ACME", Decimal("12.00"), D0, "fresh"))

        assert match.matched is False

    def test_expired_credentials_propagate(self, fakes, settings):
        """Test that the caller gets the chance to refresh credentials."""
        matcher, _ = self._matcher(fakes, settings, [])

        with pytest.raises(AuthExpiredError):
            asyncio.run(matcher.match("user-1", "ACME", Decimal("12.00"), D0, "stale"))


class TestConfidenceClassifier:
    """Tests for the confidence decision table."""

    def test_email_match_confirms(self):
        """Test that email corroboration wins regardless of pattern."""
        result = classify(EmailMatch(matched=True, email_id="m1"), RecurringPattern())
        assert result.confidence == PotentialConfidence.CONFIRMED
        assert result.reason == PotentialReason.TRANSACTION_EMAIL_MATCH

    def test_pattern_confirms(self):
        """Test that a detected pattern confirms without an email."""
        pattern = RecurringPattern(detected=True, frequency=BillingFrequency.MONTHLY, occurrences=2)
        result = classify(EmailMatch(matched=False), pattern)
        assert result.confidence == PotentialConfidence.CONFIRMED
        assert result.reason == PotentialReason.TRANSACTION_PATTERN

    def test_transaction_alone_is_potential(self):
        """Test that a lone charge is only potential."""
        result = classify(EmailMatch(matched=False), RecurringPattern())
        assert result.confidence == PotentialConfidence.POTENTIAL
        assert result.reason == PotentialReason.TRANSACTION_ONLY
