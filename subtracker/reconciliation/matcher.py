"""
Cross-Source Matcher

Looks for an email that corroborates a bank transaction: dated within
the match window of the transaction, mentioning the merchant and the
exact amount.

DESIGN DECISION: the amount must appear exactly as a two-decimal string
("12.00"). Unlike the pattern detector there is no tolerance band; a
looser match lets promotional emails quoting a similar price through.
"""

from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Optional

import structlog

from subtracker.config import ReconciliationSettings, get_settings
from subtracker.errors import ExternalServiceError
from subtracker.models.sources import EmailMessage, EmailQuery
from subtracker.models.subscription import EmailMatch
from subtracker.reconciliation.ledger import IdempotencyLedger
from subtracker.services.sources import EmailSource, call_with_timeout


logger = structlog.get_logger(__name__)


def merchant_keywords(merchant_name: str) -> list[str]:
    """Lower-cased whitespace tokens longer than two characters."""
    return [word for word in merchant_name.lower().split() if len(word) > 2]


def email_mentions(email: EmailMessage, keywords: list[str], amount: Decimal) -> bool:
    text = email.searchable_text
    if not any(keyword in text for keyword in keywords):
        return False
    return f"{amount:.2f}" in text


def email_source_id(email_id: str) -> str:
    return f"email:{email_id}"


class CrossSourceMatcher:
    """
    Email corroboration for bank transactions.

    No credentials means the user has no email access: no match.
    Email Source failures other than expired credentials are logged and
    reported as no match. AuthExpiredError propagates so the caller can
    refresh once and retry.
    """

    def __init__(
        self,
        email_source: Optional[EmailSource],
        ledger: IdempotencyLedger,
        settings: Optional[ReconciliationSettings] = None,
    ):
        self._email_source = email_source
        self._ledger = ledger
        self._settings = settings or get_settings().reconciliation

    def window(self, transaction_date: date) -> tuple[date, date]:
        days = timedelta(days=self._settings.match_window_days)
        return transaction_date - days, transaction_date + days

    async def match(
        self,
        user_id: str,
        merchant_name: str,
        amount: Decimal,
        transaction_date: date,
        credentials: Any = None,
    ) -> EmailMatch:
        keywords = merchant_keywords(merchant_name)
        if self._email_source is None or credentials is None or not keywords:
            return EmailMatch(matched=False)

        start, end = self.window(transaction_date)
        # The source's "before" bound is exclusive
        query = EmailQuery(after=start, before=end + timedelta(days=1), max_results=50)
        try:
            emails = await call_with_timeout(
                self._email_source.fetch(credentials, query),
                self._settings.io_timeout_seconds,
                "email",
            )
        except ExternalServiceError as e:
            logger.warning(
                "email_match_failed",
                user_id=user_id,
                merchant_name=merchant_name,
                error=str(e),
            )
            return EmailMatch(matched=False)

        for email in emails:
            # Calendar-day window, inclusive at both ends
            if not start <= email.date.date() <= end:
                continue
            if not email_mentions(email, keywords, amount):
                continue
            entry = await self._ledger.get(user_id, email_source_id(email.id))
            return EmailMatch(
                matched=True,
                email_id=email.id,
                email_date=email.date,
                email_subject=email.subject,
                already_processed=entry is not None,
            )

        return EmailMatch(matched=False)
