"""
Shared fixtures and fake collaborators.

No test talks to Gmail, a bank, Gemini or Google Sheets: collaborators
are replaced by the fakes below and storage is in memory.
"""

from datetime import date
from types import SimpleNamespace
from typing import Any, Optional

import pytest

from subtracker.audit import AuditLogger
from subtracker.config import AppSettings, ReconciliationSettings
from subtracker.errors import AuthExpiredError, ExternalServiceError
from subtracker.models.sources import BankPage, BankTransaction, EmailMessage, EmailQuery, StatementCharge
from subtracker.models.subscription import CandidateEvidence
from subtracker.orchestrator import SubscriptionTracker
from subtracker.services.sources import (
    BankSource,
    CredentialProvider,
    EmailSource,
    EvidenceClassifier,
    NotificationSender,
    StatementExtractor,
)
from subtracker.services.storage import (
    InMemoryAuditStorage,
    InMemoryLedgerStorage,
    InMemoryPotentialSubscriptionRepository,
    InMemorySubscriptionRepository,
)


class FakeCredentials(CredentialProvider):
    """Hands out "stale" first when asked to, "fresh" after a refresh."""

    def __init__(self, initial: str = "fresh", refresh_fails: bool = False):
        self.initial = initial
        self.refresh_fails = refresh_fails
        self.refreshed: list[tuple[str, str]] = []

    async def get(self, user_id: str, service: str) -> Any:
        return self.initial

    async def refresh(self, user_id: str, service: str) -> Any:
        self.refreshed.append((user_id, service))
        if self.refresh_fails:
            raise AuthExpiredError(service, "refresh token revoked")
        return "fresh"


class FakeEmailSource(EmailSource):
    """Serves a fixed mailbox, newest first, to "fresh" credentials only."""

    def __init__(self, emails: Optional[list[EmailMessage]] = None, error: Optional[Exception] = None):
        self.emails = emails or []
        self.error = error
        self.queries: list[EmailQuery] = []
        self.credentials_seen: list[Any] = []

    async def fetch(self, credentials: Any, query: EmailQuery) -> list[EmailMessage]:
        self.queries.append(query)
        self.credentials_seen.append(credentials)
        if credentials != "fresh":
            raise AuthExpiredError("email")
        if self.error:
            raise self.error
        return sorted(self.emails, key=lambda e: e.date, reverse=True)


class FakeBankSource(BankSource):

    def __init__(self, pages: Optional[list[list[BankTransaction]]] = None):
        self.pages = pages or [[]]
        self.credentials_seen: list[Any] = []

    async def fetch(self, credentials: Any, since: date, cursor: Optional[str] = None) -> BankPage:
        self.credentials_seen.append(credentials)
        if credentials != "fresh":
            raise AuthExpiredError("bank")
        index = int(cursor) if cursor else 0
        next_cursor = str(index + 1) if index + 1 < len(self.pages) else None
        return BankPage(transactions=self.pages[index], next_cursor=next_cursor)


class FakeClassifier(EvidenceClassifier):
    """
    Evidence keyed by email subject.

    A subject with no entry is classified as not-a-subscription; an
    entry of None means classify passes but extraction finds nothing.
    """

    def __init__(
        self,
        evidence: Optional[dict[str, Optional[CandidateEvidence]]] = None,
        charges: Optional[list[StatementCharge]] = None,
        fail_subjects: tuple[str, ...] = (),
    ):
        self.evidence = evidence or {}
        self.charges = charges or []
        self.fail_subjects = fail_subjects
        self.classified: list[str] = []
        self.previous_seen: list[Optional[list[StatementCharge]]] = []

    @staticmethod
    def _subject(text: str) -> str:
        return text.splitlines()[0].removeprefix("Subject: ")

    async def classify(self, text: str) -> bool:
        subject = self._subject(text)
        self.classified.append(subject)
        if subject in self.fail_subjects:
            raise ExternalServiceError("gemini", "quota exceeded")
        return subject in self.evidence

    async def extract(self, text: str) -> Optional[CandidateEvidence]:
        return self.evidence.get(self._subject(text))

    async def analyze_statement(
        self,
        text: str,
        previous: Optional[list[StatementCharge]] = None,
    ) -> list[StatementCharge]:
        self.previous_seen.append(previous)
        return self.charges


class FakeExtractor(StatementExtractor):

    def __init__(self, text: str):
        self.text = text

    async def extract(self, document: bytes) -> str:
        return self.text


class FakeNotifier(NotificationSender):

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[str, str]] = []

    async def send(self, user_id: str, message: str) -> None:
        if self.fail:
            raise ExternalServiceError("notification", "mailbox unavailable")
        self.sent.append((user_id, message))


@pytest.fixture
def settings() -> ReconciliationSettings:
    return ReconciliationSettings()


@pytest.fixture
def app_settings() -> AppSettings:
    return AppSettings()


@pytest.fixture
def store():
    """Fresh in-memory storage plus an audit logger writing into it."""
    audit_storage = InMemoryAuditStorage()
    return SimpleNamespace(
        subscriptions=InMemorySubscriptionRepository(),
        potentials=InMemoryPotentialSubscriptionRepository(),
        ledger=InMemoryLedgerStorage(),
        audit=audit_storage,
        audit_logger=AuditLogger(audit_storage),
    )


@pytest.fixture
def make_tracker(store, settings, app_settings):
    def make(email_source: Optional[EmailSource] = None) -> SubscriptionTracker:
        return SubscriptionTracker(
            store.subscriptions,
            store.potentials,
            store.ledger,
            email_source=email_source,
            audit_logger=store.audit_logger,
            settings=settings,
            app_settings=app_settings,
        )
    return make


@pytest.fixture
def fakes():
    return SimpleNamespace(
        Credentials=FakeCredentials,
        EmailSource=FakeEmailSource,
        BankSource=FakeBankSource,
        Classifier=FakeClassifier,
        Extractor=FakeExtractor,
        Notifier=FakeNotifier,
    )
