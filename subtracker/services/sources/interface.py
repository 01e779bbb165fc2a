"""
Evidence Source Interfaces

DESIGN DECISION: Gmail, the bank aggregator, PDF extraction and
notification delivery are external collaborators. The engine only sees
these narrow interfaces. Every call takes explicit credentials; no
collaborator keeps per-user client state between calls.

IMPORTANT BOUNDARIES:
1. Implementations raise AuthExpiredError when credentials are rejected
2. Implementations raise ExternalServiceError for any other failure
3. Callers wrap every call in call_with_timeout
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import date
from typing import Any, Awaitable, Optional, TypeVar

from subtracker.errors import ExternalServiceError
from subtracker.models.sources import (
    BankPage,
    BankTransaction,
    EmailMessage,
    EmailQuery,
    StatementCharge,
)
from subtracker.models.subscription import CandidateEvidence


T = TypeVar("T")


async def call_with_timeout(call: Awaitable[T], timeout: float, service: str) -> T:
    """
    Await a collaborator call with a deadline.

    Raises:
        ExternalServiceError: If the call does not finish within timeout seconds
    """
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError:
        raise ExternalServiceError(service, f"timed out after {timeout:g}s")


class EmailSource(ABC):

    @abstractmethod
    async def fetch(self, credentials: Any, query: EmailQuery) -> list[EmailMessage]:
        """
        Fetch emails matching the query.

        Returns:
            Emails, newest first
        """
        pass


class BankSource(ABC):

    @abstractmethod
    async def fetch(
        self,
        credentials: Any,
        since: date,
        cursor: Optional[str] = None,
    ) -> BankPage:
        """Fetch one page of transactions posted on or after since."""
        pass

    async def fetch_all(self, credentials: Any, since: date) -> list[BankTransaction]:
        """Walk every page."""
        transactions: list[BankTransaction] = []
        cursor = None
        while True:
            page = await self.fetch(credentials, since, cursor)
            transactions.extend(page.transactions)
            if not page.next_cursor or page.next_cursor == cursor:
                return transactions
            cursor = page.next_cursor


class CredentialProvider(ABC):
    """Per-user, per-service credentials (OAuth tokens, access tokens)."""

    @abstractmethod
    async def get(self, user_id: str, service: str) -> Any:
        pass

    @abstractmethod
    async def refresh(self, user_id: str, service: str) -> Any:
        """
        Returns:
            Fresh credentials

        Raises:
            AuthExpiredError: If the credentials cannot be refreshed
        """
        pass


class StatementExtractor(ABC):

    @abstractmethod
    async def extract(self, document: bytes) -> str:
        """Plain text of an uploaded statement (PDF, image)."""
        pass


class EvidenceClassifier(ABC):
    """
    AI collaborator turning unstructured text into evidence.

    Output is UNTRUSTED; the event processor validates it.
    """

    @abstractmethod
    async def classify(self, text: str) -> bool:
        """Is this text about a paid subscription?"""
        pass

    @abstractmethod
    async def extract(self, text: str) -> Optional[CandidateEvidence]:
        """Structured evidence, or None if nothing usable was found."""
        pass

    @abstractmethod
    async def analyze_statement(
        self,
        text: str,
        previous: Optional[list[StatementCharge]] = None,
    ) -> list[StatementCharge]:
        """Recurring charges in a statement, merged with earlier findings."""
        pass


class NotificationSender(ABC):

    @abstractmethod
    async def send(self, user_id: str, message: str) -> None:
        """Fire-and-forget delivery."""
        pass
