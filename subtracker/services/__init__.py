"""Services package."""

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
    AuditStorageInterface,
    ConnectionError,
    DuplicateError,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsLedgerStorage,
    GoogleSheetsPotentialSubscriptionRepository,
    GoogleSheetsSubscriptionRepository,
    InMemoryAuditStorage,
    InMemoryLedgerStorage,
    InMemoryPotentialSubscriptionRepository,
    InMemorySubscriptionRepository,
    LedgerStorageInterface,
    NotFoundError,
    PotentialSubscriptionRepository,
    StorageError,
    SubscriptionRepository,
)

__all__ = [
    # Evidence sources
    "BankSource",
    "CredentialProvider",
    "EmailSource",
    "EvidenceClassifier",
    "NotificationSender",
    "StatementExtractor",
    "call_with_timeout",
    # Storage services
    "AuditStorageInterface",
    "ConnectionError",
    "DuplicateError",
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsLedgerStorage",
    "GoogleSheetsPotentialSubscriptionRepository",
    "GoogleSheetsSubscriptionRepository",
    "InMemoryAuditStorage",
    "InMemoryLedgerStorage",
    "InMemoryPotentialSubscriptionRepository",
    "InMemorySubscriptionRepository",
    "LedgerStorageInterface",
    "NotFoundError",
    "PotentialSubscriptionRepository",
    "StorageError",
    "SubscriptionRepository",
]
