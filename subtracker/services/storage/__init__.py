"""
Storage Services Package

Provides abstract interfaces and concrete implementations for data storage.
Google Sheets is the persistent backend; the in-memory backend serves
tests and credential-less local runs.
"""

from subtracker.services.storage.interface import (
    AuditStorageInterface,
    ConnectionError,
    DuplicateError,
    LedgerStorageInterface,
    NotFoundError,
    PotentialSubscriptionRepository,
    StorageError,
    SubscriptionRepository,
)
from subtracker.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryLedgerStorage,
    InMemoryPotentialSubscriptionRepository,
    InMemorySubscriptionRepository,
)
from subtracker.services.storage.google_sheets import (
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsLedgerStorage,
    GoogleSheetsPotentialSubscriptionRepository,
    GoogleSheetsSubscriptionRepository,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "LedgerStorageInterface",
    "PotentialSubscriptionRepository",
    "SubscriptionRepository",
    # Exceptions
    "ConnectionError",
    "DuplicateError",
    "NotFoundError",
    "StorageError",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemoryLedgerStorage",
    "InMemoryPotentialSubscriptionRepository",
    "InMemorySubscriptionRepository",
    # Google Sheets implementation
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsLedgerStorage",
    "GoogleSheetsPotentialSubscriptionRepository",
    "GoogleSheetsSubscriptionRepository",
]
