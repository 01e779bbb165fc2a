"""Evidence source interfaces."""

from subtracker.services.sources.interface import (
    BankSource,
    CredentialProvider,
    EmailSource,
    EvidenceClassifier,
    NotificationSender,
    StatementExtractor,
    call_with_timeout,
)

__all__ = [
    "BankSource",
    "CredentialProvider",
    "EmailSource",
    "EvidenceClassifier",
    "NotificationSender",
    "StatementExtractor",
    "call_with_timeout",
]
