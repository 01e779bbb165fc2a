"""
Data Models Package

This package contains all Pydantic models used in the Subscription Tracker.
All data flowing through the reconciliation engine must conform to these schemas.
"""

from subtracker.models.subscription import (
    ApplyAction,
    ApplyOutcome,
    BatchSummary,
    BillingFrequency,
    CandidateEvidence,
    ConfidenceResult,
    EmailMatch,
    EmailOnlySubscription,
    EventType,
    LedgerEntry,
    LedgerStatus,
    PotentialConfidence,
    PotentialReason,
    PotentialSubscription,
    RecurringPattern,
    Subscription,
    SubscriptionConfidence,
    SubscriptionSource,
    SubscriptionStatus,
    UserAction,
    UserActionType,
    identity_token,
)
from subtracker.models.sources import (
    BankPage,
    BankTransaction,
    ChargeConfidence,
    EmailMessage,
    EmailQuery,
    StatementCharge,
)
from subtracker.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Subscription models
    "ApplyAction",
    "ApplyOutcome",
    "BatchSummary",
    "BillingFrequency",
    "CandidateEvidence",
    "ConfidenceResult",
    "EmailMatch",
    "EmailOnlySubscription",
    "EventType",
    "LedgerEntry",
    "LedgerStatus",
    "PotentialConfidence",
    "PotentialReason",
    "PotentialSubscription",
    "RecurringPattern",
    "Subscription",
    "SubscriptionConfidence",
    "SubscriptionSource",
    "SubscriptionStatus",
    "UserAction",
    "UserActionType",
    "identity_token",
    # Source models
    "BankPage",
    "BankTransaction",
    "ChargeConfidence",
    "EmailMessage",
    "EmailQuery",
    "StatementCharge",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
