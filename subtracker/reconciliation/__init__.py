"""
Reconciliation Engine

Leaves first:
- identity: raw name -> canonical subscription
- ledger: at-most-once application of evidence
- patterns: is a charge recurring, and how often
- matcher: email corroboration of bank charges
- confidence: matcher + detector -> confidence label
- processor: the subscription state machine
- projector: next renewal date on read
"""

from subtracker.reconciliation.confidence import classify
from subtracker.reconciliation.identity import (
    IdentityMatcher,
    IdentityResolver,
    PrefixTokenMatcher,
)
from subtracker.reconciliation.ledger import IdempotencyLedger
from subtracker.reconciliation.matcher import CrossSourceMatcher, email_source_id
from subtracker.reconciliation.patterns import (
    RecurringPatternDetector,
    classify_interval,
    pattern_from_dates,
    within_tolerance,
)
from subtracker.reconciliation.processor import EventProcessor
from subtracker.reconciliation.projector import RenewalDateProjector

__all__ = [
    "CrossSourceMatcher",
    "EventProcessor",
    "IdempotencyLedger",
    "IdentityMatcher",
    "IdentityResolver",
    "PrefixTokenMatcher",
    "RecurringPatternDetector",
    "RenewalDateProjector",
    "classify",
    "classify_interval",
    "email_source_id",
    "pattern_from_dates",
    "within_tolerance",
]
