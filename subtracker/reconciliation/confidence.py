"""
Confidence Classifier

Evaluated in priority order:

    email match   pattern   ->  confidence   reason
    -----------   -------       ----------   -----------------------
    yes           any           confirmed    transaction_email_match
    no            yes           confirmed    transaction_pattern
    no            no            potential    transaction_only

A potential result is surfaced to the user, never auto-applied.
"""

from subtracker.models.subscription import (
    ConfidenceResult,
    EmailMatch,
    PotentialConfidence,
    PotentialReason,
    RecurringPattern,
)


def classify(email_match: EmailMatch, pattern: RecurringPattern) -> ConfidenceResult:
    if email_match.matched:
        return ConfidenceResult(
            confidence=PotentialConfidence.CONFIRMED,
            reason=PotentialReason.TRANSACTION_EMAIL_MATCH,
        )
    if pattern.detected:
        return ConfidenceResult(
            confidence=PotentialConfidence.CONFIRMED,
            reason=PotentialReason.TRANSACTION_PATTERN,
        )
    return ConfidenceResult(
        confidence=PotentialConfidence.POTENTIAL,
        reason=PotentialReason.TRANSACTION_ONLY,
    )
