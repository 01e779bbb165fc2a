"""
Error Taxonomy for the Reconciliation Engine

DESIGN DECISION: Per-item errors are caught at the item boundary of a
batch and converted into a ledger status. Only infrastructure errors
(the store cannot be reached at all) escape a batch. Stale and
duplicate evidence are not errors: they come back as an ApplyOutcome.

    ValidationError       -> ledger "skipped"
    AuthExpiredError      -> one refresh and retry, then terminal
    ExternalServiceError  -> ledger "failed", retried on a later pass
"""

from typing import Optional


class SubscriptionTrackerError(Exception):
    """Base exception for the subscription tracker."""
    pass


class ValidationError(SubscriptionTrackerError):
    """Evidence is missing required fields or carries values that cannot be stored."""

    def __init__(
        self,
        source_id: Optional[str],
        missing: list[str],
        detail: Optional[str] = None,
    ):
        self.source_id = source_id
        self.missing = missing
        self.detail = detail
        if detail:
            message = f"Evidence {source_id or '<unknown>'} is invalid: {detail}"
        else:
            message = (
                f"Evidence {source_id or '<unknown>'} is missing required fields: "
                f"{', '.join(missing)}"
            )
        super().__init__(message)


class AuthExpiredError(SubscriptionTrackerError):
    """Upstream credentials expired or were revoked."""

    def __init__(self, service: str, message: str = "credentials expired"):
        self.service = service
        super().__init__(f"{service}: {message}")


class ExternalServiceError(SubscriptionTrackerError):
    """An external collaborator failed (quota, auth, timeout, bad response)."""

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"{service}: {message}")


class PotentialNotFoundError(SubscriptionTrackerError):
    """No potential subscription with this id belongs to the user."""
    pass


class SubscriptionNotFoundError(SubscriptionTrackerError):
    """No subscription with this id belongs to the user."""
    pass
