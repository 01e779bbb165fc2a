"""
Core Data Models for the Subscription Tracker

These models define the schemas for everything flowing through the
reconciliation engine:
1. The canonical Subscription aggregate (one per user + identity)
2. Ephemeral evidence reported by the email, bank and statement streams
3. Potential subscriptions waiting for the user
4. Idempotency ledger entries

DESIGN DECISION: All datetimes are stored as naive UTC. Collaborators
may hand us timezone-aware values; they are normalized on the way in so
that ordering comparisons never mix aware and naive values.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


def _to_naive_utc(value):
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def identity_token(name: Optional[str]) -> str:
    """
    Base brand token of a service name.

    "Crave Standard With Ads" -> "crave"
    """
    if not name or not name.strip():
        return ""
    return name.strip().split()[0].lower()


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class SubscriptionStatus(str, Enum):
    """
    Persisted subscription states.

    A subscription that was never seen is modeled as absence, not a state.
    """
    ACTIVE = "active"
    CANCELLED = "cancelled"


class SubscriptionConfidence(str, Enum):
    """How certain we are that the subscription is real."""
    CONFIRMED = "confirmed"
    POTENTIAL = "potential"
    USER_CONFIRMED = "user_confirmed"


class SubscriptionSource(str, Enum):
    """Which evidence stream produced the subscription."""
    EMAIL = "email"
    TRANSACTION = "transaction"
    TRANSACTION_EMAIL = "transaction_email"
    DOCUMENT = "document"
    MANUAL = "manual"


class BillingFrequency(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"
    WEEKLY = "weekly"
    UNKNOWN = "unknown"


class EventType(str, Enum):
    """Kinds of subscription events an evidence item can report."""
    START = "start"
    RENEWAL = "renewal"
    CANCELLATION = "cancellation"
    CHANGE = "change"


class PotentialConfidence(str, Enum):
    POTENTIAL = "potential"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class PotentialReason(str, Enum):
    """Why a charge was (or was not) considered a subscription."""
    TRANSACTION_ONLY = "transaction_only"
    EMAIL_ONLY = "email_only"
    TRANSACTION_PATTERN = "transaction_pattern"
    TRANSACTION_EMAIL_MATCH = "transaction_email_match"


class UserActionType(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class LedgerStatus(str, Enum):
    """
    Idempotency ledger states.

    PENDING is the in-flight claim. FAILED claims may be re-claimed
    because the item was never applied.
    """
    PENDING = "pending"
    PROCESSED = "processed"
    SKIPPED = "skipped"
    FAILED = "failed"


class ApplyAction(str, Enum):
    """What the event processor did with one evidence item."""
    CREATED = "created"
    UPDATED = "updated"
    REACTIVATED = "reactivated"
    CANCELLED = "cancelled"
    STALE = "stale"
    DUPLICATE = "duplicate"


# =============================================================================
# CANONICAL SUBSCRIPTION
# =============================================================================

class Subscription(BaseModel):
    """
    The canonical subscription aggregate.

    CRITICAL: last_applied_event_date only moves forward. The one
    exception is a cancellation, which is ordered by its own effective
    date rather than by the date it was reported.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: str = Field(..., min_length=1)

    company_name: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Display identity of the service"
    )
    normalized_identity: str = Field(
        default="",
        description="Derived base brand token, used for matching and locking"
    )

    price: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)

    start_date: date
    next_renewal_date: Optional[date] = None
    cancellation_date: Optional[date] = None
    access_end_date: Optional[date] = None

    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    confidence: SubscriptionConfidence = SubscriptionConfidence.CONFIRMED
    source: SubscriptionSource = SubscriptionSource.EMAIL
    frequency: BillingFrequency = BillingFrequency.UNKNOWN
    plan_name: Optional[str] = Field(default=None, max_length=200)

    # Ordering / idempotency bookkeeping
    last_applied_event_id: Optional[str] = None
    last_applied_event_date: Optional[datetime] = None

    renewal_alert_sent_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("currency")
    @classmethod
    def uppercase_currency(cls, v: str) -> str:
        return v.upper()

    @field_validator(
        "last_applied_event_date", "renewal_alert_sent_at", "created_at", "updated_at",
        mode="before",
    )
    @classmethod
    def normalize_datetimes(cls, v):
        return _to_naive_utc(v)

    @model_validator(mode="after")
    def derive_identity(self) -> "Subscription":
        """Keep the normalized identity in step with the display name."""
        self.normalized_identity = identity_token(self.company_name)
        return self

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE


# =============================================================================
# EVIDENCE
# =============================================================================

class CandidateEvidence(BaseModel):
    """
    A single subscription-related fact reported by one source.

    CRITICAL: This is UNTRUSTED input. Required fields are checked by
    the event processor, not here, so that an incomplete item can still
    be recorded as skipped in the ledger.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    event_type: Optional[EventType] = None
    service_name: Optional[str] = Field(default=None, max_length=200)
    amount: Optional[Decimal] = Field(default=None, ge=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)

    start_date: Optional[date] = None
    next_billing_date: Optional[date] = None
    cancellation_date: Optional[date] = None
    plan_name: Optional[str] = Field(default=None, max_length=200)

    source_id: Optional[str] = Field(
        default=None,
        description="Ledger key of the evidence (namespaced by stream)"
    )
    source_date: datetime = Field(
        default_factory=datetime.utcnow,
        description="When the evidence was produced (email date, posting date)"
    )

    source: SubscriptionSource = SubscriptionSource.EMAIL
    confidence: SubscriptionConfidence = SubscriptionConfidence.CONFIRMED
    frequency: Optional[BillingFrequency] = None

    @field_validator("currency")
    @classmethod
    def uppercase_currency(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else None

    @field_validator("source_date", mode="before")
    @classmethod
    def normalize_source_date(cls, v):
        if isinstance(v, date) and not isinstance(v, datetime):
            return datetime(v.year, v.month, v.day)
        return _to_naive_utc(v)

    def missing_fields(self) -> list[str]:
        missing = []
        if self.event_type is None:
            missing.append("event_type")
        if not self.service_name:
            missing.append("service_name")
        if not self.source_id:
            missing.append("source_id")
        return missing

    @property
    def effective_cancellation_date(self) -> date:
        return self.cancellation_date or self.source_date.date()


# =============================================================================
# TRANSACTION PATH
# =============================================================================

class RecurringPattern(BaseModel):
    """Output of the recurring pattern detector."""

    detected: bool = False
    frequency: BillingFrequency = BillingFrequency.UNKNOWN
    occurrences: int = Field(default=1, ge=0)
    average_interval_days: Optional[float] = None


class UserAction(BaseModel):
    action: UserActionType = UserActionType.PENDING
    action_date: Optional[datetime] = None
    reason: Optional[str] = None


class PotentialSubscription(BaseModel):
    """
    A bank charge that may be a subscription.

    CRITICAL: Potential subscriptions are surfaced to the user. Only
    confirmed ones are applied to the canonical list.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: str = Field(..., min_length=1)

    merchant_name: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(..., ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    transaction_date: date
    transaction_id: str = Field(..., min_length=1)
    account_id: Optional[str] = None

    confidence: PotentialConfidence = PotentialConfidence.POTENTIAL
    reason: PotentialReason = PotentialReason.TRANSACTION_ONLY
    recurring_pattern: RecurringPattern = Field(default_factory=RecurringPattern)

    matched_email_id: Optional[str] = None
    matched_email_date: Optional[datetime] = None

    user_action: UserAction = Field(default_factory=UserAction)
    subscription_id: Optional[UUID] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("matched_email_date", mode="before")
    @classmethod
    def normalize_email_date(cls, v):
        return _to_naive_utc(v)


class ConfidenceResult(BaseModel):
    confidence: PotentialConfidence
    reason: PotentialReason


class EmailMatch(BaseModel):
    """Result of looking for an email that corroborates a bank charge."""

    matched: bool = False
    email_id: Optional[str] = None
    email_date: Optional[datetime] = None
    email_subject: Optional[str] = None
    already_processed: bool = False


class EmailOnlySubscription(BaseModel):
    """A subscription seen only in email, with no corroborating charge."""

    email_id: str
    subscription: Subscription
    reason: PotentialReason = PotentialReason.EMAIL_ONLY


# =============================================================================
# IDEMPOTENCY LEDGER
# =============================================================================

class LedgerEntry(BaseModel):
    """
    One claimed evidence item.

    (user_id, source_id) is unique across the ledger.
    """

    user_id: str
    source_id: str
    status: LedgerStatus = LedgerStatus.PENDING
    linked_subscription_id: Optional[UUID] = None
    claimed_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def key(self) -> tuple[str, str]:
        return (self.user_id, self.source_id)


class ApplyOutcome(BaseModel):
    """What applying one evidence item did."""

    action: ApplyAction
    subscription: Optional[Subscription] = None


# =============================================================================
# BATCH RESULTS
# =============================================================================

class BatchSummary(BaseModel):
    """
    Per-user, per-batch counts.

    Individual item errors are never exposed beyond these counts.
    """

    user_id: str
    processed: int = 0
    created: int = 0
    updated: int = 0
    cancelled: int = 0
    stale: int = 0
    skipped: int = 0
    failed: int = 0
    already_processed: int = 0
    potential: int = 0
    total: int = 0
    error: Optional[str] = None

    def record(self, outcome: ApplyOutcome) -> None:
        """Count one applied evidence item."""
        if outcome.action == ApplyAction.DUPLICATE:
            self.already_processed += 1
            return
        self.processed += 1
        if outcome.action == ApplyAction.CREATED:
            self.created += 1
        elif outcome.action in (ApplyAction.UPDATED, ApplyAction.REACTIVATED):
            self.updated += 1
        elif outcome.action == ApplyAction.CANCELLED:
            self.cancelled += 1
        elif outcome.action == ApplyAction.STALE:
            self.stale += 1
