"""
Audit Models for the Subscription Tracker

Every evidence item that reaches the reconciliation engine leaves a trail:
1. What was applied, and to which subscription
2. What was discarded as a duplicate or as stale
3. What the user decided about a potential subscription
4. Which batches ran and how they ended

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Every outcome of the event processor has its own event type.
    """
    # Evidence outcomes
    EVIDENCE_APPLIED = "evidence_applied"
    EVIDENCE_DUPLICATE = "evidence_duplicate"
    EVIDENCE_STALE = "evidence_stale"
    EVIDENCE_SKIPPED = "evidence_skipped"
    EVIDENCE_FAILED = "evidence_failed"

    # Subscription lifecycle
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_REACTIVATED = "subscription_reactivated"

    # Transaction path
    TRANSACTION_ANALYZED = "transaction_analyzed"
    STATEMENT_ANALYZED = "statement_analyzed"

    # User decisions
    POTENTIAL_CONFIRMED = "potential_confirmed"
    POTENTIAL_REJECTED = "potential_rejected"
    EMAIL_SUBSCRIPTION_CONFIRMED = "email_subscription_confirmed"

    # Batches
    BATCH_STARTED = "batch_started"
    BATCH_COMPLETED = "batch_completed"
    AUTH_REFRESHED = "auth_refreshed"
    AUTH_EXPIRED = "auth_expired"
    RENEWAL_ALERT_SENT = "renewal_alert_sent"

    # System events
    SYSTEM_ERROR = "system_error"
    EXTERNAL_SERVICE_ERROR = "external_service_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    entity_id is a string because evidence is keyed by its namespaced
    source id ("email:<id>", "txn:<id>") while subscriptions use UUIDs.
    """

    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=datetime.utcnow,
        description="When the event occurred (UTC)"
    )

    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    user_id: Optional[str] = Field(
        default=None,
        description="User the event belongs to"
    )
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'subscription', 'evidence', 'potential')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events in one batch)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    error_code: Optional[str] = None
    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "user_id": self.user_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }

    def to_sheets_row(self) -> list:
        """
        Convert to a row suitable for Google Sheets storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, user_id, entity_type,
         entity_id, correlation_id, description, details_json,
         error_message, is_user_action]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.user_id or "",
            self.entity_type or "",
            self.entity_id or "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details, default=str) if self.details else "",
            self.error_message or "",
            str(self.is_user_action),
        ]


_LIFECYCLE_EVENTS = {
    "created": AuditEventType.SUBSCRIPTION_CREATED,
    "updated": AuditEventType.SUBSCRIPTION_UPDATED,
    "cancelled": AuditEventType.SUBSCRIPTION_CANCELLED,
    "reactivated": AuditEventType.SUBSCRIPTION_REACTIVATED,
}


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.evidence_applied(user_id, source_id, ...)
        event = AuditEventBuilder.potential_confirmed(user_id, potential_id, ...)
    """

    @staticmethod
    def evidence_applied(
        user_id: str,
        source_id: str,
        event_type: str,
        subscription_id: UUID,
        company_name: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EVIDENCE_APPLIED,
            user_id=user_id,
            entity_type="evidence",
            entity_id=source_id,
            correlation_id=correlation_id,
            description=f"Applied {event_type} event for {company_name}",
            details={
                "event_type": event_type,
                "subscription_id": str(subscription_id),
            },
        )

    @staticmethod
    def subscription_changed(
        user_id: str,
        action: str,
        subscription_id: UUID,
        company_name: str,
        status: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=_LIFECYCLE_EVENTS.get(action, AuditEventType.SUBSCRIPTION_UPDATED),
            user_id=user_id,
            entity_type="subscription",
            entity_id=str(subscription_id),
            correlation_id=correlation_id,
            description=f"Subscription {action}: {company_name}",
            details={
                "company_name": company_name,
                "status": status,
            },
        )

    @staticmethod
    def evidence_duplicate(
        user_id: str,
        source_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EVIDENCE_DUPLICATE,
            severity=AuditSeverity.DEBUG,
            user_id=user_id,
            entity_type="evidence",
            entity_id=source_id,
            correlation_id=correlation_id,
            description="Evidence already processed, ignoring",
        )

    @staticmethod
    def evidence_stale(
        user_id: str,
        source_id: str,
        event_type: str,
        source_date: datetime,
        last_applied_event_date: Optional[datetime],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EVIDENCE_STALE,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            entity_type="evidence",
            entity_id=source_id,
            correlation_id=correlation_id,
            description=f"Stale {event_type} event discarded",
            details={
                "event_type": event_type,
                "source_date": source_date.isoformat(),
                "last_applied_event_date": (
                    last_applied_event_date.isoformat() if last_applied_event_date else None
                ),
            },
        )

    @staticmethod
    def evidence_skipped(
        user_id: str,
        source_id: Optional[str],
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EVIDENCE_SKIPPED,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            entity_type="evidence",
            entity_id=source_id,
            correlation_id=correlation_id,
            description="Evidence skipped",
            details={"reason": reason},
        )

    @staticmethod
    def evidence_failed(
        user_id: str,
        source_id: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EVIDENCE_FAILED,
            severity=AuditSeverity.ERROR,
            user_id=user_id,
            entity_type="evidence",
            entity_id=source_id,
            correlation_id=correlation_id,
            description="Evidence processing failed",
            error_message=error_message,
        )

    @staticmethod
    def transaction_analyzed(
        user_id: str,
        transaction_id: str,
        merchant_name: str,
        confidence: str,
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_ANALYZED,
            user_id=user_id,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description=f"Transaction from {merchant_name} classified as {confidence}",
            details={
                "merchant_name": merchant_name,
                "confidence": confidence,
                "reason": reason,
            },
        )

    @staticmethod
    def statement_analyzed(
        user_id: str,
        statement_id: str,
        charge_count: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.STATEMENT_ANALYZED,
            user_id=user_id,
            entity_type="statement",
            entity_id=statement_id,
            correlation_id=correlation_id,
            description=f"Statement analyzed: {charge_count} recurring charges found",
            details={"charge_count": charge_count},
            is_user_action=True,
        )

    @staticmethod
    def potential_decided(
        user_id: str,
        potential_id: UUID,
        confirmed: bool,
        reason: Optional[str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=(
                AuditEventType.POTENTIAL_CONFIRMED
                if confirmed
                else AuditEventType.POTENTIAL_REJECTED
            ),
            user_id=user_id,
            entity_type="potential",
            entity_id=str(potential_id),
            correlation_id=correlation_id,
            description=(
                "User confirmed potential subscription"
                if confirmed
                else "User rejected potential subscription"
            ),
            details={"reason": reason or "No reason provided"},
            is_user_action=True,
        )

    @staticmethod
    def email_subscription_confirmed(
        user_id: str,
        email_id: str,
        subscription_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EMAIL_SUBSCRIPTION_CONFIRMED,
            user_id=user_id,
            entity_type="subscription",
            entity_id=str(subscription_id),
            correlation_id=correlation_id,
            description="User confirmed email-only subscription",
            details={"email_id": email_id},
            is_user_action=True,
        )

    @staticmethod
    def batch_started(
        user_id: str,
        batch: str,
        item_count: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BATCH_STARTED,
            user_id=user_id,
            entity_type="batch",
            correlation_id=correlation_id,
            description=f"{batch} batch started with {item_count} items",
            details={"batch": batch, "item_count": item_count},
        )

    @staticmethod
    def batch_completed(
        user_id: str,
        batch: str,
        summary: dict,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        failed = bool(summary.get("error"))
        return AuditEvent(
            event_type=AuditEventType.BATCH_COMPLETED,
            severity=AuditSeverity.WARNING if failed else AuditSeverity.INFO,
            user_id=user_id,
            entity_type="batch",
            correlation_id=correlation_id,
            description=f"{batch} batch completed",
            details={"batch": batch, **summary},
        )

    @staticmethod
    def auth_event(
        user_id: str,
        service: str,
        refreshed: bool,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=(
                AuditEventType.AUTH_REFRESHED if refreshed else AuditEventType.AUTH_EXPIRED
            ),
            severity=AuditSeverity.INFO if refreshed else AuditSeverity.ERROR,
            user_id=user_id,
            entity_type="credentials",
            entity_id=service,
            correlation_id=correlation_id,
            description=(
                f"Credentials refreshed for {service}"
                if refreshed
                else f"Credentials expired for {service}, batch aborted"
            ),
        )

    @staticmethod
    def renewal_alert_sent(
        user_id: str,
        subscription_id: UUID,
        company_name: str,
        days_until_renewal: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RENEWAL_ALERT_SENT,
            user_id=user_id,
            entity_type="subscription",
            entity_id=str(subscription_id),
            correlation_id=correlation_id,
            description=f"Renewal alert sent for {company_name}",
            details={"days_until_renewal": days_until_renewal},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )

    @staticmethod
    def external_service_error(
        service: str,
        error_message: str,
        user_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTERNAL_SERVICE_ERROR,
            severity=AuditSeverity.ERROR,
            user_id=user_id,
            description=f"External service error: {service}",
            error_message=error_message,
            details={
                "service": service,
            },
            correlation_id=correlation_id,
        )
