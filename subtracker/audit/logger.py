"""
Audit Logger

DESIGN DECISION: Every outcome of the reconciliation engine is logged.
This provides:
1. Complete traceability of why a subscription looks the way it does
2. Debugging capability for out-of-order and duplicate evidence
3. User can see history of their decisions

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (doesn't crash the engine if logging fails)
- Supports correlation IDs to trace all events of one batch run
"""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

import structlog

from subtracker.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from subtracker.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage (for persistence and user visibility)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger(__name__)

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        elif event.severity == AuditSeverity.DEBUG:
            self._logger.debug("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_evidence_applied(
        self,
        user_id: str,
        source_id: str,
        event_type: str,
        action: str,
        subscription_id: UUID,
        company_name: str,
        status: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an applied evidence item and the lifecycle change it caused."""
        await self.log(AuditEventBuilder.evidence_applied(
            user_id=user_id,
            source_id=source_id,
            event_type=event_type,
            subscription_id=subscription_id,
            company_name=company_name,
            correlation_id=correlation_id,
        ))
        await self.log(AuditEventBuilder.subscription_changed(
            user_id=user_id,
            action=action,
            subscription_id=subscription_id,
            company_name=company_name,
            status=status,
            correlation_id=correlation_id,
        ))

    async def log_evidence_duplicate(
        self,
        user_id: str,
        source_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.evidence_duplicate(
            user_id=user_id,
            source_id=source_id,
            correlation_id=correlation_id,
        ))

    async def log_evidence_stale(
        self,
        user_id: str,
        source_id: str,
        event_type: str,
        source_date: datetime,
        last_applied_event_date: Optional[datetime],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a discarded out-of-order event."""
        await self.log(AuditEventBuilder.evidence_stale(
            user_id=user_id,
            source_id=source_id,
            event_type=event_type,
            source_date=source_date,
            last_applied_event_date=last_applied_event_date,
            correlation_id=correlation_id,
        ))

    async def log_evidence_skipped(
        self,
        user_id: str,
        source_id: Optional[str],
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.evidence_skipped(
            user_id=user_id,
            source_id=source_id,
            reason=reason,
            correlation_id=correlation_id,
        ))

    async def log_evidence_failed(
        self,
        user_id: str,
        source_id: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.evidence_failed(
            user_id=user_id,
            source_id=source_id,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_transaction_analyzed(
        self,
        user_id: str,
        transaction_id: str,
        merchant_name: str,
        confidence: str,
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.transaction_analyzed(
            user_id=user_id,
            transaction_id=transaction_id,
            merchant_name=merchant_name,
            confidence=confidence,
            reason=reason,
            correlation_id=correlation_id,
        ))

    async def log_statement_analyzed(
        self,
        user_id: str,
        statement_id: str,
        charge_count: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.statement_analyzed(
            user_id=user_id,
            statement_id=statement_id,
            charge_count=charge_count,
            correlation_id=correlation_id,
        ))

    async def log_potential_decided(
        self,
        user_id: str,
        potential_id: UUID,
        confirmed: bool,
        reason: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log user confirmation or rejection of a potential subscription."""
        await self.log(AuditEventBuilder.potential_decided(
            user_id=user_id,
            potential_id=potential_id,
            confirmed=confirmed,
            reason=reason,
            correlation_id=correlation_id,
        ))

    async def log_email_subscription_confirmed(
        self,
        user_id: str,
        email_id: str,
        subscription_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.email_subscription_confirmed(
            user_id=user_id,
            email_id=email_id,
            subscription_id=subscription_id,
            correlation_id=correlation_id,
        ))

    async def log_batch_started(
        self,
        user_id: str,
        batch: str,
        item_count: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.batch_started(
            user_id=user_id,
            batch=batch,
            item_count=item_count,
            correlation_id=correlation_id,
        ))

    async def log_batch_completed(
        self,
        user_id: str,
        batch: str,
        summary: dict,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.batch_completed(
            user_id=user_id,
            batch=batch,
            summary=summary,
            correlation_id=correlation_id,
        ))

    async def log_auth(
        self,
        user_id: str,
        service: str,
        refreshed: bool,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a credential refresh, or a terminal credential failure."""
        await self.log(AuditEventBuilder.auth_event(
            user_id=user_id,
            service=service,
            refreshed=refreshed,
            correlation_id=correlation_id,
        ))

    async def log_renewal_alert_sent(
        self,
        user_id: str,
        subscription_id: UUID,
        company_name: str,
        days_until_renewal: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.renewal_alert_sent(
            user_id=user_id,
            subscription_id=subscription_id,
            company_name=company_name,
            days_until_renewal=days_until_renewal,
            correlation_id=correlation_id,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))

    async def log_external_service_error(
        self,
        service: str,
        error_message: str,
        user_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log external service error."""
        await self.log(AuditEventBuilder.external_service_error(
            service=service,
            error_message=error_message,
            user_id=user_id,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a batch run or user action.
    Pass it through all subsequent operations.
    """
    return uuid4()
