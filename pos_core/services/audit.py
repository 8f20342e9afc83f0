"""
Activity log emitter.

Records every state transition and significant action for audit. Records go to
the injected AuditSink and are mirrored to the audit logger.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pos_core.models import AuditRecord, SessionContext
from pos_core.ports import AuditSink, TransactionalStore, unwrap
from shared.config.constants import Collections
from shared.config.logging import audit_logger, get_logger
from shared.utils.exceptions import ExternalFailure

logger = get_logger(__name__)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class ActivityLog:
    """
    Builds audit records from a session context and hands them to the sink.

    A sink failure never undoes the transition that produced the record: the
    record is still written to the audit logger and the error is logged.
    """

    def __init__(self, sink: AuditSink):
        self._sink = sink

    async def log_transition(
        self,
        ctx: SessionContext,
        *,
        action: str,
        resource_type: str,
        resource_id: str,
        from_status: str,
        to_status: str,
        **details: Any,
    ) -> AuditRecord:
        """Log one status transition. Exactly one record per successful transition."""
        return await self.log_action(
            ctx,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            **{"from": from_status, "to": to_status},
            **details,
        )

    async def log_action(
        self,
        ctx: SessionContext,
        *,
        action: str,
        resource_type: str,
        resource_id: str,
        **details: Any,
    ) -> AuditRecord:
        record = AuditRecord(
            actor=ctx.actor_id,
            branch=ctx.branch_id,
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id),
            details={k: _jsonable(v) for k, v in details.items()},
        )

        audit_logger.info(
            f"AUDIT: {action}",
            actor=record.actor,
            branch=record.branch,
            resource_type=record.resource_type,
            resource_id=record.resource_id,
            **record.details,
        )

        try:
            await self._sink.append(record)
        except ExternalFailure:
            logger.error(
                "Audit sink rejected record",
                action=action,
                resource_type=resource_type,
                resource_id=record.resource_id,
                exc_info=True,
            )
        return record


class StoreAuditSink:
    """Writes audit records to the store's activity_logs collection."""

    def __init__(self, store: TransactionalStore):
        self._store = store

    async def append(self, record: AuditRecord) -> None:
        result = await self._store.insert(
            Collections.ACTIVITY_LOGS,
            {
                "user_id": record.actor,
                "branch_id": record.branch,
                "action": record.action,
                "resource_type": record.resource_type,
                "resource_id": record.resource_id,
                "details": record.details,
                "created_at": record.timestamp.isoformat(),
            },
        )
        unwrap(result, "insert", Collections.ACTIVITY_LOGS, action=record.action)
