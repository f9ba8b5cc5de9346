"""
AuditLogger - Provenance logging for automated HR record changes.

Every record the automation engine creates or updates (employees, offers,
work-email corrections) is written to the audit trail tagged with the
triggering subject, so an operator can answer "why does this record exist
and which automation touched it".

Usage:
    from app.infrastructure.audit import audit_logger

    await audit_logger.log_automation_event(
        action="EMPLOYEE_CREATED",
        resource_type="employee",
        resource_id=employee.id,
        source="hire_flow",
        candidate_id=candidate.id,
    )

Design Principles:
- Write to both database (immutable) and structured logs (searchable)
- Never fail the automation if audit logging fails
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from psycopg.types.json import Jsonb

from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SYSTEM_ACTOR = "system"


class AuditLogger:
    """
    Centralized audit logging service.

    Logs automated record changes to:
    1. Database (audit_logs table) - Immutable, queryable
    2. Structured logs (stdout) - Real-time monitoring
    """

    @staticmethod
    async def log(
        action: str,
        resource_type: str,
        resource_id: str | UUID | None = None,
        actor_id: str | None = None,
        actor_type: str = SYSTEM_ACTOR,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """
        Log an audit event to database and structured logs.

        Args:
            action: Action name (e.g., "EMPLOYEE_CREATED", "WORK_EMAIL_SYNCED")
            resource_type: Type of resource (e.g., "employee", "offer")
            resource_id: Specific resource ID
            actor_id: User who caused the change, None for automation
            actor_type: "system" for automation, "user" for operators
            metadata: Additional context (JSON-serializable dict)

        Returns:
            True if logged successfully, False if failed (never raises)
        """
        if isinstance(resource_id, UUID):
            resource_id = str(resource_id)

        logger.info(
            "Audit event",
            audit_action=action,
            actor_type=actor_type,
            actor_id=actor_id,
            resource_type=resource_type,
            resource_id=resource_id,
            metadata=metadata,
        )

        try:
            async with db_pool.connection() as conn:
                await conn.execute(
                    """
                    INSERT INTO audit_logs (
                        actor_id, actor_type, action, resource_type,
                        resource_id, metadata, created_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        actor_id,
                        actor_type,
                        action,
                        resource_type,
                        resource_id,
                        Jsonb(metadata or {}),
                        datetime.now(UTC),
                    ),
                )

            return True

        except Exception as e:
            # Never fail the automation because of the audit trail, but keep
            # enough context to recreate the entry by hand.
            logger.error(
                "CRITICAL: Failed to write audit log to database",
                error=str(e),
                error_type=type(e).__name__,
                fallback_data={
                    "actor_id": actor_id,
                    "actor_type": actor_type,
                    "action": action,
                    "resource_type": resource_type,
                    "resource_id": resource_id,
                    "metadata": metadata,
                    "timestamp": datetime.now(UTC).isoformat(),
                },
            )
            return False

    @staticmethod
    async def log_automation_event(
        action: str,
        resource_type: str,
        resource_id: str | UUID,
        source: str,
        candidate_id: str | None = None,
        **extra: Any,
    ) -> bool:
        """
        Log a change made by an automation component.

        Args:
            action: Action name
            resource_type: Type of resource changed
            resource_id: ID of the changed resource
            source: Component that made the change (e.g., "hire_flow")
            candidate_id: Triggering candidate, recorded for provenance
            **extra: Additional metadata fields

        Returns:
            True if logged successfully
        """
        metadata = {"source": source, **extra}
        if candidate_id:
            metadata["candidateId"] = candidate_id

        return await AuditLogger.log(
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            metadata=metadata,
        )


# Global singleton instance
audit_logger = AuditLogger()
