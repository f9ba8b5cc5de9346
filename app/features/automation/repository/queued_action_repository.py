"""
Persistence layer for queued automation actions.

Every state transition is a single conditional UPDATE ... RETURNING, so the
row's current status is checked and changed in one statement. claim() is
the linearization point: of any number of concurrent deliveries for the
same action, exactly one sees a row come back.
"""

from datetime import datetime

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, with_db_retry
from app.db.pool import get_db_transaction
from app.features.automation.domain import (
    ActionKind,
    ActionStatus,
    ClaimOutcome,
    ClaimResult,
    CreateResult,
    NewQueuedAction,
    QueuedAction,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_ERROR_LENGTH = 500

# Column that identifies "the same logical trigger" per action kind
_DEDUP_COLUMNS = {
    ActionKind.STAGE_EMAIL: "to_state",
    ActionKind.REMINDER: "parent_result_ref",
}


class QueuedActionRepositoryError(DatabaseError):
    """More specific exception for queued action persistence failures."""


class QueuedActionRepository:
    """Durable store and state machine for QueuedAction rows."""

    SELECT_COLUMNS = """
        id, subject_id, kind, from_state, to_state, scheduled_for, status,
        skip_requested, template_id, owner_id, owner_email, owner_name,
        result_ref, error, attempts, job_id, parent_result_ref,
        escalate_after_hours, escalated_at, escalated_to, reply_detected_at,
        created_at, processed_at
    """

    @classmethod
    def _row_to_action(cls, row: dict | None) -> QueuedAction | None:
        if not row:
            return None

        def _opt_str(value):
            return str(value) if value is not None else None

        return QueuedAction(
            id=str(row["id"]),
            subject_id=str(row["subject_id"]),
            kind=ActionKind(row["kind"]),
            status=ActionStatus(row["status"]),
            scheduled_for=row["scheduled_for"],
            from_state=row.get("from_state"),
            to_state=row.get("to_state"),
            skip_requested=bool(row.get("skip_requested")),
            template_id=_opt_str(row.get("template_id")),
            owner_id=_opt_str(row.get("owner_id")),
            owner_email=row.get("owner_email"),
            owner_name=row.get("owner_name"),
            result_ref=row.get("result_ref"),
            error=row.get("error"),
            attempts=row.get("attempts") or 0,
            job_id=row.get("job_id"),
            parent_result_ref=row.get("parent_result_ref"),
            escalate_after_hours=row.get("escalate_after_hours"),
            escalated_at=row.get("escalated_at"),
            escalated_to=_opt_str(row.get("escalated_to")),
            reply_detected_at=row.get("reply_detected_at"),
            created_at=row.get("created_at"),
            processed_at=row.get("processed_at"),
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    @classmethod
    async def create(cls, action: NewQueuedAction) -> CreateResult:
        """
        Record a new action.

        For PENDING actions an open (PENDING/PROCESSING) action for the same
        logical trigger is looked up first; if one exists its id is returned
        with duplicate=True and nothing is inserted. CANCELLED records are
        audit entries and are always inserted.
        """

        values = (
            action.subject_id,
            action.kind.value,
            action.from_state,
            action.to_state,
            action.scheduled_for,
            action.status.value,
            action.skip_requested,
            action.template_id,
            action.owner_id,
            action.owner_email,
            action.owner_name,
            action.parent_result_ref,
            action.escalate_after_hours,
        )
        insert_columns = """
            subject_id, kind, from_state, to_state, scheduled_for, status,
            skip_requested, template_id, owner_id, owner_email, owner_name,
            parent_result_ref, escalate_after_hours, processed_at
        """
        processed_at_sql = "NOW()" if action.status.is_terminal else "NULL"

        dedup_column = _DEDUP_COLUMNS.get(action.kind)
        if action.status.is_terminal or dedup_column is None:
            query = f"""
                INSERT INTO queued_actions ({insert_columns})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, {processed_at_sql})
                RETURNING id
            """
            row = await fetch_one(query, values)
            if not row:
                raise QueuedActionRepositoryError("Failed to create queued action", operation="create")
            return CreateResult(action_id=str(row["id"]))

        dedup_value = getattr(action, dedup_column)
        query = f"""
            INSERT INTO queued_actions ({insert_columns})
            SELECT %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, NULL
            WHERE NOT EXISTS (
                SELECT 1 FROM queued_actions
                WHERE subject_id = %s
                  AND kind = %s
                  AND status IN ('PENDING', 'PROCESSING')
                  AND {dedup_column} IS NOT DISTINCT FROM %s
            )
            RETURNING id
        """
        row = await fetch_one(
            query, values + (action.subject_id, action.kind.value, dedup_value)
        )
        if row:
            logger.info(
                "Queued action created",
                action_id=str(row["id"]),
                subject_id=action.subject_id,
                kind=action.kind.value,
                to_state=action.to_state,
            )
            return CreateResult(action_id=str(row["id"]))

        existing_query = f"""
            SELECT id FROM queued_actions
            WHERE subject_id = %s
              AND kind = %s
              AND status IN ('PENDING', 'PROCESSING')
              AND {dedup_column} IS NOT DISTINCT FROM %s
            ORDER BY created_at DESC
            LIMIT 1
        """
        existing = await fetch_one(existing_query, (action.subject_id, action.kind.value, dedup_value))
        if not existing:
            # The open action finished between the two statements
            raise QueuedActionRepositoryError(
                "Open queued action disappeared during create", operation="create"
            )

        logger.info(
            "Equivalent queued action already open",
            action_id=str(existing["id"]),
            subject_id=action.subject_id,
            kind=action.kind.value,
        )
        return CreateResult(action_id=str(existing["id"]), duplicate=True)

    @classmethod
    async def attach_job(cls, action_id: str, job_id: str | None) -> None:
        await execute_query("UPDATE queued_actions SET job_id = %s WHERE id = %s", (job_id, action_id))

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    @classmethod
    async def load(cls, action_id: str) -> QueuedAction | None:
        query = f"SELECT {cls.SELECT_COLUMNS} FROM queued_actions WHERE id = %s"
        return cls._row_to_action(await fetch_one(query, (action_id,)))

    @classmethod
    async def claim(cls, action_id: str) -> ClaimResult:
        """
        Atomically move PENDING -> PROCESSING.

        An operator skip request turns the claim into a cancellation so no
        side effect can follow.
        """

        claim_query = f"""
            UPDATE queued_actions
            SET status = 'PROCESSING',
                attempts = attempts + 1
            WHERE id = %s
              AND status = 'PENDING'
              AND skip_requested = FALSE
            RETURNING {cls.SELECT_COLUMNS}
        """
        row = await fetch_one(claim_query, (action_id,))
        if row:
            return ClaimResult(ClaimOutcome.CLAIMED, cls._row_to_action(row))

        skip_query = f"""
            UPDATE queued_actions
            SET status = 'CANCELLED',
                processed_at = NOW()
            WHERE id = %s
              AND status = 'PENDING'
              AND skip_requested = TRUE
            RETURNING {cls.SELECT_COLUMNS}
        """
        row = await fetch_one(skip_query, (action_id,))
        if row:
            logger.info("Queued action skipped by operator", action_id=action_id)
            return ClaimResult(ClaimOutcome.SKIPPED, cls._row_to_action(row))

        action = await cls.load(action_id)
        if action is None:
            return ClaimResult(ClaimOutcome.NOT_FOUND)
        if action.status is ActionStatus.PROCESSING:
            return ClaimResult(ClaimOutcome.IN_PROGRESS, action)
        return ClaimResult(ClaimOutcome.ALREADY_TERMINAL, action)

    @classmethod
    @with_db_retry(max_retries=3)
    async def complete(cls, action_id: str, result_ref: str | None) -> bool:
        query = """
            UPDATE queued_actions
            SET status = 'SENT',
                result_ref = %s,
                error = NULL,
                processed_at = NOW()
            WHERE id = %s AND status = 'PROCESSING'
        """
        updated = await execute_query(query, (result_ref, action_id)) > 0
        if updated:
            logger.info("Queued action sent", action_id=action_id, result_ref=result_ref)
        else:
            logger.warning("Queued action was not PROCESSING on complete", action_id=action_id)
        return updated

    @classmethod
    @with_db_retry(max_retries=3)
    async def fail(cls, action_id: str, error: str) -> bool:
        truncated_error = (error or "")[:MAX_ERROR_LENGTH]
        query = """
            UPDATE queued_actions
            SET status = 'FAILED',
                error = %s,
                processed_at = NOW()
            WHERE id = %s AND status = 'PROCESSING'
        """
        updated = await execute_query(query, (truncated_error, action_id)) > 0
        if updated:
            logger.warning("Queued action failed", action_id=action_id, error=truncated_error)
        return updated

    @classmethod
    async def cancel(cls, action_id: str) -> bool:
        query = """
            UPDATE queued_actions
            SET status = 'CANCELLED',
                processed_at = NOW()
            WHERE id = %s AND status = 'PENDING'
        """
        updated = await execute_query(query, (action_id,)) > 0
        if updated:
            logger.info("Queued action cancelled", action_id=action_id)
        return updated

    @classmethod
    async def request_skip(cls, action_id: str) -> bool:
        query = """
            UPDATE queued_actions
            SET skip_requested = TRUE
            WHERE id = %s AND status = 'PENDING'
        """
        return await execute_query(query, (action_id,)) > 0

    # ------------------------------------------------------------------
    # Reminder / escalation windows
    # ------------------------------------------------------------------

    @classmethod
    async def list_due_reminders(cls, now: datetime, limit: int) -> list[QueuedAction]:
        query = f"""
            SELECT {cls.SELECT_COLUMNS}
            FROM queued_actions
            WHERE kind = 'REMINDER'
              AND status = 'PENDING'
              AND skip_requested = FALSE
              AND scheduled_for <= %s
            ORDER BY scheduled_for ASC
            LIMIT %s
        """
        rows = await fetch_all(query, (now, limit))
        return [cls._row_to_action(row) for row in rows]

    @classmethod
    async def list_escalation_candidates(
        cls, now: datetime, default_hours: int, limit: int
    ) -> list[QueuedAction]:
        query = f"""
            SELECT {cls.SELECT_COLUMNS}
            FROM queued_actions
            WHERE kind = 'REMINDER'
              AND status = 'SENT'
              AND escalated_at IS NULL
              AND reply_detected_at IS NULL
              AND processed_at <= %s - make_interval(hours => COALESCE(escalate_after_hours, %s))
            ORDER BY processed_at ASC
            LIMIT %s
        """
        rows = await fetch_all(query, (now, default_hours, limit))
        return [cls._row_to_action(row) for row in rows]

    @classmethod
    async def mark_reply_detected(cls, action_id: str) -> bool:
        """Post-hoc cancellation of a sent reminder's escalation."""

        query = """
            UPDATE queued_actions
            SET reply_detected_at = NOW()
            WHERE id = %s
              AND status = 'SENT'
              AND escalated_at IS NULL
              AND reply_detected_at IS NULL
        """
        return await execute_query(query, (action_id,)) > 0

    @classmethod
    async def record_escalation(
        cls,
        reminder: QueuedAction,
        recipient_user_id: str | None,
        actor_name: str,
        actor_email: str,
    ) -> str | None:
        """
        Stamp escalated_at and write the notification plus an ESCALATION
        audit action in one transaction.

        The stamp is conditional on escalated_at IS NULL, so a concurrent
        sweep that loses the race writes nothing. Returns the ESCALATION
        action id, or None when the reminder was already escalated.
        """

        async with await get_db_transaction() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    UPDATE queued_actions
                    SET escalated_at = NOW(),
                        escalated_to = %s
                    WHERE id = %s
                      AND status = 'SENT'
                      AND escalated_at IS NULL
                      AND reply_detected_at IS NULL
                    RETURNING id
                    """,
                    (recipient_user_id, reminder.id),
                )
                if not await cur.fetchone():
                    return None

                notification_id = None
                if recipient_user_id:
                    await cur.execute(
                        """
                        INSERT INTO notifications (
                            user_id, action, resource_type, resource_id,
                            actor_name, actor_email
                        )
                        VALUES (%s, 'ASSISTANT_ACTION', 'candidate', %s, %s, %s)
                        RETURNING id
                        """,
                        (recipient_user_id, reminder.subject_id, actor_name, actor_email),
                    )
                    notification_id = str((await cur.fetchone())["id"])

                await cur.execute(
                    """
                    INSERT INTO queued_actions (
                        subject_id, kind, to_state, scheduled_for, status,
                        owner_id, owner_email, owner_name, parent_result_ref,
                        result_ref, processed_at
                    )
                    VALUES (%s, 'ESCALATION', %s, NOW(), 'SENT', %s, %s, %s, %s, %s, NOW())
                    RETURNING id
                    """,
                    (
                        reminder.subject_id,
                        reminder.to_state,
                        reminder.owner_id,
                        reminder.owner_email,
                        reminder.owner_name,
                        reminder.id,
                        notification_id,
                    ),
                )
                escalation_id = str((await cur.fetchone())["id"])

        logger.info(
            "Reminder escalated",
            reminder_id=reminder.id,
            escalation_id=escalation_id,
            notification_id=notification_id,
            recipient_user_id=recipient_user_id,
        )
        return escalation_id

    # ------------------------------------------------------------------
    # Operational views
    # ------------------------------------------------------------------

    @classmethod
    async def list_pending_for_subject(cls, subject_id: str) -> list[QueuedAction]:
        query = f"""
            SELECT {cls.SELECT_COLUMNS}
            FROM queued_actions
            WHERE subject_id = %s AND status = 'PENDING'
            ORDER BY scheduled_for DESC
        """
        rows = await fetch_all(query, (subject_id,))
        return [cls._row_to_action(row) for row in rows]

    @classmethod
    async def status_counts(cls) -> dict[str, dict[str, int]]:
        """Counts per kind and status, plus escalation counters for reminders."""

        rows = await fetch_all(
            """
            SELECT kind, status, COUNT(*) AS total
            FROM queued_actions
            GROUP BY kind, status
            """
        )
        counts: dict[str, dict[str, int]] = {}
        for row in rows:
            counts.setdefault(row["kind"], {})[row["status"]] = row["total"]

        escalation_row = await fetch_one(
            """
            SELECT
                COUNT(*) FILTER (WHERE escalated_at IS NOT NULL) AS escalated,
                COUNT(*) FILTER (
                    WHERE escalated_at IS NULL AND reply_detected_at IS NULL
                ) AS awaiting_escalation,
                COUNT(*) FILTER (WHERE reply_detected_at IS NOT NULL) AS replied
            FROM queued_actions
            WHERE kind = 'REMINDER' AND status = 'SENT'
            """
        )
        counts.setdefault(ActionKind.REMINDER.value, {}).update(dict(escalation_row or {}))
        return counts


def serialize_action(action: QueuedAction) -> dict:
    """JSON-friendly view of an action for the ops API."""

    return {
        "id": action.id,
        "subject_id": action.subject_id,
        "kind": action.kind.value,
        "status": action.status.value,
        "from_state": action.from_state,
        "to_state": action.to_state,
        "scheduled_for": action.scheduled_for.isoformat() if action.scheduled_for else None,
        "skip_requested": action.skip_requested,
        "attempts": action.attempts,
        "result_ref": action.result_ref,
        "error": action.error,
        "processed_at": action.processed_at.isoformat() if action.processed_at else None,
        "escalated_at": action.escalated_at.isoformat() if action.escalated_at else None,
    }
