"""
Reminder and escalation scheduler.

Both sweeps work on REMINDER actions. The reminder sweep sends follow-ups
that came due; the escalation sweep notifies the owning recruiter when a
sent reminder still has no reply after the escalation window. A reply seen
on the thread always wins: it cancels a pending reminder and suppresses the
escalation of a sent one.
"""

from collections.abc import Callable
from datetime import datetime, timedelta

from app.config import settings
from app.db.helpers import DatabaseError
from app.features.automation.domain import (
    ActionKind,
    AutomationError,
    CreateResult,
    EmailTemplate,
    NewQueuedAction,
    OutboundEmail,
    QueuedAction,
    SentEmail,
    TransportError,
)
from app.features.automation.services.collaborators import (
    CandidateSource,
    EmailTransport,
    TemplateService,
    build_email_variables,
    utcnow,
)
from app.features.automation.services.metrics import SweepMetrics
from app.infrastructure.observability.logging import get_logger
from app.jobs.queue import Job

logger = get_logger(__name__)

REMINDER_JOB = "reminder-processor"
ESCALATION_JOB = "escalation-processor"

ESCALATION_ACTOR_NAME = "Email Automation"
ESCALATION_ACTOR_EMAIL = "system@curacel.ai"


class ReminderScheduler:
    def __init__(
        self,
        actions,
        correspondence,
        candidates: CandidateSource,
        templates: TemplateService,
        transport: EmailTransport,
        clock: Callable[[], datetime] = utcnow,
        batch_size: int | None = None,
        escalation_hours: int | None = None,
    ):
        self.actions = actions
        self.correspondence = correspondence
        self.candidates = candidates
        self.templates = templates
        self.transport = transport
        self.clock = clock
        self.batch_size = batch_size or settings.SWEEP_BATCH_SIZE
        self.escalation_hours = escalation_hours or settings.ESCALATION_AFTER_HOURS

    async def schedule_follow_up(
        self, stage_action: QueuedAction, sent_email_id: str, delay_hours: int
    ) -> CreateResult:
        """Record a REMINDER that follows up on a sent stage email."""

        created = await self.actions.create(
            NewQueuedAction(
                subject_id=stage_action.subject_id,
                kind=ActionKind.REMINDER,
                scheduled_for=self.clock() + timedelta(hours=delay_hours),
                from_state=stage_action.from_state,
                to_state=stage_action.to_state,
                owner_id=stage_action.owner_id,
                owner_email=stage_action.owner_email,
                owner_name=stage_action.owner_name,
                parent_result_ref=sent_email_id,
                escalate_after_hours=self.escalation_hours,
            )
        )
        logger.info(
            "Follow-up reminder scheduled",
            reminder_id=created.action_id,
            email_id=sent_email_id,
            delay_hours=delay_hours,
            duplicate=created.duplicate,
        )
        return created

    # ------------------------------------------------------------------
    # Reminder sweep
    # ------------------------------------------------------------------

    async def run_reminder_sweep(self, job: Job | None = None) -> dict:
        metrics = SweepMetrics("reminders")
        due = await self.actions.list_due_reminders(self.clock(), self.batch_size)

        template = None
        if due:
            template = await self.templates.resolve_reminder_template()
            if template is None:
                logger.warning("No reminder template configured, leaving reminders pending", due=len(due))

        for reminder in due:
            metrics.increment("processed")
            try:
                metrics.increment(await self._process_reminder(reminder, template))
            except Exception as exc:
                metrics.record_failure(reminder.id, exc)

        metrics.finalize()
        return metrics.to_dict()

    async def _process_reminder(self, reminder: QueuedAction, template: EmailTemplate | None) -> str:
        parent = await self._load_parent(reminder)
        if parent is None:
            claim = await self.actions.claim(reminder.id)
            if claim.claimed:
                await self.actions.fail(reminder.id, f"Original email {reminder.parent_result_ref} not found")
            return "failed"

        if await self.correspondence.has_inbound_reply(parent.thread_id, parent.sent_at):
            cancelled = await self.actions.cancel(reminder.id)
            logger.info("Candidate replied, reminder cancelled", reminder_id=reminder.id, cancelled=cancelled)
            return "cancelled" if cancelled else "skipped"

        if template is None:
            return "skipped"

        claim = await self.actions.claim(reminder.id)
        if not claim.claimed:
            return "skipped"

        action = claim.action
        try:
            result = await self._send_reminder(action, parent, template)
        except Exception as exc:
            await self._record_failure(action, exc)
            raise

        await self.actions.complete(action.id, result.email_id)
        logger.info("Reminder sent", reminder_id=action.id, email_id=result.email_id)
        return "sent"

    async def _load_parent(self, reminder: QueuedAction) -> SentEmail | None:
        if not reminder.parent_result_ref:
            return None
        return await self.correspondence.load_sent_email(reminder.parent_result_ref)

    async def _send_reminder(self, action: QueuedAction, parent: SentEmail, template: EmailTemplate):
        candidate = await self.candidates.load_candidate(action.subject_id)
        if candidate is None:
            raise AutomationError(
                f"Candidate {action.subject_id} not found", operation="load_candidate", retryable=False
            )

        sender_email = parent.from_email or action.owner_email
        sender_name = parent.from_name or action.owner_name
        content = self.templates.render(template, build_email_variables(candidate, sender_name, sender_email))

        result = await self.transport.send(
            OutboundEmail(
                to=candidate.email,
                subject=f"Re: {parent.subject or ''}".rstrip(),
                html_body=content.html_body,
                text_body=content.text_body,
                candidate_id=candidate.id,
                from_email=sender_email,
                from_name=sender_name,
                sender_id=action.owner_id,
                template_id=template.id,
                reply_to_id=parent.id,
            )
        )
        if not result.success:
            raise TransportError(result.error or "Failed to send reminder")
        return result

    async def _record_failure(self, action: QueuedAction, exc: Exception) -> None:
        error = str(exc) or type(exc).__name__
        try:
            await self.actions.fail(action.id, error)
        except DatabaseError as db_error:
            logger.error("Could not record reminder failure", reminder_id=action.id, error=str(db_error))
        logger.warning(
            "Reminder delivery failed",
            reminder_id=action.id,
            error=error,
            error_type=type(exc).__name__,
            retryable=getattr(exc, "retryable", True),
        )

    # ------------------------------------------------------------------
    # Escalation sweep
    # ------------------------------------------------------------------

    async def run_escalation_sweep(self, job: Job | None = None) -> dict:
        metrics = SweepMetrics("escalations")
        candidates = await self.actions.list_escalation_candidates(
            self.clock(), self.escalation_hours, self.batch_size
        )

        for reminder in candidates:
            metrics.increment("processed")
            try:
                metrics.increment(await self._process_escalation(reminder))
            except Exception as exc:
                metrics.record_failure(reminder.id, exc)

        metrics.finalize()
        return metrics.to_dict()

    async def _process_escalation(self, reminder: QueuedAction) -> str:
        parent = await self._load_parent(reminder)
        if parent is not None and await self.correspondence.has_inbound_reply(
            parent.thread_id, reminder.processed_at
        ):
            marked = await self.actions.mark_reply_detected(reminder.id)
            logger.info("Candidate replied, escalation suppressed", reminder_id=reminder.id)
            return "cancelled" if marked else "skipped"

        recipient = await self.correspondence.resolve_recruiter_user(reminder.owner_id)
        if recipient is None:
            logger.warning(
                "No recruiter user to notify, escalating without notification",
                reminder_id=reminder.id,
                owner_id=reminder.owner_id,
            )

        escalation_id = await self.actions.record_escalation(
            reminder, recipient, ESCALATION_ACTOR_NAME, ESCALATION_ACTOR_EMAIL
        )
        return "escalated" if escalation_id else "skipped"

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def stats(self) -> dict:
        counts = await self.actions.status_counts()
        reminders = counts.get(ActionKind.REMINDER.value, {})
        return {
            "pending": reminders.get("PENDING", 0),
            "sent": reminders.get("SENT", 0),
            "cancelled": reminders.get("CANCELLED", 0),
            "failed": reminders.get("FAILED", 0),
            "escalated": reminders.get("escalated", 0),
            "awaiting_escalation": reminders.get("awaiting_escalation", 0),
            "replied": reminders.get("replied", 0),
        }
