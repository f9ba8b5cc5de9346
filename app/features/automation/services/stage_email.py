"""
Stage email dispatcher.

On a pipeline-stage transition it records a STAGE_EMAIL action and asks the
queue to run it after the stage's configured delay. The handler claims the
action before anything else, so a duplicate delivery of the same job finds
the action no longer PENDING and sends nothing.
"""

from collections.abc import Callable
from datetime import datetime, timedelta

from app.config import settings
from app.db.helpers import DatabaseError
from app.features.automation.domain import (
    ActionKind,
    ActionStatus,
    AutomationError,
    Candidate,
    ClaimOutcome,
    DispatchResult,
    EmailTemplate,
    NewQueuedAction,
    NoTemplateConfigured,
    OutboundEmail,
    QueuedAction,
    StageTransition,
    TransportError,
)
from app.features.automation.services.collaborators import (
    CandidateSource,
    EmailTransport,
    TemplateService,
    build_email_variables,
    utcnow,
)
from app.features.automation.services.policy import StagePolicyProvider
from app.infrastructure.observability.logging import get_logger
from app.jobs.queue import Job, JobQueue

logger = get_logger(__name__)

STAGE_EMAIL_JOB = "stage-email-send"
ORPHANED_ERROR = "Orphaned in PROCESSING; delivery outcome unknown"


class StageEmailDispatcher:
    def __init__(
        self,
        actions,
        queue: JobQueue,
        policies: StagePolicyProvider,
        candidates: CandidateSource,
        templates: TemplateService,
        transport: EmailTransport,
        reminders=None,
        clock: Callable[[], datetime] = utcnow,
        retry_limit: int | None = None,
        retry_delay: int | None = None,
    ):
        self.actions = actions
        self.queue = queue
        self.policies = policies
        self.candidates = candidates
        self.templates = templates
        self.transport = transport
        self.reminders = reminders
        self.clock = clock
        self.retry_limit = settings.JOB_RETRY_LIMIT if retry_limit is None else retry_limit
        self.retry_delay = settings.JOB_RETRY_DELAY_SECONDS if retry_delay is None else retry_delay

    # ------------------------------------------------------------------
    # Trigger side
    # ------------------------------------------------------------------

    async def dispatch(self, transition: StageTransition) -> DispatchResult:
        """
        Record the transition's email intent and schedule delivery.

        Disabled policies and operator opt-outs still leave a CANCELLED
        record behind so the audit trail shows the decision.
        """

        now = self.clock()
        policy = await self.policies.for_stage(transition.to_state)
        template_id = transition.template_id or (policy.template_id if policy else None)

        if transition.skip_auto_email or policy is None or not policy.enabled:
            created = await self.actions.create(
                self._new_action(
                    transition,
                    scheduled_for=now,
                    status=ActionStatus.CANCELLED,
                    template_id=template_id,
                )
            )
            logger.info(
                "Stage email not scheduled",
                action_id=created.action_id,
                subject_id=transition.subject_id,
                to_state=transition.to_state,
                reason="operator_skip" if transition.skip_auto_email else "policy_disabled",
            )
            return DispatchResult(action_id=created.action_id)

        scheduled_for = now + timedelta(minutes=policy.delay_minutes)
        created = await self.actions.create(
            self._new_action(transition, scheduled_for=scheduled_for, template_id=template_id)
        )
        if created.duplicate:
            return DispatchResult(action_id=created.action_id, duplicate=True)

        try:
            job_id = await self.queue.enqueue(
                STAGE_EMAIL_JOB,
                {"action_id": created.action_id},
                start_after=scheduled_for if policy.delay_minutes > 0 else None,
                retry_limit=self.retry_limit,
                retry_delay=self.retry_delay,
            )
        except Exception:
            # Without a job nothing would ever claim the action
            await self.actions.cancel(created.action_id)
            raise

        await self.actions.attach_job(created.action_id, job_id)
        logger.info(
            "Stage email scheduled",
            action_id=created.action_id,
            job_id=job_id,
            subject_id=transition.subject_id,
            to_state=transition.to_state,
            scheduled_for=scheduled_for.isoformat(),
        )
        return DispatchResult(action_id=created.action_id, job_id=job_id)

    @staticmethod
    def _new_action(
        transition: StageTransition,
        scheduled_for: datetime,
        status: ActionStatus = ActionStatus.PENDING,
        template_id: str | None = None,
    ) -> NewQueuedAction:
        return NewQueuedAction(
            subject_id=transition.subject_id,
            kind=ActionKind.STAGE_EMAIL,
            scheduled_for=scheduled_for,
            from_state=transition.from_state,
            to_state=transition.to_state,
            status=status,
            skip_requested=transition.skip_auto_email,
            template_id=template_id,
            owner_id=transition.recruiter.id,
            owner_email=transition.recruiter.email,
            owner_name=transition.recruiter.name,
        )

    # ------------------------------------------------------------------
    # Handler side
    # ------------------------------------------------------------------

    async def handle(self, job: Job) -> None:
        action_id = (job.data or {}).get("action_id")
        if not action_id:
            logger.error("Stage email job missing action_id", data=job.data)
            return

        claim = await self.actions.claim(action_id)
        if claim.outcome is ClaimOutcome.IN_PROGRESS:
            await self._settle_orphan(claim.action, job)
            return
        if not claim.claimed:
            logger.info("Stage email not claimed", action_id=action_id, outcome=claim.outcome.value)
            return

        action = claim.action
        try:
            result = await self._send(action)
        except Exception as exc:
            await self._record_failure(action, job, exc)
            raise

        try:
            await self.actions.complete(action.id, result.email_id)
        except DatabaseError as e:
            logger.error(
                "Stage email sent but not recorded",
                action_id=action.id,
                email_id=result.email_id,
                error=str(e),
            )
            raise
        await self._schedule_reminder(action, result.email_id)

    async def _settle_orphan(self, action: QueuedAction, job: Job) -> None:
        """
        A row left in PROCESSING by an earlier delivery (worker crash, or the
        store failing after the send) is held until the job's final attempt,
        then marked FAILED so it surfaces for remediation. It is never resent.
        """

        if not job.is_final_attempt:
            raise AutomationError(
                f"Stage email action {action.id} is still PROCESSING", operation="claim", retryable=True
            )

        failed = await self.actions.fail(action.id, ORPHANED_ERROR)
        logger.error(
            "Stage email orphaned in PROCESSING",
            action_id=action.id,
            attempts=action.attempts,
            marked_failed=failed,
        )

    async def _send(self, action: QueuedAction):
        candidate = await self.candidates.load_candidate(action.subject_id)
        if candidate is None:
            raise AutomationError(
                f"Candidate {action.subject_id} not found", operation="load_candidate", retryable=False
            )

        template = await self._resolve_template(action, candidate)
        variables = build_email_variables(candidate, action.owner_name, action.owner_email)
        content = self.templates.render(template, variables)

        result = await self.transport.send(
            OutboundEmail(
                to=candidate.email,
                subject=content.subject,
                html_body=content.html_body,
                text_body=content.text_body,
                candidate_id=candidate.id,
                from_email=action.owner_email,
                from_name=action.owner_name,
                sender_id=action.owner_id,
                template_id=template.id,
            )
        )
        if not result.success:
            raise TransportError(result.error or "Failed to send email")

        logger.info("Stage email sent", action_id=action.id, email_id=result.email_id, to_state=action.to_state)
        return result

    async def _resolve_template(self, action: QueuedAction, candidate: Candidate) -> EmailTemplate:
        if action.template_id:
            template = await self.templates.resolve_template(action.template_id)
        else:
            template = await self.templates.resolve_stage_template(action.to_state, candidate.job.id)

        if template is None:
            raise NoTemplateConfigured(action.to_state, action.template_id)
        return template

    async def _record_failure(self, action: QueuedAction, job: Job, exc: Exception) -> None:
        """
        Every failure is terminal for the action. The caller re-raises so the
        queue still records the job failure; a redelivery finds the action
        FAILED and sends nothing.
        """

        retryable = getattr(exc, "retryable", True)
        error = str(exc) or type(exc).__name__

        try:
            await self.actions.fail(action.id, error)
        except DatabaseError as db_error:
            logger.error(
                "Could not record stage email failure",
                action_id=action.id,
                error=str(db_error),
                original_error=error,
            )

        log = logger.warning if isinstance(exc, AutomationError) and not retryable else logger.error
        log(
            "Stage email delivery failed",
            action_id=action.id,
            error=error,
            error_type=type(exc).__name__,
            retryable=retryable,
            final_attempt=job.is_final_attempt,
        )

    async def _schedule_reminder(self, action: QueuedAction, email_id: str | None) -> None:
        if self.reminders is None or not email_id:
            return

        policy = await self.policies.for_stage(action.to_state)
        if policy is None or not policy.reminder.enabled:
            return

        try:
            await self.reminders.schedule_follow_up(action, email_id, policy.reminder.delay_hours)
        except DatabaseError as e:
            # The email is already SENT; a redelivery would not reach this point again
            logger.error(
                "Failed to schedule follow-up reminder",
                action_id=action.id,
                email_id=email_id,
                error=str(e),
            )

    # ------------------------------------------------------------------
    # Operator controls
    # ------------------------------------------------------------------

    async def pending_for_subject(self, subject_id: str) -> list[QueuedAction]:
        return await self.actions.list_pending_for_subject(subject_id)

    async def cancel(self, action_id: str) -> bool:
        return await self.actions.cancel(action_id)

    async def request_skip(self, action_id: str) -> bool:
        return await self.actions.request_skip(action_id)
