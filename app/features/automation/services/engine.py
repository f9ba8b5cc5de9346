"""
Automation engine composition root.

Builds every component around one explicitly constructed queue client and
binds their handlers and recurring schedules. Both the API process (which
only produces jobs) and the worker process (which also consumes them)
construct an engine; only the worker calls start().
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime

from app.config import settings
from app.features.automation.domain import DispatchResult, StageTransition
from app.features.automation.repository.correspondence_repository import CorrespondenceRepository
from app.features.automation.repository.hire_repository import HireRepository
from app.features.automation.repository.queued_action_repository import QueuedActionRepository
from app.features.automation.services.collaborators import (
    AppAccountIdentityDirectory,
    DatabaseTemplateService,
    EmailTransport,
    HttpEmailTransport,
    TemplateService,
    WorkspaceIdentity,
    utcnow,
)
from app.features.automation.services.hire_flow import HIRE_FLOW_JOB, HireFlowMaterializer
from app.features.automation.services.policy import StagePolicyProvider
from app.features.automation.services.reminders import ESCALATION_JOB, REMINDER_JOB, ReminderScheduler
from app.features.automation.services.stage_email import STAGE_EMAIL_JOB, StageEmailDispatcher
from app.features.automation.services.sweeps import (
    AUTO_ACTIVATE_JOB,
    WORK_EMAIL_SYNC_JOB,
    AutoActivationSweep,
    IdentityReconciliationSweep,
)
from app.infrastructure.audit import audit_logger
from app.infrastructure.observability.logging import get_logger
from app.jobs.queue import Job, JobQueue

logger = get_logger(__name__)


@dataclass(slots=True)
class JobBinding:
    handler: Callable[[Job], Awaitable]
    enabled: bool
    cron: str | None = None


@dataclass(slots=True)
class StageChangeResult:
    stage_email: DispatchResult | None = None
    hire_flow_job_id: str | None = None


class AutomationEngine:
    def __init__(
        self,
        queue: JobQueue,
        actions=QueuedActionRepository,
        hires=HireRepository,
        correspondence=CorrespondenceRepository,
        templates: TemplateService | None = None,
        transport: EmailTransport | None = None,
        identity: WorkspaceIdentity | None = None,
        policies: StagePolicyProvider | None = None,
        audit=audit_logger,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.queue = queue
        self.actions = actions
        self.transport = transport or HttpEmailTransport()
        templates = templates or DatabaseTemplateService()
        policies = policies or StagePolicyProvider(correspondence, settings.STAGE_EMAIL_POLICIES)

        self.reminders = ReminderScheduler(
            actions=actions,
            correspondence=correspondence,
            candidates=hires,
            templates=templates,
            transport=self.transport,
            clock=clock,
        )
        self.stage_emails = StageEmailDispatcher(
            actions=actions,
            queue=queue,
            policies=policies,
            candidates=hires,
            templates=templates,
            transport=self.transport,
            reminders=self.reminders,
            clock=clock,
        )
        self.hire_flow = HireFlowMaterializer(hires=hires, audit=audit, clock=clock)
        self.auto_activation = AutoActivationSweep(hires=hires, clock=clock)
        self.identity_sync = IdentityReconciliationSweep(
            hires=hires, identity=identity or AppAccountIdentityDirectory(), audit=audit
        )

        self.bindings: dict[str, JobBinding] = {
            STAGE_EMAIL_JOB: JobBinding(self.stage_emails.handle, settings.STAGE_EMAIL_ENABLED),
            HIRE_FLOW_JOB: JobBinding(self.hire_flow.handle, settings.HIRE_FLOW_ENABLED),
            REMINDER_JOB: JobBinding(
                self.reminders.run_reminder_sweep, settings.REMINDERS_ENABLED, settings.REMINDER_CRON
            ),
            ESCALATION_JOB: JobBinding(
                self.reminders.run_escalation_sweep, settings.ESCALATIONS_ENABLED, settings.ESCALATION_CRON
            ),
            AUTO_ACTIVATE_JOB: JobBinding(
                self.auto_activation.handle, settings.AUTO_ACTIVATE_ENABLED, settings.AUTO_ACTIVATE_CRON
            ),
            WORK_EMAIL_SYNC_JOB: JobBinding(
                self.identity_sync.handle, settings.WORK_EMAIL_SYNC_ENABLED, settings.WORK_EMAIL_SYNC_CRON
            ),
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def register(self) -> None:
        """Bind handlers and upsert recurring schedules for enabled jobs."""
        for name, binding in self.bindings.items():
            if not binding.enabled:
                logger.info("Automation job disabled", job_name=name)
                continue
            self.queue.register_handler(name, binding.handler)
            if binding.cron:
                await self.queue.schedule_recurring(name, binding.cron, {"triggered_by": "scheduled"})

    async def start(self) -> None:
        await self.queue.start()
        logger.info("Automation engine started")

    async def stop(self, graceful: bool = True) -> None:
        await self.queue.stop(graceful=graceful)
        close = getattr(self.transport, "close", None)
        if close is not None:
            await close()
        logger.info("Automation engine stopped")

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def on_stage_change(self, transition: StageTransition) -> StageChangeResult:
        """Entry point for a candidate moving between pipeline stages."""
        result = StageChangeResult()

        if settings.STAGE_EMAIL_ENABLED:
            result.stage_email = await self.stage_emails.dispatch(transition)

        if settings.HIRE_FLOW_ENABLED and transition.to_state == settings.OFFER_STAGE:
            result.hire_flow_job_id = await self.queue.enqueue(
                HIRE_FLOW_JOB,
                {"candidate_id": transition.subject_id, "job_id": transition.job_id},
                retry_limit=settings.JOB_RETRY_LIMIT,
                retry_delay=settings.JOB_RETRY_DELAY_SECONDS,
                retry_backoff=True,
            )
            logger.info(
                "Hire flow queued",
                candidate_id=transition.subject_id,
                job_id=result.hire_flow_job_id,
            )

        return result

    def triggerable_jobs(self) -> list[str]:
        return [name for name, binding in self.bindings.items() if binding.cron and binding.enabled]

    async def trigger(self, job_name: str, data: dict | None = None) -> str | None:
        """Queue a manual run of a sweep."""
        if job_name not in self.triggerable_jobs():
            raise KeyError(job_name)
        return await self.queue.enqueue(job_name, {"triggered_by": "manual", **(data or {})})

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def stats(self) -> dict:
        return {
            "jobs": await self.queue.job_counts(),
            "actions": await self.actions.status_counts(),
            "reminders": await self.reminders.stats(),
        }
