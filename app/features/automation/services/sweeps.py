"""
Periodic corrections over employee records: auto-activation on start date
and work-email reconciliation against the workspace directory.
"""

from collections.abc import Callable
from datetime import datetime

from app.config import settings
from app.features.automation.domain import IdentityMismatch
from app.features.automation.services.collaborators import WorkspaceIdentity, utcnow
from app.features.automation.services.metrics import SweepMetrics
from app.infrastructure.audit import audit_logger
from app.infrastructure.observability.logging import get_logger
from app.jobs.queue import Job

logger = get_logger(__name__)

AUTO_ACTIVATE_JOB = "auto-activate-employees"
WORK_EMAIL_SYNC_JOB = "work-email-sync"


class AutoActivationSweep:
    """Flip pending-start employees to ACTIVE once their start date passes."""

    def __init__(self, hires, clock: Callable[[], datetime] = utcnow, statuses: list[str] | None = None):
        self.hires = hires
        self.clock = clock
        self.statuses = list(statuses or settings.AUTO_ACTIVATE_STATUSES)

    async def handle(self, job: Job) -> dict:
        return await self.run((job.data or {}).get("employee_id"))

    async def run(self, employee_id: str | None = None) -> dict:
        metrics = SweepMetrics("auto_activate")
        activated = await self.hires.activate_due_employees(self.statuses, self.clock(), employee_id)
        metrics.increment("processed", len(activated))
        metrics.increment("updated", len(activated))
        if activated:
            logger.info("Employees auto-activated", employee_ids=activated, count=len(activated))
        metrics.finalize()
        return {**metrics.to_dict(), "employee_ids": activated}


class IdentityReconciliationSweep:
    """Align recorded work emails with the workspace directory's canonical address."""

    def __init__(self, hires, identity: WorkspaceIdentity, audit=audit_logger):
        self.hires = hires
        self.identity = identity
        self.audit = audit

    async def handle(self, job: Job) -> dict:
        return await self.run(triggered_by=(job.data or {}).get("triggered_by", "scheduled"))

    async def find_mismatches(self) -> list[IdentityMismatch]:
        """Dry run: employees whose work email differs from the directory."""

        mismatches = []
        for employee in await self.hires.list_identity_candidates():
            canonical = await self.identity.lookup_canonical_email(employee.id)
            if canonical and canonical != employee.work_email:
                mismatches.append(
                    IdentityMismatch(
                        employee_id=employee.id,
                        full_name=employee.full_name,
                        old_email=employee.work_email,
                        new_email=canonical,
                    )
                )
        return mismatches

    async def run(self, triggered_by: str = "scheduled") -> dict:
        metrics = SweepMetrics("work_email_sync")
        updates = []

        for employee in await self.hires.list_identity_candidates():
            metrics.increment("processed")
            try:
                canonical = await self.identity.lookup_canonical_email(employee.id)
                if not canonical or canonical == employee.work_email:
                    continue

                changed = await self.hires.update_work_email(employee.id, employee.work_email, canonical)
                if not changed:
                    # Edited since we read it; the next run re-evaluates
                    metrics.increment("skipped")
                    continue

                metrics.increment("updated")
                updates.append(
                    {"employee_id": employee.id, "old_email": employee.work_email, "new_email": canonical}
                )
                logger.info(
                    "Work email synced",
                    employee_id=employee.id,
                    previous_email=employee.work_email,
                    new_email=canonical,
                )
                await self.audit.log_automation_event(
                    action="WORK_EMAIL_SYNCED",
                    resource_type="employee",
                    resource_id=employee.id,
                    source="google_workspace_sync",
                    previousEmail=employee.work_email,
                    newEmail=canonical,
                    triggeredBy=triggered_by,
                )
            except Exception as exc:
                metrics.record_failure(employee.id, exc)

        metrics.finalize()
        return {**metrics.to_dict(), "updates": updates}
