"""
Hire-flow materializer.

When a candidate enters the offer stage this ensures one employee record
and at most one active offer exist for them. Every step is a lookup or a
conditional write, so running the flow again after a partial failure picks
up where the previous attempt stopped.
"""

import re
from collections.abc import Callable
from datetime import datetime, timedelta

from app.config import settings
from app.features.automation.domain import (
    Candidate,
    Employee,
    EmployeeData,
    NewOffer,
    NoOfferTemplateConfigured,
    Offer,
    OfferTemplate,
)
from app.features.automation.services.collaborators import utcnow
from app.infrastructure.audit import audit_logger
from app.infrastructure.observability.logging import get_logger
from app.jobs.queue import Job

logger = get_logger(__name__)

HIRE_FLOW_JOB = "hire-flow"
AUDIT_SOURCE = "hire_flow"

NOTICE_PERIOD_PATTERN = re.compile(r"(\d+)\s*(day|week|month)", re.IGNORECASE)
OFFER_PLACEHOLDER_PATTERN = re.compile(r"%?\{(\w+)\}")
DAYS_PER_UNIT = {"day": 1, "week": 7, "month": 30}


def notice_period_days(notice_period: str | None) -> int:
    """
    Days until an estimated start date for a free-text notice period.

    "2 weeks" -> 14, "1 month" -> 30, "Immediate" -> IMMEDIATE_START_DAYS,
    anything unparseable -> DEFAULT_NOTICE_PERIOD_DAYS.
    """
    if not notice_period:
        return settings.DEFAULT_NOTICE_PERIOD_DAYS

    match = NOTICE_PERIOD_PATTERN.search(notice_period)
    if match:
        return int(match.group(1)) * DAYS_PER_UNIT[match.group(2).lower()]

    if "immediate" in notice_period.lower():
        return settings.IMMEDIATE_START_DAYS
    return settings.DEFAULT_NOTICE_PERIOD_DAYS


def estimate_start_date(notice_period: str | None, now: datetime) -> datetime:
    return now + timedelta(days=notice_period_days(notice_period))


def render_offer_template(body: str, variables: dict[str, str]) -> str:
    """Fill ``{name}`` / ``%{name}`` placeholders; unknown names are kept."""

    def _replace(match: re.Match) -> str:
        key = match.group(1)
        return variables[key] if key in variables else match.group(0)

    return OFFER_PLACEHOLDER_PATTERN.sub(_replace, body)


def _format_salary(amount: float | None) -> str:
    if amount is None:
        return ""
    return str(int(amount)) if float(amount).is_integer() else str(amount)


def map_candidate_to_employee(candidate: Candidate, start_date: datetime) -> EmployeeData:
    job = candidate.job
    return EmployeeData(
        full_name=candidate.name,
        personal_email=candidate.email,
        candidate_id=candidate.id,
        phone=candidate.phone,
        job_title=job.title,
        department=job.department,
        location=candidate.location or (job.locations[0] if job.locations else None),
        employment_type=job.employment_type or "FULL_TIME",
        salary_amount=candidate.salary_exp_max,
        salary_currency=candidate.salary_exp_currency or "USD",
        start_date=start_date,
    )


def map_candidate_to_offer_variables(candidate: Candidate, start_date: datetime) -> dict[str, str]:
    job = candidate.job
    return {
        "role": job.title,
        "candidate_name": candidate.name,
        "job_title": job.title,
        "department": job.department or "",
        "salary": _format_salary(candidate.salary_exp_max),
        "currency": candidate.salary_exp_currency or "USD",
        "location": candidate.location or (job.locations[0] if job.locations else ""),
        "start_date": start_date.date().isoformat(),
        "employment_type": job.employment_type or "Full-Time",
    }


class HireFlowMaterializer:
    def __init__(
        self,
        hires,
        audit=audit_logger,
        clock: Callable[[], datetime] = utcnow,
        offer_stage: str | None = None,
    ):
        self.hires = hires
        self.audit = audit
        self.clock = clock
        self.offer_stage = offer_stage or settings.OFFER_STAGE

    async def handle(self, job: Job) -> dict:
        data = job.data or {}
        candidate_id = data.get("candidate_id")
        if not candidate_id:
            logger.error("Hire flow job missing candidate_id", data=data)
            return {"status": "invalid"}
        return await self.materialize(candidate_id)

    async def materialize(self, candidate_id: str) -> dict:
        """
        Run the flow for one candidate.

        Returns a small summary for logs and the ops API. Exceptions
        propagate so the queue can retry; NoOfferTemplateConfigured is
        non-retryable.
        """

        candidate = await self.hires.load_candidate(candidate_id)
        if candidate is None or candidate.stage != self.offer_stage:
            logger.info(
                "Candidate no longer in offer stage, hire flow aborted",
                candidate_id=candidate_id,
                stage=candidate.stage if candidate else None,
            )
            return {"status": "stale", "candidate_id": candidate_id}

        template = await self._resolve_offer_template(candidate)
        start_date = estimate_start_date(candidate.notice_period, self.clock())

        employee = await self._materialize_employee(candidate, start_date)
        offer = await self._materialize_offer(employee, candidate, template, start_date)

        logger.info(
            "Hire flow completed",
            candidate_id=candidate.id,
            employee_id=employee.id,
            offer_id=offer.id if offer else None,
            offer_created=offer is not None,
        )
        return {
            "status": "completed",
            "candidate_id": candidate.id,
            "employee_id": employee.id,
            "offer_id": offer.id if offer else None,
        }

    async def _resolve_offer_template(self, candidate: Candidate) -> OfferTemplate:
        job = candidate.job
        if job.default_offer_template_id:
            template = await self.hires.find_offer_template(job.default_offer_template_id)
            if template:
                return template

        if job.employment_type:
            template = await self.hires.find_offer_template_for_employment_type(job.employment_type)
            if template:
                return template

        template = await self.hires.find_any_offer_template()
        if template is None:
            logger.error("No offer template available", candidate_id=candidate.id, job_id=job.id)
            raise NoOfferTemplateConfigured(job.id)
        return template

    async def _materialize_employee(self, candidate: Candidate, start_date: datetime) -> Employee:
        data = map_candidate_to_employee(candidate, start_date)

        if candidate.employee_id:
            employee = await self.hires.update_employee(candidate.employee_id, data)
            await self._audit_employee("EMPLOYEE_UPDATED", employee, candidate, autoUpdated=True)
            return employee

        existing = await self.hires.find_employee_by_email(candidate.email)
        if existing:
            logger.info("Linking existing employee by email", candidate_id=candidate.id, employee_id=existing.id)
            employee = await self.hires.update_employee(existing.id, data)
            await self._audit_employee("EMPLOYEE_UPDATED", employee, candidate, autoLinked=True)
            return employee

        employee = await self.hires.create_employee(data)
        await self._audit_employee("EMPLOYEE_CREATED", employee, candidate, autoCreated=True)
        return employee

    async def _audit_employee(self, action: str, employee: Employee, candidate: Candidate, **flags) -> None:
        await self.audit.log_automation_event(
            action=action,
            resource_type="employee",
            resource_id=employee.id,
            source=AUDIT_SOURCE,
            candidate_id=candidate.id,
            **flags,
        )

    async def _materialize_offer(
        self,
        employee: Employee,
        candidate: Candidate,
        template: OfferTemplate,
        start_date: datetime,
    ) -> Offer | None:
        existing = await self.hires.find_active_offer(employee.id)
        if existing:
            logger.info("Active offer already exists", employee_id=employee.id, offer_id=existing.id)
            return None

        variables = map_candidate_to_offer_variables(candidate, start_date)
        offer = await self.hires.create_offer(
            NewOffer(
                employee_id=employee.id,
                candidate_email=candidate.email,
                candidate_name=candidate.name,
                template_id=template.id,
                variables=variables,
                rendered_html=render_offer_template(template.body_html, variables),
            ),
            event_description="Offer created automatically from hire flow",
        )
        if offer is None:
            logger.info("Offer created concurrently, skipping", employee_id=employee.id)
            return None

        await self.audit.log_automation_event(
            action="OFFER_CREATED",
            resource_type="offer",
            resource_id=offer.id,
            source=AUDIT_SOURCE,
            candidate_id=candidate.id,
            employeeId=employee.id,
            autoCreated=True,
        )
        return offer
