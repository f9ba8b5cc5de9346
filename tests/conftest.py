import itertools
from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest

from app.auth.verify import auth_dependency
from app.db.helpers import DatabaseError
from app.features.automation.domain import (
    ACTIVE_OFFER_STATUSES,
    ActionKind,
    ActionStatus,
    Candidate,
    ClaimOutcome,
    ClaimResult,
    CreateResult,
    EmailTemplate,
    Employee,
    JobPosting,
    Offer,
    OfferTemplate,
    QueuedAction,
    SendResult,
    SentEmail,
)
from app.features.automation.services.collaborators import DatabaseTemplateService
from app.features.automation.services.engine import AutomationEngine
from app.features.automation.services.hire_flow import HireFlowMaterializer
from app.features.automation.services.policy import StagePolicyProvider
from app.features.automation.services.reminders import ReminderScheduler
from app.features.automation.services.stage_email import StageEmailDispatcher
from app.jobs.queue import Job

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class FakeQueuedActionRepository:
    """In-memory store with the same conditional transitions as the SQL one."""

    DEDUP_FIELDS = {ActionKind.STAGE_EMAIL: "to_state", ActionKind.REMINDER: "parent_result_ref"}

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.rows: dict[str, QueuedAction] = {}
        self.notifications: list[dict] = []
        self.complete_errors = 0
        self._ids = itertools.count(1)

    def _next_id(self, prefix: str = "act") -> str:
        return f"{prefix}-{next(self._ids)}"

    async def create(self, new) -> CreateResult:
        dedup_field = self.DEDUP_FIELDS.get(new.kind)
        if not new.status.is_terminal and dedup_field:
            for row in self.rows.values():
                if (
                    row.subject_id == new.subject_id
                    and row.kind == new.kind
                    and row.status in (ActionStatus.PENDING, ActionStatus.PROCESSING)
                    and getattr(row, dedup_field) == getattr(new, dedup_field)
                ):
                    return CreateResult(action_id=row.id, duplicate=True)

        action = QueuedAction(
            id=self._next_id(),
            subject_id=new.subject_id,
            kind=new.kind,
            status=new.status,
            scheduled_for=new.scheduled_for,
            from_state=new.from_state,
            to_state=new.to_state,
            skip_requested=new.skip_requested,
            template_id=new.template_id,
            owner_id=new.owner_id,
            owner_email=new.owner_email,
            owner_name=new.owner_name,
            parent_result_ref=new.parent_result_ref,
            escalate_after_hours=new.escalate_after_hours,
            created_at=self.clock(),
            processed_at=self.clock() if new.status.is_terminal else None,
        )
        self.rows[action.id] = action
        return CreateResult(action_id=action.id)

    async def attach_job(self, action_id, job_id):
        self.rows[action_id].job_id = job_id

    async def load(self, action_id):
        row = self.rows.get(action_id)
        return replace(row) if row else None

    async def claim(self, action_id) -> ClaimResult:
        row = self.rows.get(action_id)
        if row is None:
            return ClaimResult(ClaimOutcome.NOT_FOUND)
        if row.status is ActionStatus.PENDING and not row.skip_requested:
            row.status = ActionStatus.PROCESSING
            row.attempts += 1
            return ClaimResult(ClaimOutcome.CLAIMED, replace(row))
        if row.status is ActionStatus.PENDING and row.skip_requested:
            row.status = ActionStatus.CANCELLED
            row.processed_at = self.clock()
            return ClaimResult(ClaimOutcome.SKIPPED, replace(row))
        if row.status is ActionStatus.PROCESSING:
            return ClaimResult(ClaimOutcome.IN_PROGRESS, replace(row))
        return ClaimResult(ClaimOutcome.ALREADY_TERMINAL, replace(row))

    async def complete(self, action_id, result_ref):
        if self.complete_errors:
            self.complete_errors -= 1
            raise DatabaseError("Query failed: canceling statement due to statement timeout", operation="execute")
        row = self.rows[action_id]
        if row.status is not ActionStatus.PROCESSING:
            return False
        row.status = ActionStatus.SENT
        row.result_ref = result_ref
        row.error = None
        row.processed_at = self.clock()
        return True

    async def fail(self, action_id, error):
        row = self.rows[action_id]
        if row.status is not ActionStatus.PROCESSING:
            return False
        row.status = ActionStatus.FAILED
        row.error = (error or "")[:500]
        row.processed_at = self.clock()
        return True

    async def cancel(self, action_id):
        row = self.rows.get(action_id)
        if row is None or row.status is not ActionStatus.PENDING:
            return False
        row.status = ActionStatus.CANCELLED
        row.processed_at = self.clock()
        return True

    async def request_skip(self, action_id):
        row = self.rows.get(action_id)
        if row is None or row.status is not ActionStatus.PENDING:
            return False
        row.skip_requested = True
        return True

    async def list_due_reminders(self, now, limit):
        due = [
            replace(row)
            for row in self.rows.values()
            if row.kind is ActionKind.REMINDER
            and row.status is ActionStatus.PENDING
            and not row.skip_requested
            and row.scheduled_for <= now
        ]
        return sorted(due, key=lambda row: row.scheduled_for)[:limit]

    async def list_escalation_candidates(self, now, default_hours, limit):
        eligible = []
        for row in self.rows.values():
            if (
                row.kind is ActionKind.REMINDER
                and row.status is ActionStatus.SENT
                and row.escalated_at is None
                and row.reply_detected_at is None
                and row.processed_at is not None
            ):
                hours = row.escalate_after_hours or default_hours
                if row.processed_at <= now - timedelta(hours=hours):
                    eligible.append(replace(row))
        return eligible[:limit]

    async def mark_reply_detected(self, action_id):
        row = self.rows[action_id]
        if row.status is not ActionStatus.SENT or row.escalated_at or row.reply_detected_at:
            return False
        row.reply_detected_at = self.clock()
        return True

    async def record_escalation(self, reminder, recipient_user_id, actor_name, actor_email):
        row = self.rows[reminder.id]
        if row.status is not ActionStatus.SENT or row.escalated_at or row.reply_detected_at:
            return None
        row.escalated_at = self.clock()
        row.escalated_to = recipient_user_id

        notification_id = None
        if recipient_user_id:
            notification_id = f"notif-{len(self.notifications) + 1}"
            self.notifications.append(
                {
                    "id": notification_id,
                    "user_id": recipient_user_id,
                    "action": "ASSISTANT_ACTION",
                    "resource_id": reminder.subject_id,
                    "actor_name": actor_name,
                    "actor_email": actor_email,
                }
            )

        escalation = QueuedAction(
            id=self._next_id("esc"),
            subject_id=reminder.subject_id,
            kind=ActionKind.ESCALATION,
            status=ActionStatus.SENT,
            scheduled_for=self.clock(),
            to_state=reminder.to_state,
            owner_id=reminder.owner_id,
            parent_result_ref=reminder.id,
            result_ref=notification_id,
            processed_at=self.clock(),
        )
        self.rows[escalation.id] = escalation
        return escalation.id

    async def list_pending_for_subject(self, subject_id):
        return [
            replace(row)
            for row in self.rows.values()
            if row.subject_id == subject_id and row.status is ActionStatus.PENDING
        ]

    async def status_counts(self):
        counts: dict[str, dict[str, int]] = {}
        for row in self.rows.values():
            bucket = counts.setdefault(row.kind.value, {})
            bucket[row.status.value] = bucket.get(row.status.value, 0) + 1
        sent_reminders = [
            row
            for row in self.rows.values()
            if row.kind is ActionKind.REMINDER and row.status is ActionStatus.SENT
        ]
        counts.setdefault(ActionKind.REMINDER.value, {}).update(
            {
                "escalated": sum(1 for row in sent_reminders if row.escalated_at),
                "awaiting_escalation": sum(
                    1 for row in sent_reminders if not row.escalated_at and not row.reply_detected_at
                ),
                "replied": sum(1 for row in sent_reminders if row.reply_detected_at),
            }
        )
        return counts

    # Test helpers

    def of_kind(self, kind: ActionKind) -> list[QueuedAction]:
        return [row for row in self.rows.values() if row.kind is kind]


class FakeQueue:
    def __init__(self):
        self.jobs: list[dict] = []
        self.handlers: dict = {}
        self.schedules: dict[str, dict] = {}
        self.started = False
        self.stopped = False
        self.fail_enqueue = False

    async def enqueue(self, name, data=None, *, start_after=None, retry_limit=0, retry_delay=0, retry_backoff=False):
        if self.fail_enqueue:
            raise RuntimeError("queue unavailable")
        job_id = f"job-{len(self.jobs) + 1}"
        self.jobs.append(
            {
                "id": job_id,
                "name": name,
                "data": dict(data or {}),
                "start_after": start_after,
                "retry_limit": retry_limit,
                "retry_delay": retry_delay,
                "retry_backoff": retry_backoff,
            }
        )
        return job_id

    async def schedule_recurring(self, name, cron, data=None):
        self.schedules[name] = {"cron": cron, "data": data or {}}

    def register_handler(self, name, handler):
        self.handlers[name] = handler

    async def start(self):
        self.started = True

    async def stop(self, graceful=True):
        self.stopped = True

    async def job_counts(self):
        counts: dict[str, dict[str, int]] = {}
        for job in self.jobs:
            bucket = counts.setdefault(job["name"], {})
            bucket["created"] = bucket.get("created", 0) + 1
        return counts

    def job(self, index: int = -1, retry_count: int = 0) -> Job:
        """Materialize an enqueued job as a delivery to its handler."""
        raw = self.jobs[index]
        return Job(
            id=raw["id"],
            name=raw["name"],
            data=raw["data"],
            retry_count=retry_count,
            retry_limit=raw["retry_limit"],
        )


class FakeCorrespondence:
    def __init__(self):
        self.emails: dict[str, SentEmail] = {}
        self.inbound: list[tuple[str, datetime]] = []
        self.users: dict[str, str] = {}
        self.auto_send_stages: dict | None = None

    async def load_sent_email(self, email_id):
        return self.emails.get(email_id)

    async def has_inbound_reply(self, thread_id, after):
        return any(thread == thread_id and (after is None or sent_at > after) for thread, sent_at in self.inbound)

    async def resolve_recruiter_user(self, recruiter_id):
        return self.users.get(recruiter_id) if recruiter_id else None

    async def load_auto_send_stages(self):
        return self.auto_send_stages

    # Test helpers

    def reply(self, thread_id: str, at: datetime):
        self.inbound.append((thread_id, at))


class FakeTransport:
    """Records outbound email and mirrors it into the correspondence fake."""

    def __init__(self, clock: FakeClock, correspondence: FakeCorrespondence):
        self.clock = clock
        self.correspondence = correspondence
        self.sent: list = []
        self.failures_remaining = 0
        self.error = "SMTP relay unavailable"

    async def send(self, email):
        if self.failures_remaining:
            self.failures_remaining -= 1
            return SendResult(success=False, error=self.error)

        email_id = f"email-{len(self.sent) + 1}"
        self.sent.append(email)

        parent = self.correspondence.emails.get(email.reply_to_id) if email.reply_to_id else None
        self.correspondence.emails[email_id] = SentEmail(
            id=email_id,
            thread_id=parent.thread_id if parent else f"thread-{email.candidate_id}",
            subject=email.subject,
            sent_at=self.clock(),
            from_email=email.from_email,
            from_name=email.from_name,
        )
        return SendResult(success=True, email_id=email_id)


class FakeTemplates(DatabaseTemplateService):
    def __init__(self):
        self.by_id: dict[str, EmailTemplate] = {}
        self.by_stage: dict[str, EmailTemplate] = {}
        self.reminder: EmailTemplate | None = None

    async def resolve_template(self, template_id):
        return self.by_id.get(template_id)

    async def resolve_stage_template(self, stage, job_id):
        return self.by_stage.get(stage)

    async def resolve_reminder_template(self):
        return self.reminder


class FakeHireRepository:
    def __init__(self):
        self.candidates: dict[str, Candidate] = {}
        self.employees: dict[str, Employee] = {}
        self.employee_data: dict[str, object] = {}
        self.offers: list[Offer] = []
        self.offer_events: list[dict] = []
        self.offer_templates: list[OfferTemplate] = []
        self.writes = 0
        self._ids = itertools.count(1)

    async def load_candidate(self, candidate_id):
        candidate = self.candidates.get(candidate_id)
        if candidate is None:
            return None
        linked = next((e.id for e in self.employees.values() if e.candidate_id == candidate_id), None)
        return replace(candidate, employee_id=linked)

    async def find_offer_template(self, template_id):
        return next((t for t in self.offer_templates if t.id == template_id), None)

    async def find_offer_template_for_employment_type(self, employment_type):
        return next((t for t in self.offer_templates if t.employment_type == employment_type), None)

    async def find_any_offer_template(self):
        return self.offer_templates[0] if self.offer_templates else None

    async def find_employee_by_email(self, email):
        return next(
            (e for e in self.employees.values() if e.personal_email.lower() == email.lower()),
            None,
        )

    async def create_employee(self, data):
        self.writes += 1
        employee = Employee(
            id=f"emp-{next(self._ids)}",
            full_name=data.full_name,
            personal_email=data.personal_email,
            status=data.status,
            candidate_id=data.candidate_id,
            start_date=data.start_date,
        )
        self.employees[employee.id] = employee
        self.employee_data[employee.id] = data
        return replace(employee)

    async def update_employee(self, employee_id, data):
        self.writes += 1
        employee = self.employees[employee_id]
        employee.full_name = data.full_name
        employee.personal_email = data.personal_email
        employee.status = data.status
        employee.candidate_id = data.candidate_id
        employee.start_date = data.start_date
        self.employee_data[employee_id] = data
        return replace(employee)

    async def find_active_offer(self, employee_id):
        return next(
            (o for o in self.offers if o.employee_id == employee_id and o.status in ACTIVE_OFFER_STATUSES),
            None,
        )

    async def create_offer(self, offer, event_description):
        if await self.find_active_offer(offer.employee_id):
            return None
        self.writes += 1
        created = Offer(
            id=f"offer-{next(self._ids)}",
            employee_id=offer.employee_id,
            status=offer.status,
            template_id=offer.template_id,
        )
        self.offers.append(created)
        self.offer_events.append(
            {"offer_id": created.id, "type": "created", "description": event_description, "html": offer.rendered_html}
        )
        return created

    async def activate_due_employees(self, statuses, now, employee_id=None):
        activated = []
        for employee in self.employees.values():
            if employee_id and employee.id != employee_id:
                continue
            if employee.status in statuses and employee.start_date and employee.start_date <= now:
                employee.status = "ACTIVE"
                activated.append(employee.id)
        return activated

    async def list_identity_candidates(self):
        return [replace(e) for e in self.employees.values() if e.status != "EXITED"]

    async def update_work_email(self, employee_id, expected_old, new_email):
        employee = self.employees[employee_id]
        if employee.work_email != expected_old:
            return False
        employee.work_email = new_email
        return True


class FakeIdentity:
    def __init__(self, emails: dict[str, str] | None = None):
        self.emails = dict(emails or {})
        self.errors: dict[str, Exception] = {}

    async def lookup_canonical_email(self, employee_id):
        if employee_id in self.errors:
            raise self.errors[employee_id]
        return self.emails.get(employee_id)


class FakeAudit:
    def __init__(self):
        self.events: list[dict] = []

    async def log_automation_event(self, **kwargs):
        self.events.append(kwargs)
        return True

    def actions(self) -> list[str]:
        return [event["action"] for event in self.events]


def make_candidate(
    candidate_id: str = "cand-1",
    stage: str = "OFFER",
    email: str = "ada@example.com",
    **overrides,
) -> Candidate:
    job = overrides.pop(
        "job",
        JobPosting(
            id="job-1",
            title="Backend Engineer",
            department="Engineering",
            locations=["Lagos", "Remote"],
            employment_type="FULL_TIME",
        ),
    )
    return Candidate(
        id=candidate_id,
        name=overrides.pop("name", "Ada Lovelace"),
        email=email,
        stage=stage,
        job=job,
        **overrides,
    )


# ----------------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------------


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def candidate_factory():
    return make_candidate


@pytest.fixture
def actions(clock):
    return FakeQueuedActionRepository(clock)


@pytest.fixture
def queue():
    return FakeQueue()


@pytest.fixture
def correspondence():
    return FakeCorrespondence()


@pytest.fixture
def transport(clock, correspondence):
    return FakeTransport(clock, correspondence)


@pytest.fixture
def templates():
    service = FakeTemplates()
    service.by_stage["OFFER_SENT"] = EmailTemplate(
        id="tpl-offer-sent",
        subject="Your offer from {{ company.name }}",
        html_body="<p>Hi {{ candidate.name }}, welcome to {{ job.title }}.</p>",
        stage="OFFER_SENT",
    )
    service.reminder = EmailTemplate(
        id="tpl-reminder",
        subject="Reminder",
        html_body="<p>Hi {{ candidate.name }}, just following up. {{ recruiter.name }}</p>",
        category="reminder",
    )
    return service


@pytest.fixture
def hires():
    repo = FakeHireRepository()
    repo.candidates["cand-1"] = make_candidate(stage="OFFER_SENT")
    return repo


@pytest.fixture
def audit():
    return FakeAudit()


@pytest.fixture
def identity():
    return FakeIdentity()


@pytest.fixture
def policies(correspondence):
    correspondence.auto_send_stages = {
        "OFFER_SENT": {"enabled": True, "delayMinutes": 0, "reminder": {"enabled": True, "delayHours": 72}},
        "SCREENING": {"enabled": True, "delayMinutes": 30},
        "REJECTED": {"enabled": False},
    }
    return StagePolicyProvider(correspondence)


@pytest.fixture
def reminders(actions, correspondence, hires, templates, transport, clock):
    return ReminderScheduler(
        actions=actions,
        correspondence=correspondence,
        candidates=hires,
        templates=templates,
        transport=transport,
        clock=clock,
        batch_size=50,
        escalation_hours=168,
    )


@pytest.fixture
def dispatcher(actions, queue, policies, hires, templates, transport, reminders, clock):
    return StageEmailDispatcher(
        actions=actions,
        queue=queue,
        policies=policies,
        candidates=hires,
        templates=templates,
        transport=transport,
        reminders=reminders,
        clock=clock,
        retry_limit=3,
        retry_delay=60,
    )


@pytest.fixture
def hire_flow(hires, audit, clock):
    return HireFlowMaterializer(hires=hires, audit=audit, clock=clock, offer_stage="OFFER")


@pytest.fixture
def engine(queue, actions, hires, correspondence, templates, transport, identity, policies, audit, clock):
    return AutomationEngine(
        queue=queue,
        actions=actions,
        hires=hires,
        correspondence=correspondence,
        templates=templates,
        transport=transport,
        identity=identity,
        policies=policies,
        audit=audit,
        clock=clock,
    )


@pytest.fixture
def auth_override():
    def _override():
        return {"actor_type": "service"}

    return _override


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override

    return _apply
