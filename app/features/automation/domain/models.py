"""
Domain models for the lifecycle automation engine.

Lightweight dataclasses shared by repositories, services and the ops API.
They carry no persistence logic; state transitions live in the
repositories, where they are expressed as single-row conditional updates.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


class ActionKind(StrEnum):
    STAGE_EMAIL = "STAGE_EMAIL"
    REMINDER = "REMINDER"
    ESCALATION = "ESCALATION"


class ActionStatus(StrEnum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SENT = "SENT"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({ActionStatus.SENT, ActionStatus.CANCELLED, ActionStatus.FAILED})
OPEN_STATUSES = frozenset({ActionStatus.PENDING, ActionStatus.PROCESSING})


class ClaimOutcome(StrEnum):
    CLAIMED = "claimed"
    NOT_FOUND = "not_found"
    IN_PROGRESS = "in_progress"
    ALREADY_TERMINAL = "already_terminal"
    SKIPPED = "skipped"


@dataclass(slots=True)
class QueuedAction:
    """Represents a queued_actions row: one scheduled automated side effect."""

    id: str
    subject_id: str
    kind: ActionKind
    status: ActionStatus
    scheduled_for: datetime
    from_state: str | None = None
    to_state: str | None = None
    skip_requested: bool = False
    template_id: str | None = None
    owner_id: str | None = None
    owner_email: str | None = None
    owner_name: str | None = None
    result_ref: str | None = None
    error: str | None = None
    attempts: int = 0
    job_id: str | None = None
    parent_result_ref: str | None = None
    escalate_after_hours: int | None = None
    escalated_at: datetime | None = None
    escalated_to: str | None = None
    reply_detected_at: datetime | None = None
    created_at: datetime | None = None
    processed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass(slots=True)
class NewQueuedAction:
    """Values supplied by a trigger when it records a new action."""

    subject_id: str
    kind: ActionKind
    scheduled_for: datetime
    from_state: str | None = None
    to_state: str | None = None
    status: ActionStatus = ActionStatus.PENDING
    skip_requested: bool = False
    template_id: str | None = None
    owner_id: str | None = None
    owner_email: str | None = None
    owner_name: str | None = None
    parent_result_ref: str | None = None
    escalate_after_hours: int | None = None


@dataclass(slots=True)
class ClaimResult:
    """Result of trying to move an action from PENDING to PROCESSING."""

    outcome: ClaimOutcome
    action: QueuedAction | None = None

    @property
    def claimed(self) -> bool:
        return self.outcome is ClaimOutcome.CLAIMED


@dataclass(slots=True)
class CreateResult:
    """Result of create(); duplicate=True means an open action already existed."""

    action_id: str
    duplicate: bool = False


@dataclass(slots=True)
class Recruiter:
    id: str
    email: str
    name: str | None = None


@dataclass(slots=True)
class StageTransition:
    """A candidate moving from one pipeline stage to another."""

    subject_id: str
    from_state: str | None
    to_state: str
    recruiter: Recruiter
    job_id: str | None = None
    template_id: str | None = None
    skip_auto_email: bool = False


@dataclass(slots=True)
class JobPosting:
    id: str
    title: str
    department: str | None = None
    locations: list[str] = field(default_factory=list)
    employment_type: str | None = None
    default_offer_template_id: str | None = None


@dataclass(slots=True)
class Candidate:
    """A job_candidates row joined with its job and linked employee."""

    id: str
    name: str
    email: str
    stage: str
    job: JobPosting
    phone: str | None = None
    location: str | None = None
    current_role: str | None = None
    current_company: str | None = None
    notice_period: str | None = None
    salary_exp_max: float | None = None
    salary_exp_currency: str | None = None
    employee_id: str | None = None


@dataclass(slots=True)
class Employee:
    id: str
    full_name: str
    personal_email: str
    status: str
    candidate_id: str | None = None
    work_email: str | None = None
    start_date: datetime | None = None


@dataclass(slots=True)
class EmployeeData:
    """Fields the hire flow writes onto an employee record."""

    full_name: str
    personal_email: str
    candidate_id: str
    status: str = "CANDIDATE"
    phone: str | None = None
    job_title: str | None = None
    department: str | None = None
    location: str | None = None
    employment_type: str = "FULL_TIME"
    salary_amount: float | None = None
    salary_currency: str = "USD"
    start_date: datetime | None = None


class OfferStatus(StrEnum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    SIGNED = "SIGNED"
    DECLINED = "DECLINED"
    VOIDED = "VOIDED"


ACTIVE_OFFER_STATUSES = (OfferStatus.DRAFT, OfferStatus.SENT, OfferStatus.SIGNED)


@dataclass(slots=True)
class Offer:
    id: str
    employee_id: str
    status: OfferStatus
    template_id: str | None = None


@dataclass(slots=True)
class OfferTemplate:
    id: str
    body_html: str
    employment_type: str | None = None


@dataclass(slots=True)
class NewOffer:
    employee_id: str
    candidate_email: str
    candidate_name: str
    template_id: str
    variables: dict[str, str]
    rendered_html: str
    status: OfferStatus = OfferStatus.DRAFT


@dataclass(slots=True)
class EmailTemplate:
    id: str
    subject: str
    html_body: str
    text_body: str | None = None
    stage: str | None = None
    category: str | None = None


@dataclass(slots=True)
class RenderedEmail:
    subject: str
    html_body: str
    text_body: str


@dataclass(slots=True)
class OutboundEmail:
    to: str
    subject: str
    html_body: str
    text_body: str
    candidate_id: str
    from_email: str | None = None
    from_name: str | None = None
    sender_id: str | None = None
    template_id: str | None = None
    reply_to_id: str | None = None


@dataclass(slots=True)
class SendResult:
    success: bool
    email_id: str | None = None
    error: str | None = None


@dataclass(slots=True)
class SentEmail:
    """A candidate_emails row that an automation action follows up on."""

    id: str
    thread_id: str
    subject: str | None
    sent_at: datetime | None
    from_email: str | None = None
    from_name: str | None = None


@dataclass(slots=True)
class IdentityMismatch:
    employee_id: str
    full_name: str
    old_email: str | None
    new_email: str


@dataclass(slots=True)
class DispatchResult:
    """Outcome of recording a stage transition."""

    action_id: str | None
    job_id: str | None = None
    duplicate: bool = False
