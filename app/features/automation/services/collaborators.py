"""
External collaborators used by the automation components.

Each collaborator is a Protocol so components can be constructed with
in-memory doubles in tests; the concrete adapters below are the production
wiring.
"""

import re
from datetime import UTC, datetime
from typing import Protocol

import httpx

from app.config import settings
from app.db.helpers import fetch_one
from app.features.automation.domain import (
    Candidate,
    ConfigurationError,
    EmailTemplate,
    OutboundEmail,
    RenderedEmail,
    SendResult,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{([^}]+)\}\}")
TAG_PATTERN = re.compile(r"<[^>]*>")

GOOGLE_WORKSPACE_APP = "GOOGLE_WORKSPACE"
IDENTITY_ACCOUNT_STATUSES = ["ACTIVE", "PENDING"]


def utcnow() -> datetime:
    return datetime.now(UTC)


class CandidateSource(Protocol):
    async def load_candidate(self, candidate_id: str) -> Candidate | None: ...


class EmailTransport(Protocol):
    async def send(self, email: OutboundEmail) -> SendResult: ...


class TemplateService(Protocol):
    async def resolve_template(self, template_id: str) -> EmailTemplate | None: ...

    async def resolve_stage_template(self, stage: str, job_id: str | None) -> EmailTemplate | None: ...

    async def resolve_reminder_template(self) -> EmailTemplate | None: ...

    def render(self, template: EmailTemplate, variables: dict[str, str]) -> RenderedEmail: ...


class WorkspaceIdentity(Protocol):
    async def lookup_canonical_email(self, employee_id: str) -> str | None: ...


def build_email_variables(
    candidate: Candidate,
    recruiter_name: str | None,
    recruiter_email: str | None,
    company_name: str | None = None,
) -> dict[str, str]:
    """Variables available to candidate email templates."""

    return {
        "candidate.name": candidate.name,
        "candidate.email": candidate.email,
        "candidate.phone": candidate.phone or "",
        "candidate.currentRole": candidate.current_role or "",
        "candidate.currentCompany": candidate.current_company or "",
        "job.title": candidate.job.title or "",
        "job.department": candidate.job.department or "",
        "stage.name": candidate.stage or "",
        "company.name": company_name or settings.COMPANY_NAME,
        "recruiter.name": recruiter_name or "Recruiting Team",
        "recruiter.email": recruiter_email or "",
    }


def substitute_placeholders(content: str, variables: dict[str, str]) -> str:
    """Replace ``{{ name }}`` placeholders; unknown or empty ones stay as written."""

    def _replace(match: re.Match) -> str:
        value = variables.get(match.group(1).strip())
        return value if value else match.group(0)

    return PLACEHOLDER_PATTERN.sub(_replace, content)


class DatabaseTemplateService:
    """Email templates stored in the email_templates table."""

    COLUMNS = "id, subject, html_body, text_body, stage, category"

    async def resolve_template(self, template_id: str) -> EmailTemplate | None:
        row = await fetch_one(
            f"SELECT {self.COLUMNS} FROM email_templates WHERE id = %s",
            (template_id,),
        )
        return self._from_row(row)

    async def resolve_stage_template(self, stage: str, job_id: str | None) -> EmailTemplate | None:
        """Job-specific active template for the stage, else the global default."""

        if job_id:
            row = await fetch_one(
                f"""
                SELECT {self.COLUMNS} FROM email_templates
                WHERE stage = %s AND job_id = %s AND is_active = TRUE
                ORDER BY is_default DESC
                LIMIT 1
                """,
                (stage, job_id),
            )
            if row:
                return self._from_row(row)

        row = await fetch_one(
            f"""
            SELECT {self.COLUMNS} FROM email_templates
            WHERE stage = %s AND job_id IS NULL AND is_active = TRUE AND is_default = TRUE
            LIMIT 1
            """,
            (stage,),
        )
        return self._from_row(row)

    async def resolve_reminder_template(self) -> EmailTemplate | None:
        row = await fetch_one(
            f"""
            SELECT {self.COLUMNS} FROM email_templates
            WHERE category = 'reminder' AND is_active = TRUE AND is_default = TRUE
            LIMIT 1
            """
        )
        return self._from_row(row)

    def render(self, template: EmailTemplate, variables: dict[str, str]) -> RenderedEmail:
        text_source = template.text_body or TAG_PATTERN.sub("", template.html_body)
        return RenderedEmail(
            subject=substitute_placeholders(template.subject, variables),
            html_body=substitute_placeholders(template.html_body, variables),
            text_body=substitute_placeholders(text_source, variables),
        )

    @staticmethod
    def _from_row(row: dict | None) -> EmailTemplate | None:
        if not row:
            return None
        return EmailTemplate(
            id=str(row["id"]),
            subject=row["subject"],
            html_body=row["html_body"],
            text_body=row.get("text_body"),
            stage=row.get("stage"),
            category=row.get("category"),
        )


class HttpEmailTransport:
    """
    Posts outbound candidate email to the platform's mail service.

    A single POST per call with no internal retry: a retried request could
    deliver twice, so retries belong to the job queue where the action's
    claim guards them.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url if base_url is not None else settings.EMAIL_TRANSPORT_URL
        self.api_key = api_key if api_key is not None else settings.EMAIL_TRANSPORT_API_KEY
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout or settings.EMAIL_TRANSPORT_TIMEOUT)
        )

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def send(self, email: OutboundEmail) -> SendResult:
        if not self.base_url:
            raise ConfigurationError("EMAIL_TRANSPORT_URL is not configured", operation="send_email")

        payload = {
            "candidateId": email.candidate_id,
            "to": email.to,
            "subject": email.subject,
            "htmlBody": email.html_body,
            "textBody": email.text_body,
            "recruiterId": email.sender_id,
            "recruiterEmail": email.from_email,
            "recruiterName": email.from_name,
            "templateId": email.template_id,
            "replyToEmailId": email.reply_to_id,
        }

        try:
            response = await self._client.post(
                f"{self.base_url.rstrip('/')}/emails", json=payload, headers=self._headers()
            )
        except httpx.RequestError as e:
            logger.error("Email transport request failed", error=str(e), error_type=type(e).__name__)
            return SendResult(success=False, error=f"Transport request failed: {e}")

        if not response.is_success:
            logger.error(
                "Email transport rejected message",
                status_code=response.status_code,
                candidate_id=email.candidate_id,
            )
            return SendResult(success=False, error=f"Transport returned HTTP {response.status_code}")

        try:
            data = response.json() if response.text else {}
        except ValueError:
            data = {}

        email_id = data.get("emailId") or data.get("id")
        if data.get("success") is False:
            return SendResult(success=False, error=data.get("error") or "Transport reported failure")
        return SendResult(success=True, email_id=str(email_id) if email_id else None)


class AppAccountIdentityDirectory:
    """Canonical work email as provisioned in the workspace app account."""

    async def lookup_canonical_email(self, employee_id: str) -> str | None:
        row = await fetch_one(
            """
            SELECT external_email
            FROM app_accounts
            WHERE employee_id = %s
              AND app_type = %s
              AND status = ANY(%s)
              AND external_email IS NOT NULL
            LIMIT 1
            """,
            (employee_id, GOOGLE_WORKSPACE_APP, IDENTITY_ACCOUNT_STATUSES),
        )
        return row["external_email"] if row else None
