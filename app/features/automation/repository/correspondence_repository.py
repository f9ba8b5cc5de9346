"""
Read-side access to candidate email threads, recruiters and email settings.
"""

from datetime import datetime

from app.db.helpers import fetch_one
from app.features.automation.domain import SentEmail
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class CorrespondenceRepository:
    """Queries used to decide whether a follow-up is still warranted."""

    @classmethod
    async def load_sent_email(cls, email_id: str) -> SentEmail | None:
        row = await fetch_one(
            """
            SELECT id, thread_id, subject, sent_at, from_email, from_name
            FROM candidate_emails
            WHERE id = %s
            """,
            (email_id,),
        )
        if not row:
            return None
        return SentEmail(
            id=str(row["id"]),
            thread_id=str(row["thread_id"]),
            subject=row.get("subject"),
            sent_at=row.get("sent_at"),
            from_email=row.get("from_email"),
            from_name=row.get("from_name"),
        )

    @classmethod
    async def has_inbound_reply(cls, thread_id: str, after: datetime | None) -> bool:
        """True when the candidate wrote on the thread after ``after``."""

        if after is None:
            query = """
                SELECT 1 AS found FROM candidate_emails
                WHERE thread_id = %s AND direction = 'INBOUND'
                LIMIT 1
            """
            params: tuple = (thread_id,)
        else:
            query = """
                SELECT 1 AS found FROM candidate_emails
                WHERE thread_id = %s
                  AND direction = 'INBOUND'
                  AND sent_at > %s
                LIMIT 1
            """
            params = (thread_id, after)

        return await fetch_one(query, params) is not None

    @classmethod
    async def resolve_recruiter_user(cls, recruiter_id: str | None) -> str | None:
        """
        Map a recruiter reference to an in-app user id.

        Recruiters are recorded either by user id or by employee id.
        """

        if not recruiter_id:
            return None
        row = await fetch_one(
            "SELECT id FROM users WHERE id::text = %s OR employee_id::text = %s LIMIT 1",
            (recruiter_id, recruiter_id),
        )
        return str(row["id"]) if row else None

    @classmethod
    async def load_auto_send_stages(cls) -> dict | None:
        row = await fetch_one("SELECT auto_send_stages FROM email_settings LIMIT 1")
        if not row:
            return None
        return row.get("auto_send_stages")
