"""
Persistence for the hire flow and the employee sweeps.

Candidates, jobs and templates are owned by the CRUD side of the platform;
this repository only reads them. Employees and offers are written here, each
write keyed so that a retried hire flow converges on the same rows.
"""

from datetime import datetime

from psycopg.types.json import Jsonb

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, with_db_retry
from app.db.pool import get_db_transaction
from app.features.automation.domain import (
    ACTIVE_OFFER_STATUSES,
    Candidate,
    Employee,
    EmployeeData,
    JobPosting,
    NewOffer,
    Offer,
    OfferStatus,
    OfferTemplate,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class HireRepositoryError(DatabaseError):
    """Raised when an employee or offer write fails."""


def _employee_from_row(row: dict | None) -> Employee | None:
    if not row:
        return None
    return Employee(
        id=str(row["id"]),
        full_name=row["full_name"],
        personal_email=row["personal_email"],
        status=row["status"],
        candidate_id=str(row["candidate_id"]) if row.get("candidate_id") else None,
        work_email=row.get("work_email"),
        start_date=row.get("start_date"),
    )


class HireRepository:
    """Reads candidates/templates and writes employees/offers."""

    EMPLOYEE_COLUMNS = "id, full_name, personal_email, status, candidate_id, work_email, start_date"

    # ------------------------------------------------------------------
    # Candidates
    # ------------------------------------------------------------------

    @classmethod
    async def load_candidate(cls, candidate_id: str) -> Candidate | None:
        query = """
            SELECT
                c.id, c.name, c.email, c.phone, c.location, c.current_role,
                c.current_company, c.stage, c.notice_period, c.salary_exp_max,
                c.salary_exp_currency,
                j.id AS job_id, j.title AS job_title, j.department AS job_department,
                j.locations AS job_locations, j.employment_type AS job_employment_type,
                j.default_offer_template_id,
                e.id AS employee_id
            FROM job_candidates c
            JOIN jobs j ON j.id = c.job_id
            LEFT JOIN employees e ON e.candidate_id = c.id
            WHERE c.id = %s
        """
        row = await fetch_one(query, (candidate_id,))
        if not row:
            return None

        job = JobPosting(
            id=str(row["job_id"]),
            title=row["job_title"],
            department=row.get("job_department"),
            locations=list(row.get("job_locations") or []),
            employment_type=row.get("job_employment_type"),
            default_offer_template_id=(
                str(row["default_offer_template_id"]) if row.get("default_offer_template_id") else None
            ),
        )
        salary = row.get("salary_exp_max")
        return Candidate(
            id=str(row["id"]),
            name=row["name"],
            email=row["email"],
            stage=row["stage"],
            job=job,
            phone=row.get("phone"),
            location=row.get("location"),
            current_role=row.get("current_role"),
            current_company=row.get("current_company"),
            notice_period=row.get("notice_period"),
            salary_exp_max=float(salary) if salary is not None else None,
            salary_exp_currency=row.get("salary_exp_currency"),
            employee_id=str(row["employee_id"]) if row.get("employee_id") else None,
        )

    # ------------------------------------------------------------------
    # Offer templates
    # ------------------------------------------------------------------

    @classmethod
    async def find_offer_template(cls, template_id: str) -> OfferTemplate | None:
        row = await fetch_one(
            "SELECT id, body_html, employment_type FROM offer_templates WHERE id = %s",
            (template_id,),
        )
        return cls._template_from_row(row)

    @classmethod
    async def find_offer_template_for_employment_type(cls, employment_type: str) -> OfferTemplate | None:
        row = await fetch_one(
            """
            SELECT id, body_html, employment_type
            FROM offer_templates
            WHERE employment_type = %s
            ORDER BY created_at ASC
            LIMIT 1
            """,
            (employment_type,),
        )
        return cls._template_from_row(row)

    @classmethod
    async def find_any_offer_template(cls) -> OfferTemplate | None:
        row = await fetch_one(
            """
            SELECT id, body_html, employment_type
            FROM offer_templates
            ORDER BY created_at ASC
            LIMIT 1
            """
        )
        return cls._template_from_row(row)

    @staticmethod
    def _template_from_row(row: dict | None) -> OfferTemplate | None:
        if not row:
            return None
        return OfferTemplate(
            id=str(row["id"]),
            body_html=row["body_html"],
            employment_type=row.get("employment_type"),
        )

    # ------------------------------------------------------------------
    # Employees
    # ------------------------------------------------------------------

    @classmethod
    async def find_employee_by_email(cls, email: str) -> Employee | None:
        query = f"SELECT {cls.EMPLOYEE_COLUMNS} FROM employees WHERE lower(personal_email) = lower(%s)"
        return _employee_from_row(await fetch_one(query, (email,)))

    @classmethod
    async def create_employee(cls, data: EmployeeData) -> Employee:
        """
        Insert a new employee for a candidate.

        ON CONFLICT on personal_email turns a concurrent insert for the same
        contact into an update of the row that won, so a race between two
        hire-flow deliveries still yields one employee.
        """

        query = f"""
            INSERT INTO employees (
                full_name, personal_email, phone, status, job_title, department,
                location, employment_type, candidate_id, salary_amount,
                salary_currency, start_date
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (personal_email) DO UPDATE SET
                candidate_id = EXCLUDED.candidate_id,
                updated_at = NOW()
            RETURNING {cls.EMPLOYEE_COLUMNS}
        """
        row = await fetch_one(
            query,
            (
                data.full_name,
                data.personal_email,
                data.phone,
                data.status,
                data.job_title,
                data.department,
                data.location,
                data.employment_type,
                data.candidate_id,
                data.salary_amount,
                data.salary_currency,
                data.start_date,
            ),
        )
        if not row:
            raise HireRepositoryError("Employee insert returned no row", operation="create_employee")
        return _employee_from_row(row)

    @classmethod
    async def update_employee(cls, employee_id: str, data: EmployeeData) -> Employee:
        query = f"""
            UPDATE employees SET
                full_name = %s,
                personal_email = %s,
                phone = %s,
                status = %s,
                job_title = %s,
                department = %s,
                location = %s,
                employment_type = %s,
                candidate_id = %s,
                salary_amount = %s,
                salary_currency = %s,
                start_date = %s,
                updated_at = NOW()
            WHERE id = %s
            RETURNING {cls.EMPLOYEE_COLUMNS}
        """
        row = await fetch_one(
            query,
            (
                data.full_name,
                data.personal_email,
                data.phone,
                data.status,
                data.job_title,
                data.department,
                data.location,
                data.employment_type,
                data.candidate_id,
                data.salary_amount,
                data.salary_currency,
                data.start_date,
                employee_id,
            ),
        )
        if not row:
            raise HireRepositoryError(f"Employee {employee_id} not found", operation="update_employee")
        return _employee_from_row(row)

    # ------------------------------------------------------------------
    # Offers
    # ------------------------------------------------------------------

    @classmethod
    async def find_active_offer(cls, employee_id: str) -> Offer | None:
        row = await fetch_one(
            """
            SELECT id, employee_id, status, template_id
            FROM offers
            WHERE employee_id = %s AND status = ANY(%s)
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (employee_id, [status.value for status in ACTIVE_OFFER_STATUSES]),
        )
        if not row:
            return None
        return Offer(
            id=str(row["id"]),
            employee_id=str(row["employee_id"]),
            status=OfferStatus(row["status"]),
            template_id=str(row["template_id"]) if row.get("template_id") else None,
        )

    @classmethod
    async def create_offer(cls, offer: NewOffer, event_description: str) -> Offer | None:
        """
        Insert a draft offer and its creation event in one transaction.

        The insert is guarded by NOT EXISTS on an active offer for the same
        employee; None means another delivery created it first.
        """

        async with await get_db_transaction() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    INSERT INTO offers (
                        employee_id, candidate_email, candidate_name, template_id,
                        variables, rendered_html, status
                    )
                    SELECT %s, %s, %s, %s, %s, %s, %s
                    WHERE NOT EXISTS (
                        SELECT 1 FROM offers
                        WHERE employee_id = %s AND status = ANY(%s)
                    )
                    RETURNING id
                    """,
                    (
                        offer.employee_id,
                        offer.candidate_email,
                        offer.candidate_name,
                        offer.template_id,
                        Jsonb(offer.variables),
                        offer.rendered_html,
                        offer.status.value,
                        offer.employee_id,
                        [status.value for status in ACTIVE_OFFER_STATUSES],
                    ),
                )
                row = await cur.fetchone()
                if not row:
                    return None

                await cur.execute(
                    "INSERT INTO offer_events (offer_id, type, description) VALUES (%s, 'created', %s)",
                    (row["id"], event_description),
                )

        return Offer(
            id=str(row["id"]),
            employee_id=offer.employee_id,
            status=offer.status,
            template_id=offer.template_id,
        )

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    @classmethod
    @with_db_retry(max_retries=3)
    async def activate_due_employees(
        cls, statuses: list[str], now: datetime, employee_id: str | None = None
    ) -> list[str]:
        """
        Single conditional update: rows already ACTIVE never match, so the
        statement is safe to repeat.
        """

        query = """
            UPDATE employees
            SET status = 'ACTIVE',
                updated_at = NOW()
            WHERE status = ANY(%s)
              AND start_date IS NOT NULL
              AND start_date <= %s
        """
        params: tuple = (statuses, now)
        if employee_id:
            query += " AND id = %s"
            params += (employee_id,)
        query += " RETURNING id"

        rows = await fetch_all(query, params)
        return [str(row["id"]) for row in rows]

    @classmethod
    async def list_identity_candidates(cls) -> list[Employee]:
        """Employees not yet exited, for work-email reconciliation."""

        query = f"""
            SELECT {cls.EMPLOYEE_COLUMNS}
            FROM employees
            WHERE status <> 'EXITED'
            ORDER BY full_name
        """
        rows = await fetch_all(query)
        return [_employee_from_row(row) for row in rows]

    @classmethod
    async def update_work_email(cls, employee_id: str, expected_old: str | None, new_email: str) -> bool:
        """Compare-and-set the work email so a concurrent edit is not overwritten."""

        query = """
            UPDATE employees
            SET work_email = %s,
                updated_at = NOW()
            WHERE id = %s
              AND work_email IS NOT DISTINCT FROM %s
        """
        return await execute_query(query, (new_email, employee_id, expected_old)) > 0
