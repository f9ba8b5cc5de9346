"""
Durable job queue backed by PostgreSQL.

Jobs live in automation_jobs and are fetched with FOR UPDATE SKIP LOCKED,
so several worker processes can poll the same table. Delivery is
at-least-once: a handler that raises is retried after ``retry_delay`` until
``retry_limit`` is spent, unless the exception is tagged
``retryable = False``. Recurring jobs are cron rows in automation_schedules;
each tick is fired by whichever instance advances ``next_run_at`` first.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from croniter import croniter
from psycopg.types.json import Jsonb

from app.config import settings
from app.db.helpers import execute_query, fetch_all, fetch_one
from app.infrastructure.observability.logging import bind_job_context, clear_job_context, get_logger

logger = get_logger(__name__)

ACTIVE_EXPIRY_MINUTES = 15
MAX_ERROR_LENGTH = 500


@dataclass(slots=True)
class Job:
    """A single delivery of a queued job to its handler."""

    id: str
    name: str
    data: dict[str, Any] = field(default_factory=dict)
    retry_count: int = 0
    retry_limit: int = 0

    @property
    def is_final_attempt(self) -> bool:
        return self.retry_count >= self.retry_limit


JobHandler = Callable[[Job], Awaitable[Any]]


class JobQueue(Protocol):
    async def enqueue(
        self,
        name: str,
        data: dict[str, Any] | None = None,
        *,
        start_after: datetime | None = None,
        retry_limit: int = 0,
        retry_delay: int = 0,
        retry_backoff: bool = False,
    ) -> str | None: ...

    async def schedule_recurring(self, name: str, cron: str, data: dict[str, Any] | None = None) -> None: ...

    def register_handler(self, name: str, handler: JobHandler) -> None: ...

    async def start(self) -> None: ...

    async def stop(self, graceful: bool = True) -> None: ...

    async def job_counts(self) -> dict[str, dict[str, int]]: ...


def retry_delay_for(job_row: dict) -> int:
    """Seconds to wait before the next attempt of a failed job."""
    delay = job_row.get("retry_delay_seconds") or 0
    if job_row.get("retry_backoff"):
        delay = delay * (2 ** (job_row.get("retry_count") or 0))
    return delay


def next_cron_run(cron: str, after: datetime) -> datetime:
    return croniter(cron, after).get_next(datetime)


class PostgresJobQueue:
    """
    Queue client with explicit lifecycle.

    Usage:
        queue = PostgresJobQueue()
        queue.register_handler("stage-email-send", dispatcher.handle)
        await queue.start()
        ...
        await queue.stop()
    """

    def __init__(
        self,
        poll_interval: float | None = None,
        batch_size: int | None = None,
        schedule_interval: float | None = None,
    ):
        self.poll_interval = poll_interval or settings.QUEUE_POLL_INTERVAL_SECONDS
        self.batch_size = batch_size or settings.QUEUE_FETCH_BATCH_SIZE
        self.schedule_interval = schedule_interval or settings.QUEUE_SCHEDULE_INTERVAL_SECONDS
        self._handlers: dict[str, JobHandler] = {}
        self._loops: list[asyncio.Task] = []
        self._in_flight: set[asyncio.Task] = set()
        self._stopping = asyncio.Event()
        self.is_running = False

    # ------------------------------------------------------------------
    # Producer API
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        name: str,
        data: dict[str, Any] | None = None,
        *,
        start_after: datetime | None = None,
        retry_limit: int = 0,
        retry_delay: int = 0,
        retry_backoff: bool = False,
    ) -> str | None:
        row = await fetch_one(
            """
            INSERT INTO automation_jobs (
                name, data, start_after, retry_limit, retry_delay_seconds, retry_backoff
            )
            VALUES (%s, %s, COALESCE(%s, NOW()), %s, %s, %s)
            RETURNING id
            """,
            (name, Jsonb(data or {}), start_after, retry_limit, retry_delay, retry_backoff),
        )
        job_id = str(row["id"]) if row else None
        logger.info(
            "Job enqueued",
            job_name=name,
            job_id=job_id,
            start_after=start_after.isoformat() if start_after else None,
            retry_limit=retry_limit,
        )
        return job_id

    async def schedule_recurring(self, name: str, cron: str, data: dict[str, Any] | None = None) -> None:
        if not croniter.is_valid(cron):
            raise ValueError(f"Invalid cron expression for {name}: {cron}")

        next_run_at = next_cron_run(cron, datetime.now(UTC))
        # An unchanged cron keeps its pending tick across restarts
        await execute_query(
            """
            INSERT INTO automation_schedules (name, cron, data, next_run_at)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (name) DO UPDATE SET
                data = EXCLUDED.data,
                next_run_at = CASE
                    WHEN automation_schedules.cron = EXCLUDED.cron THEN automation_schedules.next_run_at
                    ELSE EXCLUDED.next_run_at
                END,
                cron = EXCLUDED.cron,
                updated_at = NOW()
            """,
            (name, cron, Jsonb(data or {}), next_run_at),
        )
        logger.info("Recurring job scheduled", job_name=name, cron=cron)

    def register_handler(self, name: str, handler: JobHandler) -> None:
        self._handlers[name] = handler
        logger.info("Job handler registered", job_name=name)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.is_running:
            logger.warning("Job queue already running")
            return

        self._stopping.clear()
        self.is_running = True
        self._loops = [
            asyncio.create_task(self._poll_loop(), name="job-queue-poll"),
            asyncio.create_task(self._schedule_loop(), name="job-queue-schedule"),
        ]
        logger.info(
            "Job queue started",
            handlers=sorted(self._handlers),
            poll_interval=self.poll_interval,
            batch_size=self.batch_size,
        )

    async def stop(self, graceful: bool = True, timeout: float = 30.0) -> None:
        if not self.is_running:
            return

        self._stopping.set()
        for task in self._loops:
            task.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops = []

        if self._in_flight:
            if graceful:
                logger.info("Waiting for in-flight jobs", count=len(self._in_flight))
                _, pending = await asyncio.wait(self._in_flight, timeout=timeout)
            else:
                pending = set(self._in_flight)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("In-flight jobs cancelled at shutdown", count=len(pending))

        self.is_running = False
        logger.info("Job queue stopped", graceful=graceful)

    async def _poll_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                fetched = await self.work_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Job fetch failed", error=str(e), error_type=type(e).__name__)
                fetched = 0

            if fetched < self.batch_size:
                await asyncio.sleep(self.poll_interval)

    async def _schedule_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.fire_due_schedules()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Schedule tick failed", error=str(e), error_type=type(e).__name__)
            await asyncio.sleep(self.schedule_interval)

    # ------------------------------------------------------------------
    # Consumer internals
    # ------------------------------------------------------------------

    async def work_once(self) -> int:
        """Fetch one batch of due jobs and run them concurrently."""
        if not self._handlers:
            return 0

        rows = await fetch_all(
            f"""
            UPDATE automation_jobs
            SET state = 'active', started_at = NOW()
            WHERE id IN (
                SELECT id FROM automation_jobs
                WHERE name = ANY(%s)
                  AND start_after <= NOW()
                  AND (
                      state IN ('created', 'retry')
                      OR (state = 'active' AND started_at < NOW() - INTERVAL '{ACTIVE_EXPIRY_MINUTES} minutes')
                  )
                ORDER BY start_after
                LIMIT %s
                FOR UPDATE SKIP LOCKED
            )
            RETURNING id, name, data, retry_count, retry_limit, retry_delay_seconds, retry_backoff
            """,
            (list(self._handlers), self.batch_size),
        )

        tasks = [asyncio.create_task(self._run(row)) for row in rows]
        for task in tasks:
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        return len(rows)

    async def _run(self, row: dict) -> None:
        job = Job(
            id=str(row["id"]),
            name=row["name"],
            data=row.get("data") or {},
            retry_count=row.get("retry_count") or 0,
            retry_limit=row.get("retry_limit") or 0,
        )
        handler = self._handlers.get(job.name)

        bind_job_context(job.id, job.name)
        try:
            if handler is None:
                await self._mark_failed(job, f"No handler registered for {job.name}")
                return

            try:
                await handler(job)
            except Exception as exc:
                await self._handle_failure(job, row, exc)
                return

            await execute_query(
                "UPDATE automation_jobs SET state = 'completed', completed_at = NOW() WHERE id = %s",
                (job.id,),
            )
            logger.debug("Job completed")
        finally:
            clear_job_context()

    async def _handle_failure(self, job: Job, row: dict, exc: Exception) -> None:
        error = f"{type(exc).__name__}: {exc}"[:MAX_ERROR_LENGTH]
        retryable = getattr(exc, "retryable", True)

        if retryable and not job.is_final_attempt:
            delay = retry_delay_for(row)
            await execute_query(
                """
                UPDATE automation_jobs
                SET state = 'retry',
                    retry_count = retry_count + 1,
                    start_after = NOW() + make_interval(secs => %s),
                    last_error = %s
                WHERE id = %s
                """,
                (delay, error, job.id),
            )
            logger.warning(
                "Job failed, retry scheduled",
                error=error,
                retry_count=job.retry_count + 1,
                retry_limit=job.retry_limit,
                delay_seconds=delay,
            )
            return

        await self._mark_failed(job, error)
        logger.error("Job failed permanently", error=error, retryable=retryable, retry_count=job.retry_count)

    async def _mark_failed(self, job: Job, error: str) -> None:
        await execute_query(
            """
            UPDATE automation_jobs
            SET state = 'failed', last_error = %s, completed_at = NOW()
            WHERE id = %s
            """,
            (error, job.id),
        )

    async def fire_due_schedules(self) -> int:
        """Enqueue one job per due cron schedule; returns the number fired."""
        now = datetime.now(UTC)
        rows = await fetch_all(
            "SELECT name, cron, data, next_run_at FROM automation_schedules WHERE next_run_at <= %s",
            (now,),
        )

        fired = 0
        for row in rows:
            next_run_at = next_cron_run(row["cron"], now)
            won = await execute_query(
                """
                UPDATE automation_schedules
                SET next_run_at = %s, updated_at = NOW()
                WHERE name = %s AND next_run_at = %s
                """,
                (next_run_at, row["name"], row["next_run_at"]),
            )
            if not won:
                continue
            await self.enqueue(row["name"], row.get("data") or {})
            fired += 1
        return fired

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def queue_size(self, name: str | None = None, state: str | None = None) -> int:
        """Count jobs waiting to run (created or retry), optionally by name or exact state."""
        conditions = []
        params: list[Any] = []
        if name:
            conditions.append("name = %s")
            params.append(name)
        if state:
            conditions.append("state = %s")
            params.append(state)
        else:
            conditions.append("state IN ('created', 'retry')")

        row = await fetch_one(
            f"SELECT COUNT(*) AS total FROM automation_jobs WHERE {' AND '.join(conditions)}",
            tuple(params),
        )
        return row["total"] if row else 0

    async def job_counts(self) -> dict[str, dict[str, int]]:
        rows = await fetch_all("SELECT name, state, COUNT(*) AS total FROM automation_jobs GROUP BY name, state")
        counts: dict[str, dict[str, int]] = {}
        for row in rows:
            counts.setdefault(row["name"], {})[row["state"]] = row["total"]
        return counts
