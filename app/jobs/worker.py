"""
Background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable. "automation" (the default) runs the queue consumer until SIGINT /
SIGTERM; the other names run a single sweep once and exit, which is handy
from cron or a shell.
"""

import asyncio
import os
import signal
import sys
from collections.abc import Awaitable, Callable

from app.config import settings
from app.db.pool import db_pool
from app.features.automation.services.engine import AutomationEngine
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.jobs.queue import PostgresJobQueue

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]


def build_engine() -> AutomationEngine:
    return AutomationEngine(queue=PostgresJobQueue())


async def run_automation_worker() -> None:
    """Consume automation jobs until a shutdown signal arrives."""
    engine = build_engine()
    await engine.register()
    await engine.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass

    try:
        await stop_event.wait()
    finally:
        logger.info("Shutdown signal received, stopping automation worker")
        await engine.stop(graceful=True)


async def run_reminder_sweep() -> None:
    await build_engine().reminders.run_reminder_sweep()


async def run_escalation_sweep() -> None:
    await build_engine().reminders.run_escalation_sweep()


async def run_auto_activation() -> None:
    await build_engine().auto_activation.run()


async def run_work_email_sync() -> None:
    await build_engine().identity_sync.run(triggered_by="cli")


JOB_REGISTRY: dict[str, JobCoroutine] = {
    "automation": run_automation_worker,
    "reminders": run_reminder_sweep,
    "escalations": run_escalation_sweep,
    "auto_activate": run_auto_activation,
    "work_email_sync": run_work_email_sync,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "automation").strip().lower()


async def run_worker(job_name: str | None = None, manage_pool: bool = False) -> None:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    if not manage_pool:
        await JOB_REGISTRY[name]()
        return

    await db_pool.initialize()
    try:
        await JOB_REGISTRY[name]()
    finally:
        await db_pool.close()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(log_level=settings.LOG_LEVEL)
    job_name = _resolve_job_name()
    asyncio.run(run_worker(job_name, manage_pool=True))


if __name__ == "__main__":
    main()
