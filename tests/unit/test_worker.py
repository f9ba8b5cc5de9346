from unittest.mock import AsyncMock

import pytest

from app.jobs import worker


@pytest.mark.asyncio
async def test_run_worker_runs_job(monkeypatch):
    called = {"ok": False}

    async def dummy_job():
        called["ok"] = True

    monkeypatch.setitem(worker.JOB_REGISTRY, "dummy", dummy_job)

    await worker.run_worker("dummy")

    assert called["ok"] is True


@pytest.mark.asyncio
async def test_run_worker_unknown_job():
    with pytest.raises(ValueError):
        await worker.run_worker("missing")


@pytest.mark.asyncio
async def test_run_worker_manages_pool_around_job(monkeypatch):
    events = []

    async def failing_job():
        events.append("job")
        raise RuntimeError("sweep crashed")

    pool = AsyncMock()
    pool.initialize.side_effect = lambda: events.append("init")
    pool.close.side_effect = lambda: events.append("close")
    monkeypatch.setattr(worker, "db_pool", pool)
    monkeypatch.setitem(worker.JOB_REGISTRY, "dummy", failing_job)

    with pytest.raises(RuntimeError):
        await worker.run_worker("dummy", manage_pool=True)

    assert events == ["init", "job", "close"]


def test_job_name_defaults_to_automation(monkeypatch):
    monkeypatch.setattr(worker.sys, "argv", ["worker"])
    monkeypatch.delenv("WORKER_JOB", raising=False)

    assert worker._resolve_job_name() == "automation"


def test_job_name_from_environment_and_args(monkeypatch):
    monkeypatch.setattr(worker.sys, "argv", ["worker"])
    monkeypatch.setenv("WORKER_JOB", " Reminders ")
    assert worker._resolve_job_name() == "reminders"

    monkeypatch.setattr(worker.sys, "argv", ["worker", "work_email_sync"])
    assert worker._resolve_job_name() == "work_email_sync"


@pytest.mark.asyncio
async def test_one_shot_sweeps_use_engine_components(monkeypatch):
    engine = AsyncMock()
    monkeypatch.setattr(worker, "build_engine", lambda: engine)

    await worker.run_reminder_sweep()
    await worker.run_work_email_sync()

    engine.reminders.run_reminder_sweep.assert_awaited_once()
    engine.identity_sync.run.assert_awaited_once_with(triggered_by="cli")
