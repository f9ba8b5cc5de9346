from datetime import timedelta

import pytest

from app.features.automation.domain import Employee
from app.features.automation.services.sweeps import AutoActivationSweep, IdentityReconciliationSweep
from app.jobs.queue import Job


@pytest.fixture
def staff(hires, clock):
    hires.employees.update(
        {
            "emp-due": Employee(
                id="emp-due",
                full_name="Due Person",
                personal_email="due@example.com",
                status="HIRED_PENDING_START",
                start_date=clock.now - timedelta(days=1),
            ),
            "emp-future": Employee(
                id="emp-future",
                full_name="Future Person",
                personal_email="future@example.com",
                status="OFFER_SIGNED",
                start_date=clock.now + timedelta(days=5),
            ),
            "emp-candidate": Employee(
                id="emp-candidate",
                full_name="Still Candidate",
                personal_email="candidate@example.com",
                status="CANDIDATE",
                start_date=clock.now - timedelta(days=10),
            ),
            "emp-exited": Employee(
                id="emp-exited",
                full_name="Gone Person",
                personal_email="gone@example.com",
                status="EXITED",
                work_email="gone@old.example.com",
            ),
        }
    )
    return hires


@pytest.fixture
def activation(staff, clock):
    return AutoActivationSweep(staff, clock=clock, statuses=["OFFER_SIGNED", "HIRED_PENDING_START"])


@pytest.mark.asyncio
async def test_auto_activation_flips_only_due_employees(activation, staff):
    result = await activation.run()

    assert result["employee_ids"] == ["emp-due"]
    assert result["updated"] == 1
    assert staff.employees["emp-due"].status == "ACTIVE"
    assert staff.employees["emp-future"].status == "OFFER_SIGNED"
    assert staff.employees["emp-candidate"].status == "CANDIDATE"


@pytest.mark.asyncio
async def test_auto_activation_is_idempotent(activation):
    await activation.run()
    again = await activation.run()

    assert again["employee_ids"] == []


@pytest.mark.asyncio
async def test_auto_activation_single_employee_from_job(activation, staff, clock):
    clock.advance(days=6)

    result = await activation.handle(Job(id="job-1", name="auto-activate-employees", data={"employee_id": "emp-future"}))

    assert result["employee_ids"] == ["emp-future"]
    assert staff.employees["emp-due"].status == "HIRED_PENDING_START"


@pytest.mark.asyncio
async def test_identity_sync_updates_mismatched_work_emails(staff, identity, audit):
    identity.emails.update(
        {
            "emp-due": "due@corp.example.com",
            "emp-future": None,
            "emp-exited": "gone@corp.example.com",
        }
    )
    staff.employees["emp-candidate"].work_email = "candidate@corp.example.com"
    identity.emails["emp-candidate"] = "candidate@corp.example.com"
    sweep = IdentityReconciliationSweep(staff, identity, audit)

    result = await sweep.run(triggered_by="manual")

    assert result["updated"] == 1
    assert result["updates"] == [
        {"employee_id": "emp-due", "old_email": None, "new_email": "due@corp.example.com"}
    ]
    assert staff.employees["emp-due"].work_email == "due@corp.example.com"
    assert staff.employees["emp-exited"].work_email == "gone@old.example.com"

    (event,) = audit.events
    assert event["action"] == "WORK_EMAIL_SYNCED"
    assert event["source"] == "google_workspace_sync"
    assert event["triggeredBy"] == "manual"
    assert event["newEmail"] == "due@corp.example.com"


@pytest.mark.asyncio
async def test_identity_preview_does_not_write(staff, identity, audit):
    identity.emails["emp-due"] = "due@corp.example.com"
    sweep = IdentityReconciliationSweep(staff, identity, audit)

    mismatches = await sweep.find_mismatches()

    assert [m.employee_id for m in mismatches] == ["emp-due"]
    assert mismatches[0].new_email == "due@corp.example.com"
    assert staff.employees["emp-due"].work_email is None
    assert audit.events == []


@pytest.mark.asyncio
async def test_identity_sync_isolates_lookup_failures(staff, identity, audit):
    identity.emails["emp-future"] = "future@corp.example.com"
    identity.errors["emp-due"] = RuntimeError("directory timeout")
    sweep = IdentityReconciliationSweep(staff, identity, audit)

    result = await sweep.run()

    assert result["failed"] == 1
    assert result["updated"] == 1
    assert result["errors"][0]["item_id"] == "emp-due"
    assert staff.employees["emp-future"].work_email == "future@corp.example.com"


@pytest.mark.asyncio
async def test_identity_sync_skips_concurrently_edited_employee(staff, identity, audit, monkeypatch):
    identity.emails["emp-due"] = "due@corp.example.com"
    sweep = IdentityReconciliationSweep(staff, identity, audit)
    original = staff.update_work_email

    async def edited_meanwhile(employee_id, expected_old, new_email):
        staff.employees[employee_id].work_email = "manual@corp.example.com"
        return await original(employee_id, expected_old, new_email)

    monkeypatch.setattr(staff, "update_work_email", edited_meanwhile)

    result = await sweep.run()

    assert result["skipped"] == 1
    assert result["updated"] == 0
    assert staff.employees["emp-due"].work_email == "manual@corp.example.com"
    assert audit.events == []
