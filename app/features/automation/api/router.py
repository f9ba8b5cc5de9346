"""
Automation ops routes.

Lives in the feature package so every HTTP endpoint for the lifecycle
automation engine stays in one place. All routes require the service token.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from app.auth.verify import auth_dependency
from app.db.helpers import DatabaseError
from app.features.automation.domain import AutomationError, Recruiter, StageTransition
from app.features.automation.repository.queued_action_repository import serialize_action
from app.features.automation.services.engine import AutomationEngine
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/automation", tags=["automation"], dependencies=[Depends(auth_dependency)])


class RecruiterPayload(BaseModel):
    id: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    name: str | None = None


class StageTransitionRequest(BaseModel):
    """A candidate moved between pipeline stages."""

    candidate_id: str = Field(..., min_length=1)
    to_stage: str = Field(..., min_length=1)
    from_stage: str | None = None
    job_id: str | None = None
    recruiter: RecruiterPayload
    template_id: str | None = None
    skip_auto_email: bool = False


class TriggerRequest(BaseModel):
    employee_id: str | None = None


def get_engine(request: Request) -> AutomationEngine:
    engine = getattr(request.app.state, "automation_engine", None)
    if engine is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Automation engine not ready")
    return engine


@router.post("/stage-transitions", status_code=status.HTTP_202_ACCEPTED)
async def record_stage_transition(
    body: StageTransitionRequest, engine: AutomationEngine = Depends(get_engine)
) -> dict:
    transition = StageTransition(
        subject_id=body.candidate_id,
        from_state=body.from_stage,
        to_state=body.to_stage,
        recruiter=Recruiter(id=body.recruiter.id, email=body.recruiter.email, name=body.recruiter.name),
        job_id=body.job_id,
        template_id=body.template_id,
        skip_auto_email=body.skip_auto_email,
    )

    try:
        result = await engine.on_stage_change(transition)
    except AutomationError as e:
        logger.warning("Stage transition rejected", candidate_id=body.candidate_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)) from e
    except DatabaseError as e:
        logger.error("Stage transition failed", candidate_id=body.candidate_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database unavailable") from e

    stage_email = result.stage_email
    return {
        "stage_email": (
            {
                "action_id": stage_email.action_id,
                "job_id": stage_email.job_id,
                "duplicate": stage_email.duplicate,
            }
            if stage_email
            else None
        ),
        "hire_flow_job_id": result.hire_flow_job_id,
    }


@router.get("/stats")
async def automation_stats(engine: AutomationEngine = Depends(get_engine)) -> dict:
    return await engine.stats()


@router.get("/subjects/{subject_id}/pending")
async def pending_actions(subject_id: str, engine: AutomationEngine = Depends(get_engine)) -> dict:
    actions = await engine.stage_emails.pending_for_subject(subject_id)
    return {"subject_id": subject_id, "actions": [serialize_action(action) for action in actions]}


@router.post("/actions/{action_id}/cancel")
async def cancel_action(action_id: str, engine: AutomationEngine = Depends(get_engine)) -> dict:
    if not await engine.stage_emails.cancel(action_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Action is not pending")
    return {"action_id": action_id, "status": "CANCELLED"}


@router.post("/actions/{action_id}/skip")
async def skip_action(action_id: str, engine: AutomationEngine = Depends(get_engine)) -> dict:
    if not await engine.stage_emails.request_skip(action_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Action is not pending")
    return {"action_id": action_id, "skip_requested": True}


@router.post("/sweeps/{job_name}", status_code=status.HTTP_202_ACCEPTED)
async def trigger_sweep(
    job_name: str, body: TriggerRequest | None = None, engine: AutomationEngine = Depends(get_engine)
) -> dict:
    data = body.model_dump(exclude_none=True) if body else {}
    try:
        job_id = await engine.trigger(job_name, data)
    except KeyError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown sweep '{job_name}'. Available: {', '.join(engine.triggerable_jobs())}",
        ) from e
    return {"job_name": job_name, "job_id": job_id}


@router.get("/identity/preview")
async def identity_preview(engine: AutomationEngine = Depends(get_engine)) -> dict:
    mismatches = await engine.identity_sync.find_mismatches()
    return {
        "count": len(mismatches),
        "employees": [
            {
                "id": mismatch.employee_id,
                "full_name": mismatch.full_name,
                "current_work_email": mismatch.old_email,
                "workspace_email": mismatch.new_email,
            }
            for mismatch in mismatches
        ],
    }
