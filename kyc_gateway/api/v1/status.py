"""Client-facing job status."""

from fastapi import APIRouter, Depends, HTTPException

from kyc_gateway.api.deps import Services, get_services
from kyc_gateway.jobs.errors import NotFoundError
from kyc_gateway.jobs.models import JobState

router = APIRouter()


@router.get("/status/{user_id}/{job_id}")
async def get_job_status(user_id: str, job_id: str, services: Services = Depends(get_services)):
    """Current projection of a job; starts polling for SUBMITTED jobs."""
    job = await services.engine.refresh(job_id)
    if job.user_id != user_id:
        raise NotFoundError(f"Job {job_id} not found", job_id)

    if job.state == JobState.SUBMITTED:
        services.poller.watch(job_id)

    return job.projection()


@router.get("/jobs/{job_id}")
async def get_job_record(job_id: str, services: Services = Depends(get_services)):
    """Full persisted job record."""
    job = await services.engine.get_job(job_id)
    return job.model_dump(mode="json", by_alias=True, exclude={"pending_result"})


@router.get("/incidents")
async def list_incidents(
    kind: str = None,
    limit: int = 100,
    services: Services = Depends(get_services),
):
    """Operator journal: inconsistent callbacks and reconciliation conflicts."""
    if limit < 1:
        raise HTTPException(status_code=400, detail="limit must be positive")
    entries = services.engine.incidents.entries(kind=kind, limit=limit)
    return {"incidents": entries, "count": len(entries)}
