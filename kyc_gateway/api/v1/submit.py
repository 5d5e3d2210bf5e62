"""Evidence submission."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from kyc_gateway.api.deps import Services, get_services
from kyc_gateway.providers.base import Evidence

router = APIRouter()


class SubmitRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    job_id: str
    evidence: Evidence


@router.post("/submit")
async def submit_evidence(request: SubmitRequest, services: Services = Depends(get_services)):
    """Forward captured evidence and start reconciliation polling for the job."""
    engine = services.engine

    job = await engine.get_job(request.job_id)
    missing = request.evidence.missing_id_fields(job.product)
    if missing:
        raise HTTPException(
            status_code=422,
            detail={
                "message": "Missing required customer information for government database matching",
                "missing_fields": missing,
            },
        )

    job = await engine.submit(request.job_id, request.evidence)
    services.poller.watch(job.job_id)

    return {"accepted": True, "jobId": job.job_id, "state": job.state.value}
