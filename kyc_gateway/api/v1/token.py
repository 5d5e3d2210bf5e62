"""Token issuance for the client capture SDK."""

import time
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from kyc_gateway.api.deps import Services, get_services
from kyc_gateway.jobs.errors import NotFoundError
from kyc_gateway.jobs.models import PRODUCT_CATALOG, Product, utcnow

router = APIRouter()


class TokenRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_id: Optional[str] = None
    product: Product = Product.BIOMETRIC_KYC
    callback_url: Optional[str] = None
    # Retry issuance for a job whose earlier token request failed
    job_id: Optional[str] = None


@router.post("/token")
async def generate_token(request: TokenRequest, services: Services = Depends(get_services)):
    """Create a job and issue its short-lived web token.

    With ``jobId`` the token is issued for that existing CREATED job instead
    of a new one; product is then taken from the job.

    Returns:
        {jobId, token, userId, partnerId, environment, product, duration}
    """
    started = time.perf_counter()
    engine = services.engine

    if request.job_id:
        job = await engine.get_job(request.job_id)
        if request.user_id and job.user_id != request.user_id:
            raise NotFoundError(f"Job {request.job_id} not found", request.job_id)
    else:
        job = await engine.create_job(request.user_id, request.product)
    job, token = await engine.issue_token(job.job_id, request.callback_url)

    return {
        "jobId": job.job_id,
        "token": token,
        "userId": job.user_id,
        "partnerId": services.settings.smile_partner_id,
        "environment": services.settings.environment,
        "product": job.product.value,
        "duration": int((time.perf_counter() - started) * 1000),
    }


@router.get("/token/products")
async def list_products():
    """Verification products a token can be issued for."""
    return {"success": True, "products": PRODUCT_CATALOG, "timestamp": utcnow().isoformat()}


@router.post("/token/test")
async def check_connection(services: Services = Depends(get_services)):
    """Signer connectivity check (debugging). Creates no job."""
    return await services.engine.check_signer()
