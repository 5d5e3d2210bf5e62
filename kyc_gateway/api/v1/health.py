"""Health check endpoint."""

import platform
import sys

from fastapi import APIRouter, Depends

from kyc_gateway.api.deps import Services, get_services
from kyc_gateway.jobs.models import utcnow

router = APIRouter()


@router.get("/health")
async def health_check(services: Services = Depends(get_services)):
    """Service health, provider environment and reconciliation load."""
    config = services.settings
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "environment": config.environment,
        "provider": {
            "mode": config.provider_mode,
            "partner_id": config.smile_partner_id,
            "server": "PRODUCTION" if config.smile_server_mode == 1 else "SANDBOX",
        },
        "job_store": config.job_store_backend,
        "active_pollers": services.poller.active_count,
        "python_version": sys.version,
        "platform": platform.platform(),
    }
