"""Provider callback receiver.

The provider must never be made to retry indefinitely, so every delivery is
acknowledged with 200 once it has been read. Problems with a delivery go to
the incident journal instead of back to the provider. The one exception is a
bad signature when signature checking is enabled.
"""

import json

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from kyc_gateway.api.deps import Services, get_services
from kyc_gateway.jobs.errors import InconsistentCallbackError, LifecycleError
from kyc_gateway.jobs.models import utcnow
from kyc_gateway.logging_config import get_logger
from kyc_gateway.providers.outcome import parse_callback_payload
from kyc_gateway.providers.smileid import HDR_CALLBACK_SIG, verify_callback_signature

logger = get_logger(__name__)

router = APIRouter()


def _ack(received_at: str, job_id=None, processed: bool = True, message: str = "Callback received and processed successfully"):
    return {
        "success": True,
        "processed": processed,
        "message": message,
        "receivedAt": received_at,
        "jobId": job_id,
    }


@router.post("/callback")
async def receive_callback(request: Request, services: Services = Depends(get_services)):
    received_at = utcnow().isoformat()
    body = await request.body()
    incidents = services.engine.incidents

    if services.settings.verify_callback_signature:
        signature = request.headers.get(HDR_CALLBACK_SIG)
        if not verify_callback_signature(body, signature, services.settings.smile_api_key):
            logger.error("callback_invalid_signature")
            return JSONResponse(status_code=401, content={"success": False, "error": "Invalid signature"})

    try:
        payload = parse_callback_payload(json.loads(body or b"{}"))
    except (ValueError, ValidationError) as e:
        # ValidationError is a ValueError too; both mean an unreadable delivery
        logger.warning("callback_malformed", error=str(e), size=len(body))
        incidents.record("malformed_callback", None, error=str(e)[:500])
        return _ack(received_at, processed=False, message="Callback received but could not be parsed")

    services.callbacks.record(payload.user_id, payload.job_id, payload.raw(), processed=False)
    logger.info(
        "callback_received",
        user_id=payload.user_id,
        job_id=payload.job_id,
        result_code=payload.result_code,
        result_text=payload.result_text,
        size=len(body),
    )

    engine = services.engine
    try:
        job = await engine.get_job(payload.job_id)
        if job.user_id != payload.user_id:
            logger.warning("callback_user_mismatch", job_id=payload.job_id, user_id=payload.user_id)
            incidents.record("callback_user_mismatch", payload.job_id, user_id=payload.user_id, owner=job.user_id)
            return _ack(received_at, payload.job_id, processed=False, message="Callback received for unknown user")

        job = await engine.apply_callback(payload.job_id, payload.outcome())
    except InconsistentCallbackError:
        # Already journalled by the engine
        return _ack(received_at, payload.job_id, processed=False, message="Callback received; job already resolved")
    except LifecycleError as e:
        logger.warning("callback_not_applied", job_id=payload.job_id, error=e.message, error_type=type(e).__name__)
        incidents.record("callback_not_applied", payload.job_id, error=e.message, error_type=type(e).__name__)
        return _ack(received_at, payload.job_id, processed=False, message="Callback received but not applied")

    services.callbacks.record(
        payload.user_id,
        payload.job_id,
        payload.raw(),
        processed=True,
        processedAt=utcnow().isoformat(),
        state=job.state.value,
    )
    return _ack(received_at, payload.job_id)


@router.get("/callback/recent")
async def recent_callbacks(services: Services = Depends(get_services)):
    callbacks = services.callbacks.recent(20)
    return {"success": True, "callbacks": callbacks, "count": len(services.callbacks)}


@router.get("/callback/{user_id}/{job_id}")
async def get_callback(user_id: str, job_id: str, services: Services = Depends(get_services)):
    callback = services.callbacks.get(user_id, job_id)
    if callback is None:
        raise HTTPException(status_code=404, detail="Callback not found")
    return {"success": True, "callback": callback}
