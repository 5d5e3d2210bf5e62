"""SmileID adapters: HMAC credential signer and REST provider client."""

import base64
import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import httpx
from pydantic import ValidationError

from kyc_gateway.jobs.models import JobRecord, Product
from kyc_gateway.logging_config import get_logger
from kyc_gateway.providers.base import (
    Evidence,
    ProviderError,
    ProviderRejection,
    Signer,
    SubmissionReceipt,
    VerificationProvider,
)
from kyc_gateway.providers.deadline import Deadline
from kyc_gateway.providers.outcome import ProviderOutcome, parse_status_payload

logger = get_logger(__name__)

HDR_CALLBACK_SIG = "X-Smile-Signature"
SOURCE_SDK = "rest_api"
SOURCE_SDK_VERSION = "1.0.0"

# Identity document types the provider matches against government databases
ID_TYPES = frozenset({"PASSPORT", "NATIONAL_ID", "DRIVERS_LICENSE", "VOTER_ID", "RESIDENT_PERMIT"})


def generate_signature(api_key: str, partner_id: str, timestamp: Optional[str] = None) -> Tuple[str, str]:
    """Signature = base64(HMAC_SHA256(api_key, timestamp + partner_id + "sid_request")).

    Returns (timestamp, signature).
    """
    if timestamp is None:
        timestamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    message = f"{timestamp}{partner_id}sid_request".encode("utf-8")
    digest = hmac.new(api_key.encode("utf-8"), message, hashlib.sha256).digest()
    return timestamp, base64.b64encode(digest).decode("ascii")


def verify_callback_signature(body: bytes, signature: Optional[str], api_key: str) -> bool:
    """Check the hex HMAC-SHA256 of the raw callback body."""
    if not signature:
        return False
    expected = hmac.new(api_key.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


def partner_params(job: JobRecord) -> Dict[str, Any]:
    return {
        "user_id": job.user_id,
        "job_id": job.job_id,
        "job_type": job.job_type,
    }


def map_id_type(id_type: Optional[str]) -> Optional[str]:
    """Normalise a client-supplied document type ("national id" -> "NATIONAL_ID").

    Unknown types are passed through unchanged.
    """
    if not id_type:
        return id_type
    normalized = str(id_type).strip().upper().replace("-", "_").replace(" ", "_")
    return normalized if normalized in ID_TYPES else id_type


def submission_options(job: JobRecord, evidence: Evidence) -> Dict[str, Any]:
    options = {
        "return_job_status": False,
        "return_history": False,
        "return_images": False,
        **evidence.options,
    }
    if job.product == Product.ENHANCED_KYC:
        options["enhanced_kyc"] = True
        options["government_database_check"] = True
    return options


def _read_json(response: httpx.Response, path: str) -> Dict[str, Any]:
    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError as e:
        raise ProviderError(f"{path} returned a non-JSON body: {response.text[:200]!r}") from e
    if not isinstance(data, dict):
        raise ProviderError(f"{path} returned {type(data).__name__}, expected an object")
    return data


class SmileIdSigner(Signer):
    """Builds the web token for the capture SDK from partner credentials."""

    def __init__(self, partner_id: str, api_key: str, environment: str, default_callback: str = ""):
        self._partner_id = partner_id
        self._api_key = api_key
        self._environment = environment
        self._default_callback = default_callback

    async def issue_token(
        self,
        job: JobRecord,
        deadline: Deadline,
        callback_url: Optional[str] = None,
    ) -> str:
        timestamp, signature = generate_signature(self._api_key, self._partner_id)
        payload = {
            **partner_params(job),
            "product": job.product.value,
            "partner_id": self._partner_id,
            "timestamp": timestamp,
            "signature": signature,
            "callback_url": callback_url or self._default_callback,
            "environment": self._environment,
        }
        return base64.b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8")).decode("ascii")


class SmileIdProvider(VerificationProvider):
    """Async REST client for submission and job status queries."""

    def __init__(
        self,
        base_url: str,
        partner_id: str,
        api_key: str,
        callback_url: str,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._partner_id = partner_id
        self._api_key = api_key
        self._callback_url = callback_url
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            headers={"User-Agent": "KycGateway/1.0"},
        )

    def _signed(self) -> Dict[str, str]:
        timestamp, signature = generate_signature(self._api_key, self._partner_id)
        return {"partner_id": self._partner_id, "timestamp": timestamp, "signature": signature}

    async def _post(self, path: str, body: Dict[str, Any], deadline: Deadline) -> httpx.Response:
        try:
            return await self._client.post(path, json=body, timeout=max(deadline.remaining(), 0.001))
        except httpx.TimeoutException as e:
            raise TimeoutError(f"{path} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"{path} failed: {e}") from e

    async def submit(self, job: JobRecord, evidence: Evidence, deadline: Deadline) -> SubmissionReceipt:
        body = {
            **self._signed(),
            "source_sdk": SOURCE_SDK,
            "source_sdk_version": SOURCE_SDK_VERSION,
            "callback_url": self._callback_url,
            "partner_params": partner_params(job),
            "images": evidence.provider_images(),
            "options": submission_options(job, evidence),
        }
        if evidence.id_info:
            body["id_info"] = {**evidence.id_info, "id_type": map_id_type(evidence.id_info.get("id_type"))}

        response = await self._post("/upload", body, deadline)
        if 400 <= response.status_code < 500:
            raise ProviderRejection(f"HTTP {response.status_code}: {response.text[:500]}")
        if response.status_code >= 500:
            raise ProviderError(f"HTTP {response.status_code}: {response.text[:500]}")

        data = _read_json(response, "/upload")
        logger.info(
            "provider_submission_accepted",
            job_id=job.job_id,
            provider_job_id=data.get("smile_job_id"),
        )
        return SubmissionReceipt(accepted=True, provider_job_id=data.get("smile_job_id"), raw=data)

    async def get_status(self, job: JobRecord, deadline: Deadline) -> ProviderOutcome:
        body = {
            **self._signed(),
            "user_id": job.user_id,
            "job_id": job.job_id,
            "image_links": False,
            "history": False,
        }
        response = await self._post("/job_status", body, deadline)
        if response.status_code >= 400:
            raise ProviderError(f"HTTP {response.status_code}: {response.text[:500]}")
        try:
            return parse_status_payload(_read_json(response, "/job_status"))
        except ValidationError as e:
            raise ProviderError(f"/job_status returned an unreadable status: {e}") from e

    async def close(self) -> None:
        await self._client.aclose()
