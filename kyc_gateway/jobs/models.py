"""Verification job record and lifecycle state graph."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
import time
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Product(str, Enum):
    AUTHENTICATION = "authentication"
    BASIC_KYC = "basic_kyc"
    SMARTSELFIE = "smartselfie"
    BIOMETRIC_KYC = "biometric_kyc"
    ENHANCED_KYC = "enhanced_kyc"
    DOC_VERIFICATION = "doc_verification"


# Provider numeric job type per product
PRODUCT_JOB_TYPES: Dict[Product, int] = {
    Product.DOC_VERIFICATION: 5,
    Product.ENHANCED_KYC: 1,
    Product.BIOMETRIC_KYC: 1,
    Product.SMARTSELFIE: 4,
    Product.BASIC_KYC: 1,
    Product.AUTHENTICATION: 2,
}

PRODUCT_CATALOG = [
    {"id": Product.AUTHENTICATION.value, "name": "Authentication", "description": "User authentication"},
    {"id": Product.BASIC_KYC.value, "name": "Basic KYC", "description": "Basic identity verification"},
    {"id": Product.SMARTSELFIE.value, "name": "SmartSelfie", "description": "Selfie verification"},
    {"id": Product.BIOMETRIC_KYC.value, "name": "Biometric KYC", "description": "Biometric identity verification"},
    {"id": Product.ENHANCED_KYC.value, "name": "Enhanced KYC", "description": "Advanced identity verification"},
    {"id": Product.DOC_VERIFICATION.value, "name": "Document Verification", "description": "Document verification only"},
]


class JobState(str, Enum):
    CREATED = "CREATED"
    TOKEN_ISSUED = "TOKEN_ISSUED"
    SUBMITTED = "SUBMITTED"
    CALLBACK_RECEIVED = "CALLBACK_RECEIVED"
    POLL_CONFIRMED = "POLL_CONFIRMED"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


class UpdateSource(str, Enum):
    CALLBACK = "CALLBACK"
    POLL = "POLL"
    NONE = "NONE"


class RegulatoryStatus(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    REQUIRES_REVIEW = "requires_review"


TERMINAL_STATES: FrozenSet[JobState] = frozenset(
    {JobState.COMPLETE, JobState.FAILED, JobState.EXPIRED}
)

# States in which the outcome is still unknown to a status reader
PENDING_STATES: FrozenSet[JobState] = frozenset(
    {JobState.SUBMITTED, JobState.CALLBACK_RECEIVED, JobState.POLL_CONFIRMED}
)

TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.CREATED: frozenset({JobState.TOKEN_ISSUED}),
    JobState.TOKEN_ISSUED: frozenset({JobState.SUBMITTED, JobState.EXPIRED}),
    JobState.SUBMITTED: frozenset(
        {JobState.CALLBACK_RECEIVED, JobState.POLL_CONFIRMED, JobState.EXPIRED}
    ),
    JobState.CALLBACK_RECEIVED: frozenset({JobState.COMPLETE, JobState.FAILED}),
    JobState.POLL_CONFIRMED: frozenset({JobState.COMPLETE, JobState.FAILED}),
    JobState.COMPLETE: frozenset(),
    JobState.FAILED: frozenset(),
    JobState.EXPIRED: frozenset(),
}


def can_transition(current: JobState, target: JobState) -> bool:
    return target in TRANSITIONS[current]


def new_job_id() -> str:
    return f"job-{uuid.uuid4()}"


def new_user_id() -> str:
    return f"user_{int(time.time() * 1000)}"


class JobResult(BaseModel):
    """Structured outcome attached once a job is resolved."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    result_code: Optional[str] = None
    result_text: Optional[str] = None
    confidence: Optional[float] = None
    checks: Dict[str, Any] = Field(default_factory=dict)
    # government_check / document / face sections reported by the provider
    verification: Dict[str, Any] = Field(default_factory=dict)
    source: UpdateSource = UpdateSource.NONE
    fingerprint: str = ""
    received_at: datetime = Field(default_factory=utcnow)


def regulatory_status(result: JobResult, product: Product) -> RegulatoryStatus:
    """Compliance verdict for a resolved job.

    Enhanced KYC needs both a government database hit and an identity match;
    every other product relies on the document authenticity check.
    """
    if not result.success:
        return RegulatoryStatus.REJECTED
    if product == Product.ENHANCED_KYC:
        gov = result.verification.get("government_check") or {}
        verified = gov.get("identity_match") and gov.get("database_match")
    else:
        verified = (result.verification.get("document") or {}).get("authentic")
    return RegulatoryStatus.APPROVED if verified else RegulatoryStatus.REQUIRES_REVIEW


class JobRecord(BaseModel):
    """Tracks the lifecycle of a verification job."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    job_id: str = Field(default_factory=new_job_id)
    user_id: str = Field(default_factory=new_user_id)
    product: Product = Product.BIOMETRIC_KYC
    state: JobState = JobState.CREATED
    result: Optional[JobResult] = None
    # Outcome held while a poll-derived result waits out the callback grace
    pending_result: Optional[JobResult] = None
    created_at: datetime = Field(default_factory=utcnow)
    last_transition_at: datetime = Field(default_factory=utcnow)
    update_source: UpdateSource = UpdateSource.NONE
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def job_type(self) -> int:
        return PRODUCT_JOB_TYPES[self.product]

    def compliance(self) -> Optional[Dict[str, Any]]:
        if self.result is None:
            return None
        gov = self.result.verification.get("government_check") or {}
        document = self.result.verification.get("document") or {}
        return {
            "kycCompleted": self.state == JobState.COMPLETE,
            "governmentVerified": bool(gov.get("identity_match")),
            "documentAuthentic": bool(document.get("authentic")),
            "identityConfidence": self.result.confidence or 0,
            "regulatoryStatus": regulatory_status(self.result, self.product).value,
        }

    def projection(self) -> Dict[str, Any]:
        """Status view returned to the client device."""
        view = {
            "jobId": self.job_id,
            "userId": self.user_id,
            "state": self.state.value,
            "pending": self.state in PENDING_STATES,
            "lastTransitionAt": self.last_transition_at.isoformat(),
        }
        if self.result is not None:
            view["result"] = self.result.model_dump(
                mode="json", by_alias=True, exclude={"fingerprint"}
            )
            view["compliance"] = self.compliance()
        return view
