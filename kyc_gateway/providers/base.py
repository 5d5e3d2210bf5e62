"""Provider-agnostic contracts for the signer and the verification provider."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from kyc_gateway.jobs.models import JobRecord, Product
from kyc_gateway.providers.deadline import Deadline
from kyc_gateway.providers.outcome import ProviderOutcome

# Identity fields the provider needs for government database matching
ENHANCED_KYC_ID_FIELDS = ("first_name", "last_name", "dob", "country", "id_type", "id_number")


class ProviderError(Exception):
    """Transport or server-side failure talking to an external provider."""


class ProviderRejection(ProviderError):
    """The provider refused the request (bad evidence, bad credentials...)."""


class Evidence(BaseModel):
    """Captured evidence forwarded to the verification provider."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    images: List[Dict[str, Any]] = Field(min_length=1)
    id_info: Optional[Dict[str, Any]] = None
    options: Dict[str, Any] = Field(default_factory=dict)

    def provider_images(self) -> List[Dict[str, Any]]:
        """Images with ``image_type_id`` defaulted to their 1-based position."""
        return [
            {**image, "image_type_id": str(index + 1)}
            if image.get("image_type_id") in (None, "")
            else dict(image)
            for index, image in enumerate(self.images)
        ]

    def missing_id_fields(self, product: Product) -> List[str]:
        if product != Product.ENHANCED_KYC:
            return []
        info = self.id_info or {}
        return [name for name in ENHANCED_KYC_ID_FIELDS if not info.get(name)]


@dataclass
class SubmissionReceipt:
    accepted: bool
    provider_job_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class Signer(ABC):
    """Produces the opaque short-lived credential handed to the client device."""

    @abstractmethod
    async def issue_token(
        self,
        job: JobRecord,
        deadline: Deadline,
        callback_url: Optional[str] = None,
    ) -> str:
        ...


class VerificationProvider(ABC):
    """Receives submissions and answers status queries for verification jobs."""

    @abstractmethod
    async def submit(self, job: JobRecord, evidence: Evidence, deadline: Deadline) -> SubmissionReceipt:
        """Hand evidence over for processing. Raises ProviderRejection on refused intake."""
        ...

    @abstractmethod
    async def get_status(self, job: JobRecord, deadline: Deadline) -> ProviderOutcome:
        """Query the current outcome of a job."""
        ...

    async def close(self) -> None:
        return None
