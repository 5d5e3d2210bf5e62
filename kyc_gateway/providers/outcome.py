"""Provider result variants and payload parsing.

Callback and status-query payloads use different shapes. Both are validated
here and reduced to one of three variants before they reach the lifecycle
engine: ``Success``, ``Failure`` or ``Pending``.
"""

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from kyc_gateway.jobs.models import JobResult, UpdateSource

# Result codes the provider uses for an approved / verified job
SUCCESS_CODES = frozenset({"0000", "0810", "0820", "1012", "1020", "1210", "1220"})

# Keys that change between re-deliveries of the same result
_VOLATILE_KEYS = frozenset({"timestamp", "signature", "sec_key", "receivedAt", "received_at"})

VERIFICATION_SECTIONS = ("government_check", "document", "face")


def fingerprint(payload: Dict[str, Any]) -> str:
    """Stable digest of a payload's content, ignoring delivery metadata."""
    stable = {k: v for k, v in payload.items() if k not in _VOLATILE_KEYS}
    canonical = json.dumps(stable, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def is_success_code(code: Optional[str]) -> bool:
    return code is not None and str(code) in SUCCESS_CODES


@dataclass(frozen=True)
class Outcome:
    result_code: Optional[str] = None
    result_text: Optional[str] = None
    confidence: Optional[float] = None
    checks: Dict[str, Any] = field(default_factory=dict)
    verification: Dict[str, Any] = field(default_factory=dict)
    fingerprint: str = ""

    @property
    def is_final(self) -> bool:
        return False

    @property
    def success(self) -> bool:
        return False

    def to_result(self, source: UpdateSource) -> JobResult:
        return JobResult(
            success=self.success,
            result_code=self.result_code,
            result_text=self.result_text,
            confidence=self.confidence,
            checks=dict(self.checks),
            verification=dict(self.verification),
            source=source,
            fingerprint=self.fingerprint,
        )

    def same_outcome(self, result: JobResult) -> bool:
        """True when ``result`` reports the same verdict and code as this outcome."""
        return result.success == self.success and result.result_code == self.result_code


@dataclass(frozen=True)
class Success(Outcome):
    @property
    def is_final(self) -> bool:
        return True

    @property
    def success(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure(Outcome):
    @property
    def is_final(self) -> bool:
        return True


@dataclass(frozen=True)
class Pending(Outcome):
    pass


ProviderOutcome = Union[Success, Failure, Pending]


def _confidence(data: Dict[str, Any]) -> Optional[float]:
    for key in ("ConfidenceValue", "confidence_score", "confidence"):
        value = data.get(key)
        if value in (None, "", "N/A"):
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            continue
    return None


def _checks(data: Dict[str, Any]) -> Dict[str, Any]:
    checks = data.get("Actions") or data.get("checks") or {}
    return dict(checks) if isinstance(checks, dict) else {}


def _verification(data: Dict[str, Any]) -> Dict[str, Any]:
    """Government database, document and face sections, top level or under ``result``."""
    sources = [data]
    if isinstance(data.get("result"), dict):
        sources.append(data["result"])
    found = {}
    for key in VERIFICATION_SECTIONS:
        for source in sources:
            section = source.get(key)
            if isinstance(section, dict):
                found[key] = dict(section)
                break
    return found


def classify(code: Optional[str], text: Optional[str], data: Dict[str, Any], digest: str) -> ProviderOutcome:
    variant = Success if is_success_code(code) else Failure
    return variant(
        result_code=code,
        result_text=text,
        confidence=_confidence(data),
        checks=_checks(data),
        verification=_verification(data),
        fingerprint=digest,
    )


class CallbackPayload(BaseModel):
    """Body the provider POSTs to the callback URL."""
    model_config = ConfigDict(extra="allow", populate_by_name=True, coerce_numbers_to_str=True)

    user_id: str
    job_id: str
    result_code: str = Field(alias="ResultCode")
    result_text: Optional[str] = Field(default=None, alias="ResultText")
    job_type: Optional[Union[int, str]] = None

    @model_validator(mode="before")
    @classmethod
    def _lift_partner_params(cls, data: Any) -> Any:
        # Provider may nest the ids under PartnerParams
        if isinstance(data, dict):
            params = data.get("PartnerParams") or {}
            if isinstance(params, dict):
                data = dict(data)
                for key in ("user_id", "job_id", "job_type"):
                    if not data.get(key) and params.get(key):
                        data[key] = params[key]
        return data

    def raw(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def outcome(self) -> ProviderOutcome:
        data = self.raw()
        return classify(self.result_code, self.result_text, data, fingerprint(data))


class StatusPayload(BaseModel):
    """Response of the provider's job status query."""
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    job_complete: bool = False
    job_success: bool = False
    code: Optional[str] = None
    result: Optional[Union[Dict[str, Any], str]] = None

    def outcome(self) -> ProviderOutcome:
        data = self.model_dump(exclude_none=True)
        digest = fingerprint(data)
        detail = self.result if isinstance(self.result, dict) else {}

        if not self.job_complete:
            return Pending(
                result_code=self.code,
                result_text=detail.get("ResultText") or (self.result if isinstance(self.result, str) else None),
                fingerprint=digest,
            )

        code = detail.get("ResultCode")
        if code is not None:
            return classify(str(code), detail.get("ResultText"), detail, digest)

        variant = Success if self.job_success else Failure
        return variant(
            result_code=self.code,
            result_text=self.result if isinstance(self.result, str) else None,
            confidence=_confidence(detail),
            checks=_checks(detail),
            verification=_verification(detail),
            fingerprint=digest,
        )


def parse_callback_payload(payload: Dict[str, Any]) -> CallbackPayload:
    return CallbackPayload.model_validate(payload)


def parse_status_payload(payload: Dict[str, Any]) -> ProviderOutcome:
    return StatusPayload.model_validate(payload).outcome()
