"""Deterministic sandbox provider for local runs without partner credentials.

Accepts any submission carrying images and reports jobs as pending until an
outcome is scripted with ``set_outcome``; real results are expected to arrive
through the callback route.
"""

from typing import Dict

from kyc_gateway.jobs.models import JobRecord
from kyc_gateway.providers.base import (
    Evidence,
    ProviderRejection,
    SubmissionReceipt,
    VerificationProvider,
)
from kyc_gateway.providers.deadline import Deadline
from kyc_gateway.providers.outcome import Pending, ProviderOutcome


class MockVerificationProvider(VerificationProvider):
    def __init__(self):
        self._outcomes: Dict[str, ProviderOutcome] = {}
        self.submissions: Dict[str, Evidence] = {}

    def set_outcome(self, job_id: str, outcome: ProviderOutcome) -> None:
        self._outcomes[job_id] = outcome

    async def submit(self, job: JobRecord, evidence: Evidence, deadline: Deadline) -> SubmissionReceipt:
        if evidence.options.get("simulate_rejection"):
            raise ProviderRejection("Submission rejected by sandbox provider")
        self.submissions[job.job_id] = evidence
        return SubmissionReceipt(accepted=True, provider_job_id=f"mock-{job.job_id}")

    async def get_status(self, job: JobRecord, deadline: Deadline) -> ProviderOutcome:
        return self._outcomes.get(job.job_id, Pending(result_text="Job pending"))
