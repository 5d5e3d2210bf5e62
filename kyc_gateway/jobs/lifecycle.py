"""Job lifecycle engine.

Owns the state machine for verification jobs::

    CREATED --issue_token--> TOKEN_ISSUED
    TOKEN_ISSUED --submit--> SUBMITTED
    SUBMITTED --callback--> CALLBACK_RECEIVED
    SUBMITTED --poll_result--> POLL_CONFIRMED
    CALLBACK_RECEIVED --finalize--> COMPLETE | FAILED
    POLL_CONFIRMED --finalize--> COMPLETE | FAILED
    TOKEN_ISSUED | SUBMITTED --timeout--> EXPIRED

Every transition is planned against a freshly read record and committed with
the store's compare-and-swap, retried a bounded number of times. Callback and
poll results race for the same jobs; the callback always wins. A poll-derived
result is held in POLL_CONFIRMED for a short grace period so a callback that
is already in flight can still override it.
"""

import asyncio
import random
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from kyc_gateway.config import Settings
from kyc_gateway.jobs.errors import (
    ConflictError,
    InconsistentCallbackError,
    InvalidStateError,
    SubmissionError,
    TokenIssuanceError,
)
from kyc_gateway.jobs.journal import IncidentJournal
from kyc_gateway.jobs.models import (
    JobRecord,
    JobResult,
    JobState,
    Product,
    TERMINAL_STATES,
    UpdateSource,
    can_transition,
    new_user_id,
    utcnow,
)
from kyc_gateway.jobs.store import JobStore
from kyc_gateway.logging_config import get_logger
from kyc_gateway.providers.base import (
    Evidence,
    ProviderError,
    ProviderRejection,
    Signer,
    VerificationProvider,
)
from kyc_gateway.providers.deadline import Deadline
from kyc_gateway.providers.outcome import ProviderOutcome

logger = get_logger(__name__)

# (target state, field updates) or None for "nothing to do"
Step = Optional[Tuple[JobState, dict]]
Planner = Callable[[JobRecord], Step]

EXPIRABLE_STATES = frozenset({JobState.TOKEN_ISSUED, JobState.SUBMITTED})


def _matches(result: Optional[JobResult], outcome: ProviderOutcome) -> bool:
    """Whether ``outcome`` re-delivers the content already recorded in ``result``."""
    if result is None:
        return False
    if result.source == UpdateSource.CALLBACK and result.fingerprint and outcome.fingerprint:
        return result.fingerprint == outcome.fingerprint
    return outcome.same_outcome(result)


def _final_state(result: JobResult) -> JobState:
    return JobState.COMPLETE if result.success else JobState.FAILED


class LifecycleEngine:
    def __init__(
        self,
        store: JobStore,
        signer: Signer,
        provider: VerificationProvider,
        *,
        token_timeout: float = 15.0,
        submit_timeout: float = 30.0,
        job_max_age: float = 300.0,
        poll_confirm_grace: float = 5.0,
        cas_max_attempts: int = 5,
        cas_backoff: float = 0.02,
        incidents: Optional[IncidentJournal] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._signer = signer
        self._provider = provider
        self._token_timeout = token_timeout
        self._submit_timeout = submit_timeout
        self._job_max_age = job_max_age
        self._poll_confirm_grace = poll_confirm_grace
        self._cas_max_attempts = max(1, cas_max_attempts)
        self._cas_backoff = cas_backoff
        self.incidents = incidents if incidents is not None else IncidentJournal()
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        config: Settings,
        store: JobStore,
        signer: Signer,
        provider: VerificationProvider,
        incidents: Optional[IncidentJournal] = None,
    ) -> "LifecycleEngine":
        return cls(
            store,
            signer,
            provider,
            token_timeout=config.token_timeout_seconds,
            submit_timeout=config.submit_timeout_seconds,
            job_max_age=config.job_max_age_seconds,
            poll_confirm_grace=config.poll_confirm_grace_seconds,
            cas_max_attempts=config.cas_max_attempts,
            cas_backoff=config.cas_backoff_seconds,
            incidents=incidents,
        )

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def provider(self) -> VerificationProvider:
        return self._provider

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Compare-and-swap transition loop
    # ------------------------------------------------------------------

    def _backoff(self, attempt: int) -> float:
        return self._cas_backoff * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)

    async def _transition(self, job_id: str, plan: Planner) -> Tuple[JobRecord, JobRecord]:
        """Plan and commit one transition. Returns (record read, record written).

        When the planner decides there is nothing to do both values are the
        same record.
        """
        for attempt in range(1, self._cas_max_attempts + 1):
            before = await self._store.get(job_id)
            step = plan(before)
            if step is None:
                return before, before

            target, changes = step
            if not can_transition(before.state, target):
                raise InvalidStateError(
                    f"Illegal transition {before.state.value} -> {target.value}",
                    job_id,
                    state=before.state,
                )

            now = self._clock()

            def mutate(record: JobRecord) -> JobRecord:
                return record.model_copy(
                    update={**changes, "state": target, "last_transition_at": now}
                )

            try:
                after = await self._store.compare_and_swap(job_id, before.version, mutate)
            except ConflictError:
                logger.debug(
                    "job_cas_conflict",
                    job_id=job_id,
                    attempt=attempt,
                    expected_version=before.version,
                )
                if attempt >= self._cas_max_attempts:
                    raise ConflictError(
                        f"Job {job_id} kept changing; gave up after {attempt} attempts",
                        job_id,
                    )
                await asyncio.sleep(self._backoff(attempt))
                continue

            logger.info(
                "job_transition",
                job_id=job_id,
                from_state=before.state.value,
                to_state=after.state.value,
                version=after.version,
                source=after.update_source.value,
            )
            return before, after

        raise ConflictError(f"Job {job_id} kept changing", job_id)

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    async def create_job(
        self,
        user_id: Optional[str] = None,
        product: Product = Product.BIOMETRIC_KYC,
        job_id: Optional[str] = None,
    ) -> JobRecord:
        job = await self._store.create(user_id or new_user_id(), Product(product), job_id=job_id)
        logger.info("job_created", job_id=job.job_id, user_id=job.user_id, product=job.product.value)
        return job

    async def get_job(self, job_id: str) -> JobRecord:
        return await self._store.get(job_id)

    async def refresh(self, job_id: str, now: Optional[datetime] = None) -> JobRecord:
        """Apply time-based transitions due at ``now`` and return the record."""
        now = now or self._clock()
        await self.settle(job_id, now)
        return await self.check_expiry(job_id, now)

    # ------------------------------------------------------------------
    # Token issuance and submission
    # ------------------------------------------------------------------

    async def issue_token(self, job_id: str, callback_url: Optional[str] = None) -> Tuple[JobRecord, str]:
        job = await self._store.get(job_id)
        if job.state != JobState.CREATED:
            raise InvalidStateError(
                f"Cannot issue a token for job in state {job.state.value}",
                job_id,
                state=job.state,
            )

        deadline = Deadline.after(self._token_timeout, "token issuance")
        try:
            token = await deadline.run(self._signer.issue_token(job, deadline, callback_url))
        except TimeoutError as e:
            logger.warning("token_issuance_timeout", job_id=job_id, timeout=self._token_timeout)
            raise TokenIssuanceError(f"Token generation timeout: {e}", job_id) from e
        except Exception as e:
            logger.error("token_issuance_failed", job_id=job_id, error=str(e))
            raise TokenIssuanceError(f"Token generation failed: {e}", job_id) from e

        def plan(current: JobRecord) -> Step:
            if current.state != JobState.CREATED:
                raise InvalidStateError(
                    f"Job left CREATED while its token was issued ({current.state.value})",
                    job_id,
                    state=current.state,
                )
            return JobState.TOKEN_ISSUED, {}

        _, after = await self._transition(job_id, plan)
        return after, token

    async def check_signer(self) -> Dict[str, Any]:
        """Issue a throwaway token to confirm the signer works. Nothing is stored."""
        stamp = int(self._clock().timestamp() * 1000)
        job = JobRecord(job_id=f"job_{stamp}", user_id=f"test_{stamp}")
        deadline = Deadline.after(self._token_timeout, "connection test")
        try:
            token = await deadline.run(self._signer.issue_token(job, deadline))
        except Exception as e:
            logger.error("signer_check_failed", error=str(e), error_type=type(e).__name__)
            return {"success": False, "error": str(e) or type(e).__name__}
        logger.info("signer_check_passed")
        return {"success": True, "token": bool(token)}

    async def submit(self, job_id: str, evidence: Evidence) -> JobRecord:
        job = await self._store.get(job_id)
        if job.state != JobState.TOKEN_ISSUED:
            raise InvalidStateError(
                f"Cannot submit evidence for job in state {job.state.value}",
                job_id,
                state=job.state,
            )

        deadline = Deadline.after(self._submit_timeout, "submission")
        try:
            receipt = await deadline.run(self._provider.submit(job, evidence, deadline))
        except TimeoutError as e:
            logger.warning("submission_timeout", job_id=job_id, timeout=self._submit_timeout)
            raise SubmissionError(f"Submission timeout: {e}", job_id) from e
        except ProviderRejection as e:
            logger.warning("submission_rejected", job_id=job_id, error=str(e))
            raise SubmissionError(f"Submission rejected: {e}", job_id) from e
        except ProviderError as e:
            logger.error("submission_failed", job_id=job_id, error=str(e))
            raise SubmissionError(f"Submission failed: {e}", job_id) from e

        if not receipt.accepted:
            raise SubmissionError("Submission not accepted by provider", job_id)

        def plan(current: JobRecord) -> Step:
            if current.state != JobState.TOKEN_ISSUED:
                raise InvalidStateError(
                    f"Job left TOKEN_ISSUED during submission ({current.state.value})",
                    job_id,
                    state=current.state,
                )
            return JobState.SUBMITTED, {}

        _, after = await self._transition(job_id, plan)
        return after

    # ------------------------------------------------------------------
    # Callback and poll results
    # ------------------------------------------------------------------

    async def apply_callback(self, job_id: str, outcome: ProviderOutcome) -> JobRecord:
        """Record a provider callback. Idempotent for identical re-deliveries.

        Raises InconsistentCallbackError when an already resolved job receives
        a different result; the incident is journalled before raising.
        """

        def plan(job: JobRecord) -> Step:
            if job.state == JobState.SUBMITTED:
                if not outcome.is_final:
                    return None
                return JobState.CALLBACK_RECEIVED, {
                    "update_source": UpdateSource.CALLBACK,
                    "pending_result": outcome.to_result(UpdateSource.CALLBACK),
                }

            if job.state == JobState.POLL_CONFIRMED:
                if not outcome.is_final:
                    return None
                result = outcome.to_result(UpdateSource.CALLBACK)
                return _final_state(result), {
                    "update_source": UpdateSource.CALLBACK,
                    "result": result,
                    "pending_result": None,
                }

            if job.state == JobState.CALLBACK_RECEIVED or job.state in TERMINAL_STATES:
                recorded = job.pending_result if job.state == JobState.CALLBACK_RECEIVED else job.result
                if not outcome.is_final or _matches(recorded, outcome):
                    return None
                raise InconsistentCallbackError(
                    f"Job {job_id} already resolved as {job.state.value}; "
                    f"callback reports {outcome.result_code}",
                    job_id,
                )

            raise InvalidStateError(
                f"Callback not expected for job in state {job.state.value}",
                job_id,
                state=job.state,
            )

        try:
            before, after = await self._transition(job_id, plan)
        except InconsistentCallbackError as e:
            current = await self._store.get(job_id)
            logger.warning(
                "inconsistent_callback",
                job_id=job_id,
                state=current.state.value,
                recorded_code=current.result.result_code if current.result else None,
                callback_code=outcome.result_code,
            )
            self.incidents.record(
                "inconsistent_callback",
                job_id,
                state=current.state.value,
                recorded_code=current.result.result_code if current.result else None,
                callback_code=outcome.result_code,
                message=e.message,
            )
            raise

        if before is after:
            if not outcome.is_final:
                logger.info("callback_pending", job_id=job_id, state=after.state.value, code=outcome.result_code)
            else:
                logger.info("callback_duplicate_ignored", job_id=job_id, state=after.state.value)
        elif before.state == JobState.POLL_CONFIRMED and not _matches(before.pending_result, outcome):
            self._record_conflict(job_id, before.pending_result, outcome, winner=UpdateSource.CALLBACK)

        # Also completes a recorded callback whose finalize step did not commit
        if after.state == JobState.CALLBACK_RECEIVED:
            after = await self._finalize(job_id, JobState.CALLBACK_RECEIVED)
        return after

    async def apply_poll_result(self, job_id: str, outcome: ProviderOutcome) -> JobRecord:
        """Record a poll-derived result. Never overrides a callback."""

        def plan(job: JobRecord) -> Step:
            if job.state == JobState.SUBMITTED:
                if not outcome.is_final:
                    return None
                return JobState.POLL_CONFIRMED, {
                    "update_source": UpdateSource.POLL,
                    "pending_result": outcome.to_result(UpdateSource.POLL),
                }
            if job.state in (JobState.CREATED, JobState.TOKEN_ISSUED):
                raise InvalidStateError(
                    f"Poll result for job not yet submitted ({job.state.value})",
                    job_id,
                    state=job.state,
                )
            return None

        before, after = await self._transition(job_id, plan)

        if before is after:
            if outcome.is_final and after.update_source == UpdateSource.CALLBACK:
                recorded = after.pending_result if after.state == JobState.CALLBACK_RECEIVED else after.result
                if recorded is not None and not _matches(recorded, outcome):
                    self._record_conflict(job_id, recorded, outcome, winner=UpdateSource.CALLBACK)
            return after

        if self._poll_confirm_grace <= 0:
            after = await self._finalize(job_id, JobState.POLL_CONFIRMED)
        return after

    def _record_conflict(
        self,
        job_id: str,
        recorded: Optional[JobResult],
        outcome: ProviderOutcome,
        winner: UpdateSource,
    ) -> None:
        recorded_code = recorded.result_code if recorded else None
        logger.warning(
            "reconciliation_conflict",
            job_id=job_id,
            winner=winner.value,
            recorded_code=recorded_code,
            discarded_code=outcome.result_code,
        )
        self.incidents.record(
            "reconciliation_conflict",
            job_id,
            winner=winner.value,
            recorded_code=recorded_code,
            other_code=outcome.result_code,
        )

    # ------------------------------------------------------------------
    # Finalization and time-based transitions
    # ------------------------------------------------------------------

    async def _finalize(self, job_id: str, from_state: JobState) -> JobRecord:
        """Move a held result from ``from_state`` to COMPLETE or FAILED."""

        def plan(job: JobRecord) -> Step:
            if job.state != from_state or job.pending_result is None:
                return None
            return _final_state(job.pending_result), {
                "result": job.pending_result,
                "pending_result": None,
            }

        _, after = await self._transition(job_id, plan)
        return after

    async def settle(self, job_id: str, now: Optional[datetime] = None) -> JobRecord:
        """Finalize a POLL_CONFIRMED job once its callback grace has elapsed.

        A CALLBACK_RECEIVED job left unfinalized is completed without waiting.
        """
        now = now or self._clock()

        def plan(job: JobRecord) -> Step:
            if job.pending_result is None:
                return None
            if job.state == JobState.CALLBACK_RECEIVED:
                return _final_state(job.pending_result), {
                    "result": job.pending_result,
                    "pending_result": None,
                }
            if job.state != JobState.POLL_CONFIRMED:
                return None
            held_for = (now - job.last_transition_at).total_seconds()
            if held_for < self._poll_confirm_grace:
                return None
            return _final_state(job.pending_result), {
                "result": job.pending_result,
                "pending_result": None,
            }

        _, after = await self._transition(job_id, plan)
        return after

    async def check_expiry(
        self,
        job_id: str,
        now: Optional[datetime] = None,
        max_age: Optional[float] = None,
    ) -> JobRecord:
        """Expire a TOKEN_ISSUED/SUBMITTED job idle for ``max_age`` seconds or more."""
        now = now or self._clock()
        limit = self._job_max_age if max_age is None else max_age

        def plan(job: JobRecord) -> Step:
            if job.state not in EXPIRABLE_STATES:
                return None
            if (now - job.last_transition_at).total_seconds() < limit:
                return None
            return JobState.EXPIRED, {}

        before, after = await self._transition(job_id, plan)
        if after is not before:
            logger.info("job_expired", job_id=job_id, previous_state=before.state.value, max_age=limit)
        return after
