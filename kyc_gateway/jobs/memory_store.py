"""In-memory job store for single-process deployments and tests."""

import threading
from typing import Dict, Iterable, List, Optional

from kyc_gateway.jobs.errors import ConflictError, DuplicateJobError, NotFoundError
from kyc_gateway.jobs.models import JobRecord, JobState, Product, new_job_id
from kyc_gateway.jobs.store import JobStore, Mutator


class InMemoryJobStore(JobStore):
    """Dict-backed store with a lock per record.

    The registry lock is only held while allocating ids; reads and swaps on
    different jobs never contend with each other.
    """

    def __init__(self):
        self._jobs: Dict[str, JobRecord] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    async def create(
        self,
        user_id: str,
        product: Product,
        job_id: Optional[str] = None,
    ) -> JobRecord:
        with self._registry_lock:
            if job_id is None:
                job_id = new_job_id()
                while job_id in self._jobs:
                    job_id = new_job_id()
            elif job_id in self._jobs:
                raise DuplicateJobError(f"Job {job_id} already exists", job_id)

            job = JobRecord(job_id=job_id, user_id=user_id, product=product)
            self._locks[job_id] = threading.Lock()
            self._jobs[job_id] = job
        return job.model_copy(deep=True)

    async def get(self, job_id: str) -> JobRecord:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found", job_id)
        return job.model_copy(deep=True)

    async def compare_and_swap(
        self,
        job_id: str,
        expected_version: int,
        mutator: Mutator,
    ) -> JobRecord:
        lock = self._locks.get(job_id)
        if lock is None:
            raise NotFoundError(f"Job {job_id} not found", job_id)

        with lock:
            current = self._jobs[job_id]
            if current.version != expected_version:
                raise ConflictError(
                    f"Job {job_id} is at version {current.version}, "
                    f"expected {expected_version}",
                    job_id,
                )
            updated = mutator(current.model_copy(deep=True))
            # Identity fields are immutable whatever the mutator returned
            updated = updated.model_copy(update={
                "job_id": current.job_id,
                "user_id": current.user_id,
                "product": current.product,
                "created_at": current.created_at,
                "version": current.version + 1,
            })
            self._jobs[job_id] = updated
        return updated.model_copy(deep=True)

    async def list_jobs(self, states: Optional[Iterable[JobState]] = None) -> List[JobRecord]:
        wanted = set(states) if states is not None else None
        return [
            job.model_copy(deep=True)
            for job in list(self._jobs.values())
            if wanted is None or job.state in wanted
        ]
