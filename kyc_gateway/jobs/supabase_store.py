"""Persistent job store backed by a Supabase (Postgres) table.

Compare-and-swap is a conditional update filtered on both ``job_id`` and
``version``; an empty result set means another writer got there first.

Expected table::

    create table verification_jobs (
        job_id text primary key,
        user_id text not null,
        product text not null,
        state text not null,
        result jsonb,
        pending_result jsonb,
        created_at timestamptz not null,
        last_transition_at timestamptz not null,
        update_source text not null,
        version integer not null
    );
"""

import asyncio
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from postgrest.exceptions import APIError
from supabase import Client

from kyc_gateway.jobs.errors import ConflictError, DuplicateJobError, NotFoundError
from kyc_gateway.jobs.models import JobRecord, JobState, Product, new_job_id
from kyc_gateway.jobs.store import JobStore, Mutator
from kyc_gateway.providers.deadline import Deadline

T = TypeVar("T")

_UNIQUE_VIOLATION = "23505"


class SupabaseJobStore(JobStore):
    def __init__(self, client: Client, table: str = "verification_jobs", timeout: float = 10.0):
        self._client = client
        self._table = table
        self._timeout = timeout

    async def _call(self, fn: Callable[[], T]) -> T:
        # supabase-py is synchronous; keep its round-trips off the event loop
        loop = asyncio.get_running_loop()
        deadline = Deadline.after(self._timeout, "job store")
        return await deadline.run(loop.run_in_executor(None, fn))

    def _query(self):
        return self._client.table(self._table)

    def _fetch(self, job_id: str) -> Optional[Dict[str, Any]]:
        response = (
            self._query()
            .select("*")
            .eq("job_id", job_id)
            .limit(1)
            .execute()
        )
        return response.data[0] if response.data else None

    async def create(
        self,
        user_id: str,
        product: Product,
        job_id: Optional[str] = None,
    ) -> JobRecord:
        supplied = job_id is not None
        job = JobRecord(job_id=job_id or new_job_id(), user_id=user_id, product=product)
        if supplied and await self._call(lambda: self._fetch(job.job_id)) is not None:
            raise DuplicateJobError(f"Job {job.job_id} already exists", job.job_id)

        try:
            row = job.model_dump(mode="json")
            response = await self._call(lambda: self._query().insert(row).execute())
        except APIError as e:
            if e.code == _UNIQUE_VIOLATION:
                raise DuplicateJobError(f"Job {job.job_id} already exists", job.job_id)
            raise

        if response.data:
            return JobRecord.model_validate(response.data[0])
        return job

    async def get(self, job_id: str) -> JobRecord:
        row = await self._call(lambda: self._fetch(job_id))
        if row is None:
            raise NotFoundError(f"Job {job_id} not found", job_id)
        return JobRecord.model_validate(row)

    async def compare_and_swap(
        self,
        job_id: str,
        expected_version: int,
        mutator: Mutator,
    ) -> JobRecord:
        current = await self.get(job_id)
        if current.version != expected_version:
            raise ConflictError(
                f"Job {job_id} is at version {current.version}, expected {expected_version}",
                job_id,
            )

        updated = mutator(current.model_copy(deep=True))
        changes = updated.model_dump(
            mode="json",
            exclude={"job_id", "user_id", "product", "created_at"},
        )
        changes["version"] = expected_version + 1

        response = await self._call(
            lambda: self._query()
            .update(changes)
            .eq("job_id", job_id)
            .eq("version", expected_version)
            .execute()
        )
        if not response.data:
            if await self._call(lambda: self._fetch(job_id)) is None:
                raise NotFoundError(f"Job {job_id} not found", job_id)
            raise ConflictError(f"Job {job_id} changed concurrently", job_id)
        return JobRecord.model_validate(response.data[0])

    async def list_jobs(self, states: Optional[Iterable[JobState]] = None) -> List[JobRecord]:
        query = self._query().select("*")
        if states is not None:
            query = query.in_("state", [s.value for s in states])
        response = await self._call(query.execute)
        return [JobRecord.model_validate(row) for row in (response.data or [])]
