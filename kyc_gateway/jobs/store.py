"""Job store interface.

The store is the single source of truth for job state. ``compare_and_swap``
is its only mutation primitive: higher-level transitions are expressed as a
mutator plus a retry loop in the lifecycle engine.
"""

from abc import ABC, abstractmethod
from typing import Callable, Iterable, List, Optional

from kyc_gateway.jobs.models import JobRecord, JobState, Product

Mutator = Callable[[JobRecord], JobRecord]


class JobStore(ABC):
    """Abstract keyed registry of job records (in-memory or persistent)."""

    @abstractmethod
    async def create(
        self,
        user_id: str,
        product: Product,
        job_id: Optional[str] = None,
    ) -> JobRecord:
        """Insert a CREATED record. Raises DuplicateJobError on a supplied id collision."""
        ...

    @abstractmethod
    async def get(self, job_id: str) -> JobRecord:
        """Return a copy of the record. Raises NotFoundError."""
        ...

    @abstractmethod
    async def compare_and_swap(
        self,
        job_id: str,
        expected_version: int,
        mutator: Mutator,
    ) -> JobRecord:
        """Apply ``mutator`` if the stored version matches, else raise ConflictError.

        The stored result carries ``expected_version + 1``.
        """
        ...

    @abstractmethod
    async def list_jobs(self, states: Optional[Iterable[JobState]] = None) -> List[JobRecord]:
        """Return copies of all records, optionally filtered by state."""
        ...
