"""Error taxonomy for the job lifecycle.

Every error is scoped to a single job. ``http_status`` is what the boundary
API answers with when the error reaches a client.
"""

from typing import Optional


class LifecycleError(Exception):
    """Base class for all job lifecycle errors."""

    http_status = 400

    def __init__(self, message: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.job_id = job_id


class NotFoundError(LifecycleError):
    http_status = 404


class InvalidStateError(LifecycleError):
    http_status = 409

    def __init__(self, message: str, job_id: Optional[str] = None, state=None):
        super().__init__(message, job_id)
        self.state = state


class ConflictError(LifecycleError):
    """Compare-and-swap lost against a concurrent writer."""

    http_status = 409


class DuplicateJobError(LifecycleError):
    http_status = 409


class InconsistentCallbackError(LifecycleError):
    """A resolved job received a callback contradicting its recorded result."""

    http_status = 409


class TokenIssuanceError(LifecycleError):
    http_status = 502


class SubmissionError(LifecycleError):
    http_status = 502


class PollTimeoutError(LifecycleError):
    http_status = 504
