"""Reconciliation poller and expiry sweeper.

One lightweight asyncio task per SUBMITTED job queries the provider at a
fixed cadence and feeds final results into the lifecycle engine. Polling
stops as soon as the job leaves SUBMITTED, whichever channel moved it.
"""

import asyncio
from typing import Dict, Optional

from kyc_gateway.config import Settings
from kyc_gateway.jobs.errors import NotFoundError, PollTimeoutError
from kyc_gateway.jobs.lifecycle import LifecycleEngine
from kyc_gateway.jobs.models import JobRecord, JobState
from kyc_gateway.logging_config import get_logger
from kyc_gateway.providers.base import ProviderError
from kyc_gateway.providers.deadline import Deadline

logger = get_logger(__name__)

# Slack added when sleeping until a wall-clock based grace period ends
_GRACE_EPSILON = 0.01


class ReconciliationPoller:
    """Per-job status polling, deduplicated against callback-driven updates."""

    def __init__(
        self,
        engine: LifecycleEngine,
        *,
        interval: float = 3.0,
        ceiling: float = 300.0,
        attempt_timeout: float = 10.0,
        grace: float = 5.0,
    ):
        self._engine = engine
        self._interval = interval
        self._ceiling = ceiling
        self._attempt_timeout = attempt_timeout
        self._grace = grace
        self._tasks: Dict[str, asyncio.Task] = {}

    @classmethod
    def from_settings(cls, config: Settings, engine: LifecycleEngine) -> "ReconciliationPoller":
        return cls(
            engine,
            interval=config.poll_interval_seconds,
            ceiling=config.poll_ceiling_seconds,
            attempt_timeout=config.poll_timeout_seconds,
            grace=config.poll_confirm_grace_seconds,
        )

    def watch(self, job_id: str) -> asyncio.Task:
        """Start polling ``job_id`` unless a poll task for it is already running."""
        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            return task

        task = asyncio.create_task(self._run(job_id), name=f"poll:{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda t, job_id=job_id: self._forget(job_id, t))
        logger.debug("poller_started", job_id=job_id)
        return task

    def _forget(self, job_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]

    def is_watching(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    @property
    def active_count(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    async def wait(self, job_id: str) -> None:
        task = self._tasks.get(job_id)
        if task is not None:
            await task

    async def resume(self) -> int:
        """Start watching every job the store holds in a pending state."""
        jobs = await self._engine.store.list_jobs(
            [JobState.SUBMITTED, JobState.CALLBACK_RECEIVED, JobState.POLL_CONFIRMED]
        )
        for job in jobs:
            self.watch(job.job_id)
        return len(jobs)

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def poll_once(self, job_id: str, attempt: int = 1) -> JobRecord:
        """Query the provider once and apply a final result if there is one.

        A timed-out or failed attempt leaves the job unchanged.
        """
        job = await self._engine.get_job(job_id)
        deadline = Deadline.after(self._attempt_timeout, "status poll")
        try:
            outcome = await deadline.run(self._engine.provider.get_status(job, deadline))
        except TimeoutError as e:
            err = PollTimeoutError(str(e), job_id)
            logger.warning("poll_attempt_timeout", job_id=job_id, attempt=attempt, error=err.message)
            return job
        except (ProviderError, ValueError) as e:
            # ValueError covers payloads that fail validation in other adapters
            logger.warning("poll_attempt_failed", job_id=job_id, attempt=attempt, error=str(e))
            return job

        if not outcome.is_final:
            logger.debug("poll_pending", job_id=job_id, attempt=attempt, code=outcome.result_code)
            return job

        logger.info("poll_result", job_id=job_id, attempt=attempt, code=outcome.result_code)
        return await self._engine.apply_poll_result(job_id, outcome)

    async def _run(self, job_id: str) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        attempt = 0
        try:
            while True:
                job = await self._engine.refresh(job_id)
                if job.state == JobState.POLL_CONFIRMED:
                    await self._settle_after_grace(job_id)
                    break
                if job.state != JobState.SUBMITTED:
                    break

                if loop.time() - started >= self._ceiling:
                    # Polling budget spent: expire through the normal expiry path
                    job = await self._engine.check_expiry(job_id, max_age=0.0)
                    logger.info("poller_ceiling_reached", job_id=job_id, attempts=attempt, state=job.state.value)
                    break

                await asyncio.sleep(self._interval)
                job = await self._engine.get_job(job_id)
                if job.state != JobState.SUBMITTED:
                    continue

                attempt += 1
                await self.poll_once(job_id, attempt)
        except NotFoundError:
            logger.warning("poller_job_missing", job_id=job_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("poller_crashed", job_id=job_id, attempts=attempt)
        finally:
            logger.debug("poller_stopped", job_id=job_id, attempts=attempt)

    async def _settle_after_grace(self, job_id: str) -> None:
        while True:
            job = await self._engine.settle(job_id)
            if job.state != JobState.POLL_CONFIRMED:
                return
            held_for = (self._engine.now() - job.last_transition_at).total_seconds()
            await asyncio.sleep(max(self._grace - held_for, 0.0) + _GRACE_EPSILON)


class ExpirySweeper:
    """Background sweep applying time-based transitions to all open jobs."""

    def __init__(self, engine: LifecycleEngine, interval: float = 30.0):
        self._engine = engine
        self._interval = interval
        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def sweep_once(self) -> int:
        """Returns the number of jobs moved to a new state."""
        now = self._engine.now()
        jobs = await self._engine.store.list_jobs(
            [JobState.TOKEN_ISSUED, JobState.SUBMITTED, JobState.CALLBACK_RECEIVED, JobState.POLL_CONFIRMED]
        )
        moved = 0
        for job in jobs:
            try:
                updated = await self._engine.refresh(job.job_id, now)
            except NotFoundError:
                continue
            if updated.state != job.state:
                moved += 1
        if moved:
            logger.info("expiry_sweep", checked=len(jobs), moved=moved)
        return moved

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._interval)
                await self.sweep_once()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("expiry_sweep_failed")
