"""Tests for the reconciliation poller and the expiry sweeper."""

import asyncio
from datetime import timedelta

import httpx
import pytest

from fakes import HANG, FakeSigner, ScriptedProvider
from kyc_gateway.jobs.lifecycle import LifecycleEngine
from kyc_gateway.jobs.memory_store import InMemoryJobStore
from kyc_gateway.jobs.models import JobState, UpdateSource, utcnow
from kyc_gateway.jobs.poller import ExpirySweeper, ReconciliationPoller
from kyc_gateway.providers.base import Evidence, ProviderError
from kyc_gateway.providers.outcome import Pending, Success, parse_callback_payload, parse_status_payload
from kyc_gateway.providers.smileid import SmileIdProvider

EVIDENCE = Evidence(images=[{"image_type_id": 2, "image": "c2VsZmll"}])


def make_engine(provider, grace=0.02, max_age=300.0):
    return LifecycleEngine(
        InMemoryJobStore(),
        FakeSigner(),
        provider,
        poll_confirm_grace=grace,
        job_max_age=max_age,
        cas_backoff=0.001,
    )


def make_poller(engine, interval=0.01, ceiling=5.0, attempt_timeout=0.5, grace=0.02):
    return ReconciliationPoller(
        engine,
        interval=interval,
        ceiling=ceiling,
        attempt_timeout=attempt_timeout,
        grace=grace,
    )


async def submit(engine, user_id="u1"):
    job = await engine.create_job(user_id, "biometric_kyc")
    await engine.issue_token(job.job_id)
    return await engine.submit(job.job_id, EVIDENCE)


@pytest.mark.asyncio
async def test_failure_discovered_by_polling_after_three_pending_cycles():
    failed_status = parse_status_payload({
        "job_complete": True,
        "job_success": False,
        "code": "2302",
        "result": {"ResultCode": "1001", "ResultText": "Unable to verify"},
    })
    provider = ScriptedProvider(statuses=[Pending(), Pending(), Pending(), failed_status])
    engine = make_engine(provider)
    poller = make_poller(engine)
    job = await submit(engine)

    poller.watch(job.job_id)
    await asyncio.wait_for(poller.wait(job.job_id), timeout=5)

    final = await engine.get_job(job.job_id)
    assert final.state == JobState.FAILED
    assert final.update_source == UpdateSource.POLL
    assert final.result.result_code == "1001"
    assert provider.status_calls == 4
    assert not poller.is_watching(job.job_id)


@pytest.mark.asyncio
async def test_timed_out_attempt_is_retried():
    provider = ScriptedProvider(statuses=[HANG, Success(result_code="0000")])
    engine = make_engine(provider)
    poller = make_poller(engine, attempt_timeout=0.05)
    job = await submit(engine)

    poller.watch(job.job_id)
    await asyncio.wait_for(poller.wait(job.job_id), timeout=5)

    assert (await engine.get_job(job.job_id)).state == JobState.COMPLETE
    assert provider.status_calls == 2


@pytest.mark.asyncio
async def test_provider_errors_are_not_fatal():
    provider = ScriptedProvider(statuses=[ProviderError("HTTP 502"), Success(result_code="0000")])
    engine = make_engine(provider)
    poller = make_poller(engine)
    job = await submit(engine)

    poller.watch(job.job_id)
    await asyncio.wait_for(poller.wait(job.job_id), timeout=5)

    assert (await engine.get_job(job.job_id)).state == JobState.COMPLETE


@pytest.mark.asyncio
async def test_ceiling_expires_job_and_stops_polling():
    provider = ScriptedProvider()
    engine = make_engine(provider)
    poller = make_poller(engine, interval=0.01, ceiling=0.05)
    job = await submit(engine)

    poller.watch(job.job_id)
    await asyncio.wait_for(poller.wait(job.job_id), timeout=5)

    assert (await engine.get_job(job.job_id)).state == JobState.EXPIRED
    calls = provider.status_calls
    await asyncio.sleep(0.05)
    assert provider.status_calls == calls
    assert not poller.is_watching(job.job_id)


@pytest.mark.asyncio
async def test_callback_stops_polling():
    provider = ScriptedProvider()
    engine = make_engine(provider)
    poller = make_poller(engine, interval=0.02)
    job = await submit(engine)

    poller.watch(job.job_id)
    await asyncio.sleep(0.05)
    payload = {"user_id": "u1", "job_id": job.job_id, "ResultCode": "0000", "ResultText": "Approved"}
    await engine.apply_callback(job.job_id, parse_callback_payload(payload).outcome())
    await asyncio.wait_for(poller.wait(job.job_id), timeout=5)

    final = await engine.get_job(job.job_id)
    assert final.state == JobState.COMPLETE
    assert final.update_source == UpdateSource.CALLBACK


@pytest.mark.asyncio
async def test_callback_during_grace_overrides_poll():
    provider = ScriptedProvider(statuses=[Success(result_code="0000")])
    engine = make_engine(provider, grace=0.3)
    poller = make_poller(engine, grace=0.3)
    job = await submit(engine)

    poller.watch(job.job_id)
    for _ in range(100):
        if (await engine.get_job(job.job_id)).state == JobState.POLL_CONFIRMED:
            break
        await asyncio.sleep(0.01)

    payload = {"user_id": "u1", "job_id": job.job_id, "ResultCode": "1001", "ResultText": "Failed"}
    await engine.apply_callback(job.job_id, parse_callback_payload(payload).outcome())
    await asyncio.wait_for(poller.wait(job.job_id), timeout=5)

    final = await engine.get_job(job.job_id)
    assert final.state == JobState.FAILED
    assert final.update_source == UpdateSource.CALLBACK


@pytest.mark.asyncio
async def test_watch_is_deduplicated_per_job():
    engine = make_engine(ScriptedProvider())
    poller = make_poller(engine, interval=1.0)
    job = await submit(engine)

    first = poller.watch(job.job_id)
    second = poller.watch(job.job_id)

    assert first is second
    assert poller.active_count == 1
    await poller.stop()
    assert poller.active_count == 0


@pytest.mark.asyncio
async def test_resume_watches_open_jobs():
    engine = make_engine(ScriptedProvider())
    poller = make_poller(engine, interval=1.0)
    open_job = await submit(engine, "u1")
    await engine.create_job("u2", "biometric_kyc")

    resumed = await poller.resume()

    assert resumed == 1
    assert poller.is_watching(open_job.job_id)
    await poller.stop()


@pytest.mark.asyncio
async def test_sweeper_expires_stale_jobs():
    clock_offset = {"seconds": 0}
    store = InMemoryJobStore()

    def clock():
        return utcnow() + timedelta(seconds=clock_offset["seconds"])

    engine = LifecycleEngine(store, FakeSigner(), ScriptedProvider(), job_max_age=60, clock=clock)
    stale = await submit(engine, "u1")
    issued = await engine.create_job("u2", "biometric_kyc")
    await engine.issue_token(issued.job_id)

    sweeper = ExpirySweeper(engine, interval=60)
    assert await sweeper.sweep_once() == 0

    clock_offset["seconds"] = 120
    assert await sweeper.sweep_once() == 2
    assert (await engine.get_job(stale.job_id)).state == JobState.EXPIRED
    assert (await engine.get_job(issued.job_id)).state == JobState.EXPIRED


class FinalizeFailsOnceStore(InMemoryJobStore):
    """Drops the first swap away from CALLBACK_RECEIVED, leaving the callback recorded."""

    def __init__(self):
        super().__init__()
        self.failed = False

    async def compare_and_swap(self, job_id, expected_version, mutator):
        current = await self.get(job_id)
        if current.state == JobState.CALLBACK_RECEIVED and not self.failed:
            self.failed = True
            raise RuntimeError("store unavailable")
        return await super().compare_and_swap(job_id, expected_version, mutator)


@pytest.mark.asyncio
async def test_sweeper_finalizes_recorded_callback():
    engine = LifecycleEngine(FinalizeFailsOnceStore(), FakeSigner(), ScriptedProvider(), cas_backoff=0.001)
    job = await submit(engine)
    callback = parse_callback_payload(
        {"user_id": job.user_id, "job_id": job.job_id, "ResultCode": "0000", "ResultText": "Enroll User"}
    ).outcome()
    with pytest.raises(RuntimeError):
        await engine.apply_callback(job.job_id, callback)

    sweeper = ExpirySweeper(engine, interval=60)
    assert await sweeper.sweep_once() == 1

    final = await engine.get_job(job.job_id)
    assert final.state == JobState.COMPLETE
    assert final.update_source == UpdateSource.CALLBACK


@pytest.mark.asyncio
async def test_unreadable_status_body_is_retried():
    statuses = iter([
        httpx.Response(200, text="<html>gateway</html>"),
        httpx.Response(200, json={"job_complete": True, "job_success": True, "result": {"ResultCode": "0000"}}),
    ])
    calls = []

    def handler(request):
        if request.url.path.endswith("/upload"):
            return httpx.Response(200, json={"smile_job_id": "000125"})
        calls.append(request.url.path)
        return next(statuses)

    client = httpx.AsyncClient(base_url="https://testapi.example/v1", transport=httpx.MockTransport(handler))
    provider = SmileIdProvider("https://testapi.example/v1", "p-1", "secret", "https://cb.example", client=client)
    engine = make_engine(provider)
    job = await submit(engine)
    poller = make_poller(engine)

    poller.watch(job.job_id)
    await asyncio.wait_for(poller.wait(job.job_id), timeout=5)

    assert len(calls) == 2
    final = await engine.get_job(job.job_id)
    assert final.state == JobState.COMPLETE
    assert final.update_source == UpdateSource.POLL


@pytest.mark.asyncio
async def test_invalid_status_payload_is_not_fatal():
    provider = ScriptedProvider(statuses=[ValueError("unexpected status shape"), Success(result_code="0000")])
    engine = make_engine(provider)
    poller = make_poller(engine)
    job = await submit(engine)

    poller.watch(job.job_id)
    await asyncio.wait_for(poller.wait(job.job_id), timeout=5)

    assert provider.status_calls == 2
    assert (await engine.get_job(job.job_id)).state == JobState.COMPLETE
