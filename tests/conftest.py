"""Shared fixtures: fake signer/provider and a wired lifecycle engine."""

import os

# Settings are read at import time; keep unit tests off the real provider.
os.environ.setdefault("PROVIDER_MODE", "mock")
os.environ.setdefault("JOB_STORE_BACKEND", "memory")
os.environ.setdefault("SMILE_PARTNER_ID", "test-partner")
os.environ.setdefault("SMILE_API_KEY", "test-api-key")
os.environ.setdefault("SMILE_DEFAULT_CALLBACK", "http://localhost:3000/api/v1/callback")

import pytest  # noqa: E402

from fakes import FakeSigner, ScriptedProvider  # noqa: E402
from kyc_gateway.jobs.journal import IncidentJournal  # noqa: E402
from kyc_gateway.jobs.lifecycle import LifecycleEngine  # noqa: E402
from kyc_gateway.jobs.memory_store import InMemoryJobStore  # noqa: E402
from kyc_gateway.providers.base import Evidence  # noqa: E402


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def signer():
    return FakeSigner()


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def incidents():
    return IncidentJournal()


@pytest.fixture
def engine(store, signer, provider, incidents):
    return LifecycleEngine(
        store,
        signer,
        provider,
        token_timeout=0.2,
        submit_timeout=0.2,
        job_max_age=300.0,
        poll_confirm_grace=5.0,
        cas_backoff=0.001,
        incidents=incidents,
    )


@pytest.fixture
def evidence():
    return Evidence(images=[{"image_type_id": 2, "image": "c2VsZmll"}])


@pytest.fixture
def submitted_job(engine, evidence):
    """Factory driving a fresh job up to SUBMITTED."""

    async def _submitted(user_id="u1", product="biometric_kyc"):
        job = await engine.create_job(user_id, product)
        await engine.issue_token(job.job_id)
        return await engine.submit(job.job_id, evidence)

    return _submitted
