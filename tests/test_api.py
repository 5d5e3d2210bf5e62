"""HTTP tests for the token, submit, callback and status routes."""

import asyncio
import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

from fakes import FakeSigner
from kyc_gateway.config import Settings
from kyc_gateway.main import build_services, create_app

CALLBACK_URL = "http://localhost:3000/api/v1/callback"
EVIDENCE = {"images": [{"image_type_id": 2, "image": "c2VsZmll"}]}


def make_settings(**overrides):
    values = dict(
        provider_mode="mock",
        job_store_backend="memory",
        smile_partner_id="test-partner",
        smile_api_key="test-api-key",
        smile_default_callback=CALLBACK_URL,
        poll_interval_seconds=60.0,
        expiry_sweep_seconds=60.0,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def services():
    return build_services(make_settings())


@pytest.fixture
def client(services):
    app = create_app(config=services.settings, services=services)
    with TestClient(app) as test_client:
        yield test_client


def issue(client, user_id="u1", product="biometric_kyc"):
    response = client.post("/api/v1/token", json={"userId": user_id, "product": product})
    assert response.status_code == 200
    return response.json()


def submit(client, job_id, evidence=EVIDENCE):
    return client.post("/api/v1/submit", json={"jobId": job_id, "evidence": evidence})


def callback(client, user_id, job_id, code="0000", text="Enroll User", **extra):
    body = {"user_id": user_id, "job_id": job_id, "ResultCode": code, "ResultText": text, **extra}
    return client.post("/api/v1/callback", json=body)


def test_token_submit_callback_then_status(client):
    token = issue(client)
    assert token["partnerId"] == "test-partner"
    assert token["environment"] == "sandbox"
    assert token["token"]

    submitted = submit(client, token["jobId"])
    assert submitted.status_code == 200
    assert submitted.json()["state"] == "SUBMITTED"

    pending = client.get(f"/api/v1/status/u1/{token['jobId']}").json()
    assert pending["state"] == "SUBMITTED"
    assert pending["pending"] is True
    assert "result" not in pending

    ack = callback(client, "u1", token["jobId"], ConfidenceValue="99.1")
    assert ack.status_code == 200
    assert ack.json()["processed"] is True

    status = client.get(f"/api/v1/status/u1/{token['jobId']}").json()
    assert status["state"] == "COMPLETE"
    assert status["pending"] is False
    assert status["result"]["success"] is True
    assert status["result"]["resultCode"] == "0000"
    assert status["result"]["source"] == "CALLBACK"
    assert "fingerprint" not in status["result"]


def test_token_generates_user_id_when_missing(client):
    response = client.post("/api/v1/token", json={"product": "smartselfie"})

    assert response.status_code == 200
    assert response.json()["userId"].startswith("user_")


def test_unknown_product_is_rejected(client):
    response = client.post("/api/v1/token", json={"userId": "u1", "product": "palm_scan"})
    assert response.status_code == 422


def test_product_catalog(client):
    products = client.get("/api/v1/token/products").json()["products"]
    assert {p["id"] for p in products} == {
        "authentication",
        "basic_kyc",
        "smartselfie",
        "biometric_kyc",
        "enhanced_kyc",
        "doc_verification",
    }


def test_enhanced_kyc_requires_identity_fields(client):
    token = issue(client, product="enhanced_kyc")

    response = submit(client, token["jobId"], {**EVIDENCE, "idInfo": {"first_name": "Ada"}})

    assert response.status_code == 422
    assert "id_number" in response.json()["detail"]["missing_fields"]


def test_double_submit_conflicts(client):
    token = issue(client)
    assert submit(client, token["jobId"]).status_code == 200

    response = submit(client, token["jobId"])

    assert response.status_code == 409
    assert response.json()["error"] == "InvalidStateError"


def test_rejected_submission_is_bad_gateway(client):
    token = issue(client)

    response = submit(client, token["jobId"], {**EVIDENCE, "options": {"simulate_rejection": True}})

    assert response.status_code == 502
    assert response.json()["error"] == "SubmissionError"


def test_submit_unknown_job(client):
    response = submit(client, "job-missing")
    assert response.status_code == 404


def test_status_hides_other_users_jobs(client):
    token = issue(client, user_id="owner")

    response = client.get(f"/api/v1/status/intruder/{token['jobId']}")

    assert response.status_code == 404
    assert response.json()["error"] == "NotFoundError"


def test_callback_for_unknown_job_is_acknowledged(client, services):
    response = callback(client, "u1", "job-missing")

    assert response.status_code == 200
    assert response.json()["processed"] is False
    kinds = [e["kind"] for e in services.engine.incidents.entries()]
    assert kinds == ["callback_not_applied"]


def test_malformed_callback_is_acknowledged(client, services):
    response = client.post("/api/v1/callback", content=b"{not json")

    assert response.status_code == 200
    assert response.json()["processed"] is False
    assert services.engine.incidents.entries(kind="malformed_callback")


def test_duplicate_callback_is_idempotent(client, services):
    token = issue(client)
    submit(client, token["jobId"])

    callback(client, "u1", token["jobId"], timestamp="t1")
    before = client.get(f"/api/v1/jobs/{token['jobId']}").json()
    again = callback(client, "u1", token["jobId"], timestamp="t2")
    after = client.get(f"/api/v1/jobs/{token['jobId']}").json()

    assert again.status_code == 200
    assert after["version"] == before["version"]
    assert len(services.engine.incidents) == 0


def test_inconsistent_callback_is_journalled(client):
    token = issue(client)
    submit(client, token["jobId"])
    callback(client, "u1", token["jobId"], code="0000")

    response = callback(client, "u1", token["jobId"], code="1001", text="Failed")

    assert response.status_code == 200
    assert response.json()["processed"] is False
    incidents = client.get("/api/v1/incidents", params={"kind": "inconsistent_callback"}).json()
    assert incidents["count"] == 1
    assert incidents["incidents"][0]["job_id"] == token["jobId"]
    assert client.get(f"/api/v1/status/u1/{token['jobId']}").json()["state"] == "COMPLETE"


def test_callback_from_wrong_user_is_ignored(client):
    token = issue(client, user_id="owner")
    submit(client, token["jobId"])

    response = callback(client, "someone-else", token["jobId"])

    assert response.json()["processed"] is False
    assert client.get(f"/api/v1/status/owner/{token['jobId']}").json()["state"] == "SUBMITTED"


def test_callback_journal_routes(client):
    token = issue(client)
    submit(client, token["jobId"])
    callback(client, "u1", token["jobId"])

    stored = client.get(f"/api/v1/callback/u1/{token['jobId']}").json()["callback"]
    assert stored["ResultCode"] == "0000"
    assert stored["processed"] is True
    assert stored["state"] == "COMPLETE"

    recent = client.get("/api/v1/callback/recent").json()
    assert recent["count"] == 1
    assert client.get("/api/v1/callback/u1/job-missing").status_code == 404


def test_job_record_route(client):
    token = issue(client)

    record = client.get(f"/api/v1/jobs/{token['jobId']}").json()

    assert record["state"] == "TOKEN_ISSUED"
    assert record["version"] == 1
    assert record["updateSource"] == "NONE"
    assert "pendingResult" not in record


def test_health(client):
    body = client.get("/api/v1/health").json()

    assert body["status"] == "healthy"
    assert body["provider"]["mode"] == "mock"
    assert body["job_store"] == "memory"


def test_signed_callbacks_are_verified():
    services = build_services(make_settings(verify_callback_signature=True))
    app = create_app(config=services.settings, services=services)

    with TestClient(app) as client:
        token = issue(client)
        submit(client, token["jobId"])
        body = json.dumps({"user_id": "u1", "job_id": token["jobId"], "ResultCode": "0000"}).encode()

        rejected = client.post("/api/v1/callback", content=body, headers={"X-Smile-Signature": "bad"})
        assert rejected.status_code == 401

        signature = hmac.new(b"test-api-key", body, hashlib.sha256).hexdigest()
        accepted = client.post("/api/v1/callback", content=body, headers={"X-Smile-Signature": signature})
        assert accepted.status_code == 200
        assert accepted.json()["processed"] is True


class FlakySigner(FakeSigner):
    """Fails the first ``failures`` issuances."""

    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures

    async def issue_token(self, job, deadline, callback_url=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("signer unreachable")
        return f"token-{job.job_id}"


def app_with_signer(signer):
    services = build_services(make_settings(), signer=signer)
    return create_app(config=services.settings, services=services)


def test_failed_issuance_can_be_retried_for_the_same_job():
    with TestClient(app_with_signer(FlakySigner(failures=1))) as client:
        failed = client.post("/api/v1/token", json={"userId": "u1"})
        assert failed.status_code == 502
        job_id = failed.json()["jobId"]

        retried = client.post("/api/v1/token", json={"userId": "u1", "jobId": job_id})

        assert retried.status_code == 200
        assert retried.json()["jobId"] == job_id
        assert client.get(f"/api/v1/jobs/{job_id}").json()["state"] == "TOKEN_ISSUED"

        again = client.post("/api/v1/token", json={"userId": "u1", "jobId": job_id})
        assert again.status_code == 409


def test_issuance_retry_checks_job_owner(client):
    token = issue(client, user_id="owner")

    response = client.post("/api/v1/token", json={"userId": "intruder", "jobId": token["jobId"]})

    assert response.status_code == 404


def test_connection_check_reports_signer_health(client, services):
    assert client.post("/api/v1/token/test").json() == {"success": True, "token": True}
    assert asyncio.run(services.engine.store.list_jobs()) == []


def test_connection_check_reports_signer_failure():
    with TestClient(app_with_signer(FakeSigner(error=ConnectionError("signer unreachable")))) as client:
        body = client.post("/api/v1/token/test").json()

    assert body["success"] is False
    assert "signer unreachable" in body["error"]


def test_status_reports_compliance_verdict(client):
    token = issue(client, product="enhanced_kyc")
    evidence = {
        **EVIDENCE,
        "idInfo": {
            "first_name": "Ada",
            "last_name": "Obi",
            "dob": "1990-01-01",
            "country": "NG",
            "id_type": "NATIONAL_ID",
            "id_number": "A123",
        },
    }
    assert submit(client, token["jobId"], evidence).status_code == 200

    callback(
        client,
        "u1",
        token["jobId"],
        code="1012",
        text="ID Validated",
        government_check={"database_match": True, "identity_match": True},
    )

    status = client.get(f"/api/v1/status/u1/{token['jobId']}").json()
    assert status["compliance"]["regulatoryStatus"] == "approved"
    assert status["compliance"]["governmentVerified"] is True
    assert status["compliance"]["kycCompleted"] is True
