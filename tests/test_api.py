"""REST API: job submission, polling and tenant endpoints."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from brf_extract.api.deps import get_gateway
from brf_extract.config import settings
from brf_extract.main import app
from brf_extract.models.schemas import TenantAccount

from conftest import PNG_B64, TENANT, TEST_MODEL, completion


@pytest.fixture
def client(gateway, transport, monkeypatch):
    monkeypatch.setattr(settings, "worker_model", TEST_MODEL)
    monkeypatch.setattr(settings, "semantic_routing", False)
    transport.default = completion('{"chairman": "Anna Svensson", "evidence_pages": [2]}')
    app.dependency_overrides[get_gateway] = lambda: gateway
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


SUBMISSION = {
    "tenant_id": TENANT,
    "document_name": "brf_81563.pdf",
    "page_images": [PNG_B64, PNG_B64],
    "section_map": {"level_1": [{"title": "Styrelsen", "start_page": 1, "end_page": 2}]},
    "workers": ["chairman_agent"],
}


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_config_check_hides_secrets(client):
    body = client.get("/api/health/config").json()
    assert "credential_encryption_key_set" in body
    assert "credential_encryption_key" not in body


def test_submit_and_poll(client, ledger):
    resp = client.post("/api/jobs/submit", json=SUBMISSION)
    assert resp.status_code == 200
    job_id = resp.json()["job_id"]
    assert resp.json()["status"] == "pending"

    result = client.get(f"/api/jobs/{job_id}").json()
    assert result["state"]["status"] == "completed"
    assert result["report"]["fields"]["chairman"]["value"] == "Anna Svensson"
    assert result["report"]["fields"]["chairman"]["evidence_pages"] == [2]
    assert result["report"]["metadata"]["linkage"]["brf_id"] == "brf_81563"

    jobs = client.get("/api/jobs").json()
    assert {"job_id": job_id, "tenant_id": TENANT, "status": "completed"} in jobs

    balance = client.get(f"/api/tenants/{TENANT}/balance").json()
    assert balance["balance"] == pytest.approx(ledger.balance(TENANT))
    assert balance["balance"] < 10.0

    usage = client.get(f"/api/tenants/{TENANT}/usage").json()
    assert usage["calls"] == 1
    assert usage["entries"][0]["success"] is True


def test_failed_job_has_no_report(client, ledger):
    ledger.set_account(TenantAccount(tenant_id=TENANT, balance=10.0, extraction_enabled=False))
    job_id = client.post("/api/jobs/submit", json=SUBMISSION).json()["job_id"]

    result = client.get(f"/api/jobs/{job_id}").json()
    assert result["state"]["status"] == "failed"
    assert result["state"]["failed"][0]["error_code"] == "FEATURE_DISABLED"
    assert result["report"] is None


def test_unknown_job_is_404(client):
    assert client.get("/api/jobs/nope").status_code == 404


def test_unknown_tenant_is_404(client):
    assert client.get("/api/tenants/ghost/balance").status_code == 404


def test_submission_requires_pages(client):
    resp = client.post("/api/jobs/submit", json={**SUBMISSION, "page_images": []})
    assert resp.status_code == 422
