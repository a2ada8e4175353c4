"""
HTTP job handler tests: health, CORS, error envelope and stage dispatch.
"""

import uuid

import pytest

from slocast.services.stages import STAGES


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["service"] == "slocast"
    assert "version" in body
    assert "X-Request-ID" in response.headers


@pytest.mark.asyncio
async def test_options_preflight(client):
    response = await client.options("/api/v1/jobs/generate-forecast")

    assert response.status_code == 200
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert response.headers["Access-Control-Allow-Methods"] == "POST, OPTIONS"


def test_every_stage_has_a_route():
    from slocast.api.routers.jobs import router

    paths = {route.path for route in router.routes}
    assert {f"/api/v1/jobs/{name}" for name in STAGES} <= paths
    assert "/api/v1/jobs/execute-remediation" in paths


@pytest.mark.asyncio
async def test_stage_returns_summary(client, make_tenant):
    await make_tenant("tenant-a")

    response = await client.post("/api/v1/jobs/generate-recommendations", json={"tenant_id": "tenant-a"})

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert "tenants_scanned" in body
    assert response.headers["Access-Control-Allow-Origin"] == "*"


@pytest.mark.asyncio
async def test_stage_without_body(client):
    response = await client.post("/api/v1/jobs/evaluate-experiment")

    assert response.status_code == 200
    assert response.json() == {
        "ok": True, "evaluated": 0, "rolled_out": 0, "rolled_back": 0, "failed": 0, "skipped": 0,
    }


@pytest.mark.asyncio
async def test_digest_requires_tenant(client):
    response = await client.post("/api/v1/jobs/send-forecast-digest", json={})

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "tenant_id required"
    assert "error_id" in body
    # Error envelopes carry CORS headers too
    assert response.headers["Access-Control-Allow-Origin"] == "*"


@pytest.mark.asyncio
async def test_execute_remediation_requires_run_id(client):
    response = await client.post("/api/v1/jobs/execute-remediation", json={})

    assert response.status_code == 400
    assert response.json()["error"] == "run_id required"


@pytest.mark.asyncio
async def test_execute_remediation_unknown_run(client):
    response = await client.post("/api/v1/jobs/execute-remediation", json={"run_id": str(uuid.uuid4())})

    assert response.status_code == 404
    assert response.json()["error"] == "Run not found"
