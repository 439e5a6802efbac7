from uuid import UUID

import pytest
from httpx import ASGITransport, AsyncClient

from batch_engine.main import create_app

CREATE = {"operation": "create", "entity": "cards", "items": [{"name": "a"}, {"name": "b"}]}

@pytest.fixture
async def client(engine):
    # ASGITransport does not run the lifespan; the engine fixture is already initialised
    app = create_app(engine, start_workers=False)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}

async def test_submit_and_get_status(client, settle):
    response = await client.post("/api/v1/jobs", json={"type": "entity.create", "payload": CREATE})
    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "queued"

    await settle(UUID(body["id"]))

    response = await client.get(f"/api/v1/jobs/{body['id']}")
    assert response.status_code == 200
    job = response.json()
    assert job["status"] == "completed"
    assert job["progress"] == 100
    assert len(job["result"]["success"]) == 2

async def test_submit_unknown_type_is_recorded_as_failed(client):
    response = await client.post("/api/v1/jobs", json={"type": "unknown.op", "payload": CREATE})
    assert response.status_code == 201
    assert response.json()["status"] == "failed"

async def test_submit_malformed_payload(client):
    response = await client.post("/api/v1/jobs", json={"type": "entity.create", "payload": {"items": "nope"}})
    assert response.status_code == 422

async def test_submit_rejects_bad_options(client):
    response = await client.post(
        "/api/v1/jobs",
        json={"type": "entity.create", "payload": CREATE, "options": {"max_attempts": 0}},
    )
    assert response.status_code == 422

async def test_unknown_job_is_404(client):
    response = await client.get("/api/v1/jobs/00000000-0000-0000-0000-000000000000")
    assert response.status_code == 404
    response = await client.post("/api/v1/jobs/00000000-0000-0000-0000-000000000000/cancel")
    assert response.status_code == 404

async def test_cancel_twice_conflicts(client):
    job_id = (await client.post("/api/v1/jobs", json={"type": "entity.create", "payload": CREATE})).json()["id"]

    response = await client.post(f"/api/v1/jobs/{job_id}/cancel")
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"

    response = await client.post(f"/api/v1/jobs/{job_id}/cancel")
    assert response.status_code == 409

async def test_list_stats_and_events(client):
    job_id = (await client.post("/api/v1/jobs", json={"type": "entity.create", "payload": CREATE})).json()["id"]
    await client.post("/api/v1/jobs", json={"type": "unknown.op", "payload": CREATE})

    response = await client.get("/api/v1/jobs", params={"status": "failed"})
    assert response.status_code == 200
    assert [j["type"] for j in response.json()] == ["unknown.op"]

    response = await client.get("/api/v1/jobs", params={"limit": 500})
    assert response.status_code == 422

    stats = (await client.get("/api/v1/jobs/stats")).json()
    assert stats["queued"] == 1
    assert stats["failed"] == 1
    assert stats["total"] == 2

    events = (await client.get(f"/api/v1/jobs/{job_id}/events")).json()
    assert events["job_id"] == job_id
    assert [e["event_type"] for e in events["events"]] == ["created"]

async def test_admin_endpoints(client):
    response = await client.post("/api/v1/admin/cleanup", json={"completed_days": 1})
    assert response.status_code == 200
    assert response.json()["removed"] == 0

    response = await client.post("/api/v1/admin/cleanup", json={"failed_days": 0})
    assert response.status_code == 422

    response = await client.post("/api/v1/admin/requeue_expired")
    assert response.json() == {"requeued_count": 0}

async def test_metrics_exposed(client):
    await client.post("/api/v1/jobs", json={"type": "entity.create", "payload": CREATE})
    response = await client.get("/metrics")
    assert response.status_code == 200
    assert "batch_jobs_submitted_total" in response.text
