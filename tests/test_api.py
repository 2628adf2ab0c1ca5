"""Tests for the HTTP adapter."""

import asyncio
from unittest.mock import patch

import pytest
from httpx import ASGITransport, AsyncClient

from frame_pipeline.api.main import create_app
from frame_pipeline.errors import StoreUnavailable
from frame_pipeline.models import PipelineConfig


@pytest.fixture
def app(service):
    return create_app(service=service, start_worker=False)


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.mark.asyncio(loop_scope="function")
async def test_create_job(client: AsyncClient, store):
    response = await client.post("/process", json={"file_id": "file123"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Processing job created successfully"
    assert body["data"]["status"] == "pending"
    assert body["data"]["file_id"] == "file123"
    assert store.dequeue() == body["data"]["job_id"]


@pytest.mark.asyncio(loop_scope="function")
async def test_create_job_invalid_body(client: AsyncClient):
    response = await client.post("/process", json={})

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"].startswith("Invalid request")


@pytest.mark.asyncio(loop_scope="function")
async def test_status_unknown_job(client: AsyncClient):
    response = await client.get("/process/job_missing/status")

    assert response.status_code == 404
    assert response.json() == {"success": False, "message": "", "error": "Job not found"}


@pytest.mark.asyncio(loop_scope="function")
async def test_status_after_completion(client: AsyncClient, service):
    job = service.submit("file123")
    service.execute(job.id)

    response = await client.get(f"/process/{job.id}/status")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "completed"
    assert data["progress"] == 100
    assert data["frame_count"] == 3
    assert data["output_ref"] == f"frames_{job.id}.zip"


@pytest.mark.asyncio(loop_scope="function")
async def test_list_jobs(client: AsyncClient, service):
    first = service.submit("a")
    second = service.submit("b")

    response = await client.get("/jobs")

    data = response.json()["data"]
    assert data["total"] == 2
    assert [job["id"] for job in data["jobs"]] == [second.id, first.id]


@pytest.mark.asyncio(loop_scope="function")
async def test_cancel_flow(client: AsyncClient, service):
    job = service.submit("file123")

    response = await client.delete(f"/process/{job.id}")
    assert response.status_code == 200
    assert response.json()["message"] == "Job cancelled successfully"

    response = await client.delete(f"/process/{job.id}")
    assert response.status_code == 400
    assert response.json()["error"] == "Cannot cancel job with status: cancelled"


@pytest.mark.asyncio(loop_scope="function")
async def test_cancel_unknown_job(client: AsyncClient):
    response = await client.delete("/process/job_missing")
    assert response.status_code == 404


@pytest.mark.asyncio(loop_scope="function")
async def test_health(client: AsyncClient):
    with patch("frame_pipeline.api.main.check_ffmpeg", return_value=True):
        response = await client.get("/health")

    body = response.json()
    assert response.status_code == 200
    assert body["success"] is True
    assert body["data"]["store_healthy"] is True
    assert body["data"]["ffmpeg_available"] is True


@pytest.mark.asyncio(loop_scope="function")
async def test_health_without_ffmpeg(client: AsyncClient):
    with patch("frame_pipeline.api.main.check_ffmpeg", return_value=False):
        response = await client.get("/health")

    body = response.json()
    assert body["success"] is False
    assert body["data"]["ffmpeg_available"] is False


@pytest.mark.asyncio(loop_scope="function")
async def test_store_outage_returns_500(client: AsyncClient, service):
    with patch.object(service, "list_jobs", side_effect=StoreUnavailable("disk I/O error")):
        response = await client.get("/jobs")

    assert response.status_code == 500
    assert response.json()["success"] is False
    assert "unavailable" in response.json()["error"]


@pytest.mark.asyncio(loop_scope="function")
async def test_lifespan_runs_worker(tmp_path):
    """Without an injected service the app builds one and executes jobs itself."""
    config = PipelineConfig.from_dict(
        {
            "store": {"db_path": str(tmp_path / "api.db")},
            "worker": {"max_concurrent_jobs": 1, "poll_interval_s": 0.01, "dequeue_timeout_s": 0.0},
            "processing": {
                "uploads_dir": str(tmp_path / "uploads"),
                "output_dir": str(tmp_path / "outputs"),
                "temp_dir": str(tmp_path / "processing"),
            },
        }
    )
    app = create_app(config=config)

    async with app.router.lifespan_context(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            created = await ac.post("/process", json={"file_id": "ghost"})
            job_id = created.json()["data"]["job_id"]

            status = None
            for _ in range(200):
                status = (await ac.get(f"/process/{job_id}/status")).json()["data"]["status"]
                if status == "failed":
                    break
                await asyncio.sleep(0.02)

    assert status == "failed"
    assert app.state.service is None
