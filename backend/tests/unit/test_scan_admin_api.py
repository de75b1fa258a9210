from __future__ import annotations

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from photoguard.moderation.api import router
from photoguard.moderation.domain.service import ModerationService
from photoguard.moderation.infra.memory_queue import InMemoryJobQueue
from photoguard.moderation.pipeline import ContentScanningPipeline


@pytest.fixture
def pipeline(clock, events, stub_classifier, photo_store, quarantine_store) -> ContentScanningPipeline:
    return ContentScanningPipeline(
        queue=InMemoryJobQueue(events=events, clock=clock),
        service=ModerationService(classifier=stub_classifier),
        photos=photo_store,
        quarantine=quarantine_store,
        events=events,
        sweep_interval_seconds=None,
    )


@pytest.fixture
def app(pipeline) -> FastAPI:
    app = FastAPI()
    app.include_router(router)
    app.state.moderation_pipeline = pipeline
    return app


@pytest_asyncio.fixture
async def api_client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.mark.asyncio
async def test_stats_report_queue_counts_and_workers(api_client, pipeline) -> None:
    await pipeline.enqueue({"photo_id": "p1", "event_id": "evt-1", "image_ref": "https://cdn.test/p1.jpg"})
    response = await api_client.get("/moderation/scan-queue/stats")
    assert response.status_code == 200
    body = response.json()
    assert body["waiting"] == 1
    assert body["paused"] is False
    assert body["workers"] == {"running": False, "concurrency": 3, "in_flight": 0, "enabled": True}


@pytest.mark.asyncio
async def test_pause_resume_and_drain(api_client, pipeline) -> None:
    await pipeline.enqueue({"photo_id": "p1", "event_id": "evt-1", "image_ref": "https://cdn.test/p1.jpg"})

    assert (await api_client.post("/moderation/scan-queue/pause")).status_code == 204
    assert (await pipeline.queue_stats()).paused is True
    assert (await api_client.post("/moderation/scan-queue/resume")).status_code == 204
    assert (await pipeline.queue_stats()).paused is False

    response = await api_client.post("/moderation/scan-queue/drain")
    assert response.status_code == 200
    assert response.json() == {"removed": 1}


@pytest.mark.asyncio
async def test_report_photo_queues_reported_job(api_client) -> None:
    response = await api_client.post("/moderation/photos/p2/report", json={"event_id": "evt-1", "reason": "spam"})
    assert response.status_code == 202
    assert response.json() == {"job_id": "photo:p2", "queued": True}

    job = await api_client.get("/moderation/scan-queue/jobs/photo:p2")
    assert job.status_code == 200
    body = job.json()
    assert body["is_reported"] is True
    assert body["priority_rank"] == 1
    assert body["state"] == "waiting"


@pytest.mark.asyncio
async def test_report_unknown_photo_is_404(api_client) -> None:
    response = await api_client.post("/moderation/photos/missing/report", json={"event_id": "evt-1"})
    assert response.status_code == 404
    assert response.json()["detail"] == "photo_not_found"


@pytest.mark.asyncio
async def test_report_after_shutdown_is_503(api_client, pipeline) -> None:
    await pipeline.shutdown()
    response = await api_client.post("/moderation/photos/p1/report", json={"event_id": "evt-1"})
    assert response.status_code == 503


@pytest.mark.asyncio
async def test_unknown_job_is_404(api_client) -> None:
    response = await api_client.get("/moderation/scan-queue/jobs/photo:nope")
    assert response.status_code == 404
    assert response.json()["detail"] == "job_not_found"


@pytest.mark.asyncio
async def test_missing_pipeline_is_503() -> None:
    app = FastAPI()
    app.include_router(router)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        response = await client.get("/moderation/scan-queue/stats")
    assert response.status_code == 503


@pytest.mark.asyncio
async def test_event_quarantine_lists_flagged_photos(api_client, quarantine_store) -> None:
    await quarantine_store.quarantine("evt-1", "p3", "Detected: violence", ["violence"])
    await quarantine_store.quarantine("evt-2", "p4", "Detected: drugs", ["drugs"])

    response = await api_client.get("/moderation/events/evt-1/quarantine")
    assert response.status_code == 200
    body = response.json()
    assert [item["photo_id"] for item in body] == ["p3"]
    assert body[0]["status"] == "pending"
    assert body[0]["categories"] == ["violence"]

    empty = await api_client.get("/moderation/events/evt-9/quarantine")
    assert empty.json() == []
