from __future__ import annotations

import asyncio
import logging

import pytest

from photoguard.moderation.domain.exceptions import PhotoNotFoundError, PipelineNotRunning
from photoguard.moderation.domain.jobs import JobState, ScanPriority
from photoguard.moderation.domain.service import ModerationService
from photoguard.moderation.domain.stores import PhotoStatus
from photoguard.moderation.infra.memory_queue import InMemoryJobQueue
from photoguard.moderation.pipeline import ContentScanningPipeline, build_pipeline
from photoguard.settings import Settings


def _payload(photo_id: str, **kwargs) -> dict:
    return {"photo_id": photo_id, "event_id": "evt-1", "image_ref": f"https://cdn.test/{photo_id}.jpg", **kwargs}


@pytest.fixture
def classifier(make_classifier):
    return make_classifier({"https://cdn.test/p3.jpg": [("Gore", 0.97)]})


@pytest.fixture
def make_pipeline(clock, events, classifier, photo_store, quarantine_store):
    def _make(**kwargs) -> ContentScanningPipeline:
        return ContentScanningPipeline(
            queue=InMemoryJobQueue(events=events, clock=clock),
            service=ModerationService(classifier=classifier),
            photos=photo_store,
            quarantine=quarantine_store,
            events=events,
            dequeue_timeout=0.05,
            sweep_interval_seconds=None,
            **kwargs,
        )

    return _make


@pytest.mark.asyncio
async def test_report_photo_queues_critical_review_only_scan(make_pipeline) -> None:
    pipeline = make_pipeline()
    job_id = await pipeline.report_photo("p2", "evt-1", "looks inappropriate")
    assert job_id == "photo:p2"
    record = await pipeline.get_job(job_id)
    assert record.request.is_reported is True
    assert record.request.priority is ScanPriority.HIGH
    assert record.priority_rank == 1
    assert record.request.report_reason == "looks inappropriate"
    assert record.request.image_ref == "https://cdn.test/p2.jpg"


@pytest.mark.asyncio
async def test_report_unknown_photo_raises(make_pipeline) -> None:
    pipeline = make_pipeline()
    with pytest.raises(PhotoNotFoundError):
        await pipeline.report_photo("missing", "evt-1")
    assert (await pipeline.queue_stats()).waiting == 0


@pytest.mark.asyncio
async def test_disabled_pipeline_skips_enqueue_and_runs_no_workers(make_pipeline) -> None:
    pipeline = make_pipeline(enabled=False)
    await pipeline.start()
    assert pipeline.running is False
    assert await pipeline.enqueue(_payload("p1")) is None
    assert (await pipeline.queue_stats()).waiting == 0
    assert pipeline.worker_status()["enabled"] is False


@pytest.mark.asyncio
async def test_enqueue_batch_counts_valid_requests(make_pipeline, caplog) -> None:
    pipeline = make_pipeline()
    queued = await pipeline.enqueue_batch(
        [
            _payload("p1"),
            {"photo_id": "p2", "event_id": "evt-1"},
            _payload("p3", priority="urgent"),
            _payload("p4", priority="low"),
        ]
    )
    assert queued == 2
    assert (await pipeline.queue_stats()).waiting == 2
    warnings = [record for record in caplog.records if record.getMessage() == "moderation_pipeline.batch_item_invalid"]
    assert len(warnings) == 2


@pytest.mark.asyncio
async def test_enqueue_after_shutdown_raises(make_pipeline) -> None:
    pipeline = make_pipeline()
    await pipeline.initialize()
    assert pipeline.running is True
    await pipeline.shutdown()
    assert pipeline.running is False
    with pytest.raises(PipelineNotRunning):
        await pipeline.enqueue(_payload("p1"))


@pytest.mark.asyncio
async def test_operator_controls(make_pipeline, recorder) -> None:
    pipeline = make_pipeline()
    await pipeline.enqueue(_payload("p1"))
    await pipeline.enqueue(_payload("p2"))

    await pipeline.pause_queue()
    assert (await pipeline.queue_stats()).paused is True
    await pipeline.resume_queue()
    assert (await pipeline.queue_stats()).paused is False

    assert await pipeline.clear_queue() == 2
    assert (await pipeline.queue_stats()).waiting == 0
    assert recorder.kinds().count("drained") == 2


@pytest.mark.asyncio
async def test_started_pipeline_moderates_queued_photos(make_pipeline, photo_store, quarantine_store) -> None:
    pipeline = make_pipeline()
    await pipeline.start()
    try:
        await pipeline.enqueue(_payload("p1"))
        await pipeline.enqueue(_payload("p3"))
        for _ in range(200):
            if (await pipeline.queue_stats()).completed == 2:
                break
            await asyncio.sleep(0.01)
    finally:
        await pipeline.stop(grace_seconds=1.0)

    assert await photo_store.get_photo_status("p1") is PhotoStatus.APPROVED
    assert await photo_store.get_photo_status("p3") is PhotoStatus.REJECTED
    assert await quarantine_store.is_quarantined("p3") is True
    assert (await pipeline.get_job("photo:p3")).state is JobState.COMPLETED
    assert pipeline.moderation_stats()["rejected"] == 1
    status = pipeline.worker_status()
    assert status["concurrency"] == 3
    assert status["running"] is False


@pytest.mark.asyncio
async def test_build_pipeline_with_memory_backend(stub_classifier, photo_store, quarantine_store) -> None:
    config = Settings(
        moderation_queue_backend="memory",
        moderation_worker_concurrency=2,
        moderation_job_attempts=5,
        moderation_enabled=True,
    )
    pipeline = await build_pipeline(config, classifier=stub_classifier, photos=photo_store, quarantine=quarantine_store)
    assert isinstance(pipeline.queue, InMemoryJobQueue)
    assert pipeline.queue.retry.max_attempts == 5
    assert pipeline.worker_status()["concurrency"] == 2
    assert pipeline.enabled is True


@pytest.mark.asyncio
async def test_enqueue_skips_rejected_photo_unless_reported(make_pipeline, photo_store, caplog) -> None:
    photo_store.photos["p1"].status = PhotoStatus.REJECTED
    photo_store.photos["p2"].status = PhotoStatus.APPROVED
    pipeline = make_pipeline()

    with caplog.at_level(logging.INFO, logger="photoguard.moderation.pipeline"):
        assert await pipeline.enqueue(_payload("p1")) is None
    assert any(record.getMessage() == "moderation_pipeline.enqueue_redundant" for record in caplog.records)
    assert await pipeline.enqueue(_payload("p2")) == "photo:p2"
    assert await pipeline.report_photo("p1", "evt-1", "still visible") == "photo:p1"
    assert (await pipeline.queue_stats()).waiting == 2


@pytest.mark.asyncio
async def test_build_pipeline_warns_without_classifier_credentials(photo_store, quarantine_store, caplog) -> None:
    config = Settings(
        moderation_queue_backend="memory",
        aws_access_key_id=None,
        aws_secret_access_key=None,
    )
    assert config.classifier_configured() is False
    pipeline = await build_pipeline(config, photos=photo_store, quarantine=quarantine_store)
    try:
        assert pipeline.service.classifier.available is False
        assert any(record.getMessage() == "moderation_pipeline.classifier_unconfigured" for record in caplog.records)
    finally:
        await pipeline.shutdown()
