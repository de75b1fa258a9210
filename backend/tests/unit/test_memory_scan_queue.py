from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from photoguard.moderation.domain.exceptions import QueueError
from photoguard.moderation.domain.jobs import JobState, RetentionPolicy, RetryPolicy, ScanPriority, ScanRequest
from photoguard.moderation.infra.memory_queue import InMemoryJobQueue


def _request(photo_id: str, **kwargs) -> ScanRequest:
    return ScanRequest(photo_id=photo_id, event_id="evt-1", image_ref=f"https://cdn.test/{photo_id}.jpg", **kwargs)


@pytest.fixture
def queue(clock, events) -> InMemoryJobQueue:
    return InMemoryJobQueue(retry=RetryPolicy(max_attempts=3, backoff_seconds=2.0, timeout_seconds=300.0), events=events, clock=clock)


@pytest.mark.asyncio
async def test_duplicate_enqueue_is_a_noop(queue, recorder) -> None:
    first = await queue.enqueue(_request("p1"))
    second = await queue.enqueue(_request("p1", priority=ScanPriority.LOW))
    assert first == second == "photo:p1"
    stats = await queue.stats()
    assert stats.waiting + stats.active == 1
    assert recorder.kinds() == ["enqueued", "duplicate"]


@pytest.mark.asyncio
async def test_duplicate_while_active_is_a_noop(queue) -> None:
    await queue.enqueue(_request("p1"))
    job = await queue.dequeue(timeout=0)
    assert job is not None
    await queue.enqueue(_request("p1"))
    stats = await queue.stats()
    assert (stats.waiting, stats.active) == (0, 1)


@pytest.mark.asyncio
async def test_priority_order_critical_first_then_fifo(queue) -> None:
    await queue.enqueue(_request("normal"))
    await queue.enqueue(_request("low", priority=ScanPriority.LOW))
    await queue.enqueue(_request("critical", priority=ScanPriority.CRITICAL))
    await queue.enqueue(_request("normal-2"))
    order = []
    for _ in range(4):
        job = await queue.dequeue(timeout=0)
        order.append(job.request.photo_id)
    assert order == ["critical", "normal", "normal-2", "low"]


@pytest.mark.asyncio
async def test_reported_requests_jump_the_queue(queue) -> None:
    await queue.enqueue(_request("high", priority=ScanPriority.HIGH))
    await queue.enqueue(_request("reported", priority=ScanPriority.LOW, is_reported=True))
    job = await queue.dequeue(timeout=0)
    assert job.request.photo_id == "reported"
    record = await queue.get_job(job.job_id)
    assert record.priority_rank == 1


@pytest.mark.asyncio
async def test_reported_duplicate_escalates_pending_job(queue, recorder) -> None:
    await queue.enqueue(_request("p1"))
    await queue.enqueue(_request("p2"))
    job_id = await queue.enqueue(_request("p2", is_reported=True))
    assert job_id == "photo:p2"
    assert "escalated" in recorder.kinds()
    job = await queue.dequeue(timeout=0)
    assert job.request.photo_id == "p2"
    assert job.request.is_reported is True
    assert (await queue.stats()).waiting == 1


@pytest.mark.asyncio
async def test_retry_exhaustion_with_exponential_backoff(queue, clock, recorder) -> None:
    await queue.enqueue(_request("p1"))
    start = clock()

    job = await queue.dequeue(timeout=0)
    assert await queue.fail(job, "boom")
    assert await queue.dequeue(timeout=0) is None
    assert (await queue.stats()).delayed == 1

    clock.advance(2)
    job = await queue.dequeue(timeout=0)
    assert job.attempts == 2
    assert await queue.fail(job, "boom")

    clock.advance(3)
    assert await queue.dequeue(timeout=0) is None
    clock.advance(1)
    job = await queue.dequeue(timeout=0)
    assert job.attempts == 3
    assert await queue.fail(job, "boom")

    record = await queue.get_job("photo:p1")
    assert record.state is JobState.FAILED
    assert record.attempts == 3
    assert record.last_error == "boom"
    assert record.attempt_history == [start, start + timedelta(seconds=2), start + timedelta(seconds=6)]
    stats = await queue.stats()
    assert (stats.failed, stats.delayed, stats.waiting) == (1, 0, 0)
    assert recorder.kinds().count("retrying") == 2
    assert recorder.kinds()[-1] == "failed"


@pytest.mark.asyncio
async def test_non_retryable_failure_is_terminal(queue) -> None:
    await queue.enqueue(_request("p1"))
    job = await queue.dequeue(timeout=0)
    await queue.fail(job, "bad input", retryable=False)
    record = await queue.get_job(job.job_id)
    assert record.state is JobState.FAILED
    assert record.attempts == 1


@pytest.mark.asyncio
async def test_expired_lease_is_requeued_and_late_result_ignored(queue, clock, recorder) -> None:
    await queue.enqueue(_request("p1"))
    stale = await queue.dequeue(timeout=0)
    clock.advance(299)
    assert await queue.requeue_expired() == 0
    clock.advance(1)
    assert await queue.requeue_expired() == 1

    assert await queue.complete(stale, result={"action": "approve"}) is False
    assert recorder.kinds()[-1] == "stale"

    clock.advance(2)
    retry = await queue.dequeue(timeout=0)
    assert retry.attempts == 2
    assert await queue.fail(stale, "late failure") is False
    assert await queue.complete(retry, result={"action": "approve"}) is True
    record = await queue.get_job("photo:p1")
    assert record.state is JobState.COMPLETED
    assert record.last_error == "job timed out"


@pytest.mark.asyncio
async def test_complete_records_outcome_and_allows_rescan(queue) -> None:
    await queue.enqueue(_request("p1"))
    job = await queue.dequeue(timeout=0)
    await queue.complete(job, outcome="skipped")
    record = await queue.get_job(job.job_id)
    assert record.outcome == "skipped"
    assert record.is_live is False

    await queue.enqueue(_request("p1"))
    again = await queue.dequeue(timeout=0)
    assert again.attempts == 1


@pytest.mark.asyncio
async def test_pause_and_resume(queue) -> None:
    await queue.enqueue(_request("p1"))
    await queue.pause()
    assert (await queue.stats()).paused is True
    assert await queue.dequeue(timeout=0) is None
    await queue.resume()
    assert (await queue.dequeue(timeout=0)).request.photo_id == "p1"


@pytest.mark.asyncio
async def test_drain_removes_pending_jobs_only(queue, recorder) -> None:
    await queue.enqueue(_request("active"))
    active = await queue.dequeue(timeout=0)
    await queue.enqueue(_request("retrying"))
    await queue.enqueue(_request("waiting"))
    retrying = await queue.dequeue(timeout=0)
    assert retrying.request.photo_id == "retrying"
    await queue.fail(retrying, "boom")

    assert await queue.drain() == 2
    stats = await queue.stats()
    assert (stats.waiting, stats.delayed, stats.active) == (0, 0, 1)
    assert recorder.kinds().count("drained") == 2
    assert await queue.complete(active) is True


@pytest.mark.asyncio
async def test_dequeue_wakes_on_enqueue(queue) -> None:
    waiter = asyncio.create_task(queue.dequeue(timeout=1.0))
    await asyncio.sleep(0)
    await queue.enqueue(_request("p1"))
    job = await asyncio.wait_for(waiter, 1.0)
    assert job is not None and job.request.photo_id == "p1"


@pytest.mark.asyncio
async def test_completed_history_is_bounded(clock, events) -> None:
    queue = InMemoryJobQueue(retention=RetentionPolicy(completed_count=2), events=events, clock=clock)
    for photo_id in ("a", "b", "c"):
        await queue.enqueue(_request(photo_id))
        job = await queue.dequeue(timeout=0)
        clock.advance(1)
        await queue.complete(job)
    assert (await queue.stats()).completed == 2
    assert await queue.get_job("photo:a") is None

    clock.advance(timedelta(days=8).total_seconds())
    await queue.enqueue(_request("d"))
    await queue.complete(await queue.dequeue(timeout=0))
    assert (await queue.stats()).completed == 1


@pytest.mark.asyncio
async def test_failed_history_is_evicted_by_age(clock, events) -> None:
    queue = InMemoryJobQueue(events=events, clock=clock)
    await queue.enqueue(_request("a"))
    await queue.fail(await queue.dequeue(timeout=0), "corrupt image", retryable=False)
    clock.advance(timedelta(days=8).total_seconds())
    await queue.enqueue(_request("b"))
    await queue.fail(await queue.dequeue(timeout=0), "corrupt image", retryable=False)
    assert (await queue.stats()).failed == 2

    clock.advance(timedelta(days=23).total_seconds())
    await queue.enqueue(_request("c"))
    await queue.fail(await queue.dequeue(timeout=0), "corrupt image", retryable=False)

    assert (await queue.stats()).failed == 2
    assert await queue.get_job("photo:a") is None
    assert (await queue.get_job("photo:b")).state is JobState.FAILED


@pytest.mark.asyncio
async def test_closed_queue_rejects_enqueue_and_returns_no_jobs(queue) -> None:
    await queue.close()
    assert await queue.dequeue(timeout=0) is None
    with pytest.raises(QueueError):
        await queue.enqueue(_request("p1"))
