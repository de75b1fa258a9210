"""In-process scan queue backed by heaps and an asyncio condition."""

from __future__ import annotations

import asyncio
import heapq
import itertools
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from photoguard.moderation.domain.events import JobEvent, JobEventBus, JobEventKind
from photoguard.moderation.domain.exceptions import QueueError
from photoguard.moderation.domain.jobs import (
    JobRecord,
    JobState,
    PENDING_STATES,
    QueueStats,
    RetentionPolicy,
    RetryPolicy,
    ScanJob,
    ScanRequest,
)


class InMemoryJobQueue:
    """Single-process implementation of the ``JobQueue`` contract.

    All bookkeeping happens while holding one condition lock, so enqueue,
    dequeue, complete and fail are linearizable across worker tasks.
    Nothing survives a restart; use :class:`RedisJobQueue` for durability.
    """

    def __init__(
        self,
        *,
        retry: RetryPolicy | None = None,
        retention: RetentionPolicy | None = None,
        events: JobEventBus | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.retry = retry or RetryPolicy()
        self.retention = retention or RetentionPolicy()
        self.events = events or JobEventBus()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._cond = asyncio.Condition()
        self._records: dict[str, JobRecord] = {}
        self._waiting: list[tuple[int, int, str]] = []
        self._delayed: list[tuple[datetime, int, str]] = []
        self._sequence = itertools.count(1)
        self._paused = False
        self._closed = False

    async def enqueue(self, request: ScanRequest) -> str:
        async with self._cond:
            if self._closed:
                raise QueueError("scan queue is closed")
            now = self._clock()
            existing = self._records.get(request.job_id)
            if existing is not None and existing.is_live:
                if request.is_reported and not existing.request.is_reported and existing.state in PENDING_STATES:
                    existing.escalate()
                    if existing.state is JobState.WAITING:
                        heapq.heappush(self._waiting, (existing.priority_rank, existing.sequence, existing.job_id))
                    self._publish(JobEventKind.ESCALATED, existing)
                    self._cond.notify_all()
                else:
                    self._publish(JobEventKind.DUPLICATE, existing)
                return existing.job_id
            record = JobRecord.create(request, sequence=next(self._sequence), now=now, policy=self.retry)
            self._records[record.job_id] = record
            heapq.heappush(self._waiting, (record.priority_rank, record.sequence, record.job_id))
            self._publish(JobEventKind.ENQUEUED, record)
            self._cond.notify_all()
            return record.job_id

    async def dequeue(self, timeout: float | None = None) -> ScanJob | None:
        """Lease the next eligible job, waiting up to ``timeout`` seconds.

        ``timeout=None`` waits indefinitely; ``0`` checks once.
        """

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        async with self._cond:
            while True:
                if self._closed:
                    return None
                now = self._clock()
                self._promote_due(now)
                if not self._paused:
                    record = self._pop_waiting()
                    if record is not None:
                        job = record.activate(now, self.retry)
                        self._publish(JobEventKind.ACTIVE, record)
                        return job
                remaining = deadline - loop.time() if deadline is not None else None
                if remaining is not None and remaining <= 0:
                    return None
                wait = self._seconds_until_next_delayed(now) if not self._paused else None
                if remaining is not None:
                    wait = remaining if wait is None else min(wait, remaining)
                try:
                    await asyncio.wait_for(self._cond.wait(), wait)
                except asyncio.TimeoutError:
                    pass

    async def complete(self, job: ScanJob, *, outcome: str = "completed", result: Mapping[str, Any] | None = None) -> bool:
        async with self._cond:
            record = self._records.get(job.job_id)
            if record is None or not record.holds_lease(job):
                self._publish_stale(job, record)
                return False
            now = self._clock()
            elapsed = (now - record.started_at).total_seconds() if record.started_at else None
            record.finish(now, outcome=outcome, result=result)
            kind = JobEventKind.SKIPPED if outcome == "skipped" else JobEventKind.COMPLETED
            self._publish(
                kind,
                record,
                action=(result or {}).get("action"),
                degraded=bool((result or {}).get("degraded", False)),
                elapsed_seconds=elapsed,
            )
            self._prune(now)
            return True

    async def fail(self, job: ScanJob, error: str, *, retryable: bool = True) -> bool:
        async with self._cond:
            record = self._records.get(job.job_id)
            if record is None or not record.holds_lease(job):
                self._publish_stale(job, record)
                return False
            self._fail_record(record, error, retryable=retryable)
            return True

    async def get_job(self, job_id: str) -> JobRecord | None:
        async with self._cond:
            record = self._records.get(job_id)
            return record.copy() if record is not None else None

    async def stats(self) -> QueueStats:
        async with self._cond:
            counts = {state: 0 for state in JobState}
            for record in self._records.values():
                counts[record.state] += 1
            return QueueStats(
                waiting=counts[JobState.WAITING],
                active=counts[JobState.ACTIVE],
                completed=counts[JobState.COMPLETED],
                failed=counts[JobState.FAILED],
                delayed=counts[JobState.DELAYED],
                paused=self._paused,
            )

    async def pause(self) -> None:
        async with self._cond:
            self._paused = True

    async def resume(self) -> None:
        async with self._cond:
            self._paused = False
            self._cond.notify_all()

    async def is_paused(self) -> bool:
        return self._paused

    async def drain(self) -> int:
        """Drop every waiting and delayed job; active jobs are untouched."""

        async with self._cond:
            removed = [record for record in self._records.values() if record.state in PENDING_STATES]
            for record in removed:
                del self._records[record.job_id]
                self._publish(JobEventKind.DRAINED, record)
            self._waiting.clear()
            self._delayed.clear()
            return len(removed)

    async def requeue_expired(self) -> int:
        async with self._cond:
            now = self._clock()
            expired = [
                record
                for record in self._records.values()
                if record.state is JobState.ACTIVE and record.lease_expires_at is not None and record.lease_expires_at <= now
            ]
            for record in expired:
                self._fail_record(record, "job timed out", retryable=True)
            return len(expired)

    async def close(self) -> None:
        async with self._cond:
            self._closed = True
            self._cond.notify_all()

    # --- internals -------------------------------------------------------

    def _fail_record(self, record: JobRecord, error: str, *, retryable: bool) -> None:
        now = self._clock()
        elapsed = (now - record.started_at).total_seconds() if record.started_at else None
        delay = record.record_failure(error, now, self.retry, retryable=retryable)
        if delay is not None:
            heapq.heappush(self._delayed, (record.available_at, record.sequence, record.job_id))
            self._publish(JobEventKind.RETRYING, record, error=error, delay_seconds=delay, elapsed_seconds=elapsed)
            self._cond.notify_all()
        else:
            self._publish(JobEventKind.FAILED, record, error=error, elapsed_seconds=elapsed)
            self._prune(now)

    def _pop_waiting(self) -> JobRecord | None:
        while self._waiting:
            rank, sequence, job_id = heapq.heappop(self._waiting)
            record = self._records.get(job_id)
            if record is None or record.state is not JobState.WAITING:
                continue
            if record.priority_rank != rank or record.sequence != sequence:
                continue
            return record
        return None

    def _promote_due(self, now: datetime) -> None:
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(self._delayed)
            record = self._records.get(job_id)
            if record is None or record.state is not JobState.DELAYED:
                continue
            record.state = JobState.WAITING
            record.available_at = None
            heapq.heappush(self._waiting, (record.priority_rank, record.sequence, record.job_id))

    def _seconds_until_next_delayed(self, now: datetime) -> float | None:
        while self._delayed:
            available_at, _, job_id = self._delayed[0]
            record = self._records.get(job_id)
            if record is None or record.state is not JobState.DELAYED:
                heapq.heappop(self._delayed)
                continue
            return max(0.0, (available_at - now).total_seconds())
        return None

    def _prune(self, now: datetime) -> None:
        for state, age, count in (
            (JobState.COMPLETED, self.retention.completed_age, self.retention.completed_count),
            (JobState.FAILED, self.retention.failed_age, self.retention.failed_count),
        ):
            finished = sorted(
                (record for record in self._records.values() if record.state is state),
                key=lambda record: record.completed_at or now,
            )
            cutoff = now - age
            keep_from = max(0, len(finished) - count)
            for index, record in enumerate(finished):
                if index < keep_from or (record.completed_at is not None and record.completed_at < cutoff):
                    del self._records[record.job_id]

    def _publish(self, kind: JobEventKind, record: JobRecord, **fields: Any) -> None:
        self.events.publish(
            JobEvent(
                kind=kind,
                job_id=record.job_id,
                photo_id=record.request.photo_id,
                attempts=record.attempts,
                at=self._clock(),
                **fields,
            )
        )

    def _publish_stale(self, job: ScanJob, record: JobRecord | None) -> None:
        self.events.publish(
            JobEvent(
                kind=JobEventKind.STALE,
                job_id=job.job_id,
                photo_id=job.request.photo_id,
                attempts=job.attempts,
                at=self._clock(),
                error="lease no longer current" if record is not None else "job no longer tracked",
            )
        )
