"""Durable scan queue stored in Redis sorted sets.

Layout under ``prefix``:

- ``job:<job_id>``  JSON-encoded :class:`JobRecord`
- ``waiting``       ZSET scored ``rank * 1e13 + sequence``
- ``delayed``       ZSET scored by the retry availability timestamp
- ``active``        ZSET scored by the lease deadline
- ``completed`` / ``failed``  ZSETs scored by finish time (retention)
- ``seq``           enqueue sequence counter
- ``paused``        flag key

Multi-key transitions run as WATCH/MULTI/EXEC transactions, so concurrent
workers in one or many processes never lease the same job twice.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from redis.exceptions import WatchError

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

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RANK_SPAN = 10_000_000_000_000
_MAX_WATCH_RETRIES = 100


class RedisJobQueue:
    """Redis implementation of the ``JobQueue`` contract."""

    def __init__(
        self,
        redis: Any,
        *,
        prefix: str = "content-scan",
        retry: RetryPolicy | None = None,
        retention: RetentionPolicy | None = None,
        events: JobEventBus | None = None,
        poll_interval: float = 0.5,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.redis = redis
        self.prefix = prefix
        self.retry = retry or RetryPolicy()
        self.retention = retention or RetentionPolicy()
        self.events = events or JobEventBus()
        self.poll_interval = poll_interval
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._closed = False

    # --- keys ------------------------------------------------------------

    def _key(self, name: str) -> str:
        return f"{self.prefix}:{name}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    @property
    def _waiting_key(self) -> str:
        return self._key("waiting")

    @property
    def _delayed_key(self) -> str:
        return self._key("delayed")

    @property
    def _active_key(self) -> str:
        return self._key("active")

    @property
    def _completed_key(self) -> str:
        return self._key("completed")

    @property
    def _failed_key(self) -> str:
        return self._key("failed")

    @property
    def _paused_key(self) -> str:
        return self._key("paused")

    # --- contract --------------------------------------------------------

    async def enqueue(self, request: ScanRequest) -> str:
        if self._closed:
            raise QueueError("scan queue is closed")
        job_key = self._job_key(request.job_id)

        async def _apply(pipe) -> tuple[JobEventKind, JobRecord]:
            existing = await self._load(pipe, request.job_id)
            now = self._clock()
            if existing is not None and existing.is_live:
                if request.is_reported and not existing.request.is_reported and existing.state in PENDING_STATES:
                    existing.escalate()
                    pipe.multi()
                    pipe.set(job_key, _dump(existing))
                    if existing.state is JobState.WAITING:
                        pipe.zadd(self._waiting_key, {existing.job_id: _waiting_score(existing)})
                    await pipe.execute()
                    return JobEventKind.ESCALATED, existing
                return JobEventKind.DUPLICATE, existing
            sequence = int(await self.redis.incr(self._key("seq")))
            record = JobRecord.create(request, sequence=sequence, now=now, policy=self.retry)
            pipe.multi()
            pipe.set(job_key, _dump(record))
            pipe.zadd(self._waiting_key, {record.job_id: _waiting_score(record)})
            pipe.zrem(self._completed_key, record.job_id)
            pipe.zrem(self._failed_key, record.job_id)
            await pipe.execute()
            return JobEventKind.ENQUEUED, record

        kind, record = await self._transact([job_key], _apply)
        self._publish(kind, record)
        return record.job_id

    async def dequeue(self, timeout: float | None = None) -> ScanJob | None:
        """Poll for the next eligible job; ``timeout=None`` waits indefinitely."""

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        while not self._closed:
            job = await self._try_dequeue()
            if job is not None:
                return job
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                await asyncio.sleep(min(self.poll_interval, remaining))
            else:
                await asyncio.sleep(self.poll_interval)
        return None

    async def complete(self, job: ScanJob, *, outcome: str = "completed", result: Mapping[str, Any] | None = None) -> bool:
        job_key = self._job_key(job.job_id)

        async def _apply(pipe) -> tuple[bool, JobRecord | None, float | None]:
            record = await self._load(pipe, job.job_id)
            if record is None or not record.holds_lease(job):
                return False, record, None
            now = self._clock()
            elapsed = (now - record.started_at).total_seconds() if record.started_at else None
            record.finish(now, outcome=outcome, result=result)
            pipe.multi()
            pipe.set(job_key, _dump(record))
            pipe.zrem(self._active_key, record.job_id)
            pipe.zadd(self._completed_key, {record.job_id: now.timestamp()})
            await pipe.execute()
            return True, record, elapsed

        applied, record, elapsed = await self._transact([job_key], _apply)
        if not applied or record is None:
            self._publish_stale(job, record)
            return False
        kind = JobEventKind.SKIPPED if outcome == "skipped" else JobEventKind.COMPLETED
        self._publish(
            kind,
            record,
            action=(result or {}).get("action"),
            degraded=bool((result or {}).get("degraded", False)),
            elapsed_seconds=elapsed,
        )
        await self._prune()
        return True

    async def fail(self, job: ScanJob, error: str, *, retryable: bool = True) -> bool:
        applied = await self._fail_lease(job.job_id, error, retryable=retryable, attempts=job.attempts)
        if not applied:
            record = await self.get_job(job.job_id)
            self._publish_stale(job, record)
        return applied

    async def get_job(self, job_id: str) -> JobRecord | None:
        raw = await self.redis.get(self._job_key(job_id))
        return _load_raw(raw)

    async def stats(self) -> QueueStats:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.zcard(self._waiting_key)
            pipe.zcard(self._active_key)
            pipe.zcard(self._completed_key)
            pipe.zcard(self._failed_key)
            pipe.zcard(self._delayed_key)
            pipe.exists(self._paused_key)
            waiting, active, completed, failed, delayed, paused = await pipe.execute()
        return QueueStats(
            waiting=int(waiting),
            active=int(active),
            completed=int(completed),
            failed=int(failed),
            delayed=int(delayed),
            paused=bool(paused),
        )

    async def pause(self) -> None:
        await self.redis.set(self._paused_key, "1")

    async def resume(self) -> None:
        await self.redis.delete(self._paused_key)

    async def is_paused(self) -> bool:
        return bool(await self.redis.exists(self._paused_key))

    async def drain(self) -> int:
        """Drop every waiting and delayed job; active jobs are untouched."""

        job_ids = [
            *[_to_str(item) for item in await self.redis.zrange(self._waiting_key, 0, -1)],
            *[_to_str(item) for item in await self.redis.zrange(self._delayed_key, 0, -1)],
        ]
        removed = 0
        for job_id in job_ids:
            job_key = self._job_key(job_id)

            async def _apply(pipe, job_id=job_id, job_key=job_key) -> JobRecord | None:
                record = await self._load(pipe, job_id)
                pipe.multi()
                pipe.zrem(self._waiting_key, job_id)
                pipe.zrem(self._delayed_key, job_id)
                if record is not None and record.state in PENDING_STATES:
                    pipe.delete(job_key)
                    await pipe.execute()
                    return record
                await pipe.execute()
                return None

            record = await self._transact([job_key], _apply)
            if record is not None:
                removed += 1
                self._publish(JobEventKind.DRAINED, record)
        return removed

    async def requeue_expired(self) -> int:
        now = self._clock()
        expired = await self.redis.zrangebyscore(self._active_key, "-inf", now.timestamp())
        count = 0
        for item in expired:
            if await self._fail_lease(_to_str(item), "job timed out", retryable=True, attempts=None, expired_before=now):
                count += 1
        return count

    async def close(self) -> None:
        self._closed = True

    # --- internals -------------------------------------------------------

    async def _try_dequeue(self) -> ScanJob | None:
        if await self.redis.exists(self._paused_key):
            return None
        await self._promote_due()

        async def _apply(pipe) -> tuple[ScanJob | None, JobRecord | None, bool]:
            head = await pipe.zrange(self._waiting_key, 0, 0)
            if not head:
                return None, None, False
            job_id = _to_str(head[0])
            job_key = self._job_key(job_id)
            await pipe.watch(job_key)
            record = await self._load(pipe, job_id)
            if record is None or record.state is not JobState.WAITING:
                pipe.multi()
                pipe.zrem(self._waiting_key, job_id)
                await pipe.execute()
                return None, None, True
            job = record.activate(self._clock(), self.retry)
            pipe.multi()
            pipe.zrem(self._waiting_key, job_id)
            pipe.zadd(self._active_key, {job_id: job.lease_expires_at.timestamp()})
            pipe.set(job_key, _dump(record))
            await pipe.execute()
            return job, record, False

        while True:
            job, record, retry = await self._transact([self._waiting_key], _apply)
            if retry:
                continue
            if job is not None and record is not None:
                self._publish(JobEventKind.ACTIVE, record)
            return job

    async def _promote_due(self) -> None:
        now = self._clock()
        due = await self.redis.zrangebyscore(self._delayed_key, "-inf", now.timestamp())
        for item in due:
            job_id = _to_str(item)
            job_key = self._job_key(job_id)

            async def _apply(pipe, job_id=job_id, job_key=job_key) -> None:
                record = await self._load(pipe, job_id)
                pipe.multi()
                pipe.zrem(self._delayed_key, job_id)
                if record is not None and record.state is JobState.DELAYED:
                    record.state = JobState.WAITING
                    record.available_at = None
                    pipe.set(job_key, _dump(record))
                    pipe.zadd(self._waiting_key, {job_id: _waiting_score(record)})
                await pipe.execute()

            await self._transact([job_key], _apply)

    async def _fail_lease(
        self,
        job_id: str,
        error: str,
        *,
        retryable: bool,
        attempts: int | None,
        expired_before: datetime | None = None,
    ) -> bool:
        job_key = self._job_key(job_id)

        async def _apply(pipe) -> tuple[JobRecord | None, float | None, float | None]:
            record = await self._load(pipe, job_id)
            if record is None or record.state is not JobState.ACTIVE:
                return None, None, None
            if attempts is not None and record.attempts != attempts:
                return None, None, None
            if expired_before is not None and (record.lease_expires_at is None or record.lease_expires_at > expired_before):
                return None, None, None
            now = self._clock()
            elapsed = (now - record.started_at).total_seconds() if record.started_at else None
            delay = record.record_failure(error, now, self.retry, retryable=retryable)
            pipe.multi()
            pipe.set(job_key, _dump(record))
            pipe.zrem(self._active_key, job_id)
            if delay is not None:
                pipe.zadd(self._delayed_key, {job_id: record.available_at.timestamp()})
            else:
                pipe.zadd(self._failed_key, {job_id: now.timestamp()})
            await pipe.execute()
            return record, delay, elapsed

        record, delay, elapsed = await self._transact([job_key], _apply)
        if record is None:
            return False
        if delay is not None:
            self._publish(JobEventKind.RETRYING, record, error=error, delay_seconds=delay, elapsed_seconds=elapsed)
        else:
            self._publish(JobEventKind.FAILED, record, error=error, elapsed_seconds=elapsed)
            await self._prune()
        return True

    async def _prune(self) -> None:
        now = self._clock()
        for zset_key, age, count in (
            (self._completed_key, self.retention.completed_age, self.retention.completed_count),
            (self._failed_key, self.retention.failed_age, self.retention.failed_count),
        ):
            stale = {_to_str(item) for item in await self.redis.zrangebyscore(zset_key, "-inf", (now - age).timestamp())}
            total = int(await self.redis.zcard(zset_key))
            overflow = total - count
            if overflow > 0:
                stale.update(_to_str(item) for item in await self.redis.zrange(zset_key, 0, overflow - 1))
            for job_id in stale:
                job_key = self._job_key(job_id)

                async def _apply(pipe, job_id=job_id, job_key=job_key, zset_key=zset_key) -> None:
                    record = await self._load(pipe, job_id)
                    pipe.multi()
                    pipe.zrem(zset_key, job_id)
                    if record is None or not record.is_live:
                        pipe.delete(job_key)
                    await pipe.execute()

                await self._transact([job_key], _apply)

    async def _transact(self, keys: list[str], fn: Callable[[Any], Awaitable[T]]) -> T:
        async with self.redis.pipeline(transaction=True) as pipe:
            for _ in range(_MAX_WATCH_RETRIES):
                try:
                    await pipe.watch(*keys)
                    return await fn(pipe)
                except WatchError:
                    logger.debug("scan_queue.watch_conflict", extra={"keys": keys})
                    continue
        raise QueueError(f"gave up after {_MAX_WATCH_RETRIES} conflicting updates on {keys}")

    async def _load(self, pipe, job_id: str) -> JobRecord | None:
        return _load_raw(await pipe.get(self._job_key(job_id)))

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


def _waiting_score(record: JobRecord) -> float:
    return float(record.priority_rank * _RANK_SPAN + record.sequence)


def _dump(record: JobRecord) -> str:
    return json.dumps(record.to_dict(), separators=(",", ":"))


def _load_raw(raw: Any) -> JobRecord | None:
    if not raw:
        return None
    return JobRecord.from_dict(json.loads(raw))


def _to_str(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)
