"""Bounded pool of asyncio tasks that scan queued photos and apply verdicts."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from photoguard.moderation.domain.config import ConfigOverride
from photoguard.moderation.domain.exceptions import PhotoNotFoundError
from photoguard.moderation.domain.jobs import JobQueue, ScanJob, ScanRequest
from photoguard.moderation.domain.lifecycle import LifecycleController, Transition
from photoguard.moderation.domain.policy import ModerationAction, ModerationResult
from photoguard.moderation.domain.service import ModerationService
from photoguard.moderation.domain.stores import PhotoStore
from photoguard.obs.logging import bind_context, reset_context

logger = logging.getLogger(__name__)

_VERDICT_EVENTS = {
    ModerationAction.APPROVE: "scan_worker.approved",
    ModerationAction.REJECT: "scan_worker.rejected",
    ModerationAction.REVIEW: "scan_worker.flagged_for_review",
}


class ScanWorkerPool:
    """Runs exactly ``concurrency`` workers against a :class:`JobQueue`.

    Each worker leases one job at a time, scans it, applies the verdict
    through the lifecycle controller and reports back to the queue. A job
    that exceeds ``timeout_seconds`` is cancelled and failed so the queue can
    retry it; the cancelled execution never writes its verdict.
    """

    def __init__(
        self,
        queue: JobQueue,
        service: ModerationService,
        photos: PhotoStore,
        lifecycle: LifecycleController,
        *,
        concurrency: int = 3,
        timeout_seconds: float = 300.0,
        dequeue_timeout: float = 1.0,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.queue = queue
        self.service = service
        self.photos = photos
        self.lifecycle = lifecycle
        self.concurrency = concurrency
        self.timeout_seconds = timeout_seconds
        self.dequeue_timeout = dequeue_timeout
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._in_flight = 0

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._run_forever(index), name=f"scan-worker-{index}")
            for index in range(self.concurrency)
        ]
        logger.info("scan_worker.started", extra={"concurrency": self.concurrency})

    async def stop(self, grace_seconds: Optional[float] = None) -> None:
        """Stop leasing new jobs, wait for in-flight ones, then cancel stragglers."""
        if not self._tasks:
            return
        self._stopping.set()
        tasks, self._tasks = self._tasks, []
        _done, pending = await asyncio.wait(tasks, timeout=grace_seconds)
        for task in pending:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("scan_worker.stopped", extra={"cancelled": len(pending)})

    def status(self) -> dict[str, object]:
        return {
            "running": self.running,
            "concurrency": self.concurrency,
            "in_flight": self._in_flight,
        }

    async def run_once(self, timeout: float | None = 0) -> bool:
        """Lease and execute at most one job; returns whether one ran."""
        job = await self.queue.dequeue(timeout=timeout)
        if job is None:
            return False
        await self.execute(job)
        return True

    async def _run_forever(self, index: int) -> None:
        while not self._stopping.is_set():
            try:
                await self.queue.requeue_expired()
                job = await self.queue.dequeue(timeout=self.dequeue_timeout)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("scan_worker.dequeue_failed", extra={"worker": index})
                await asyncio.sleep(self.dequeue_timeout)
                continue
            if job is None:
                continue
            try:
                await self.execute(job)
            except asyncio.CancelledError:
                raise
            except Exception:
                # The lease expires and requeue_expired hands the job back out.
                logger.exception("scan_worker.report_failed", extra={"worker": index, "job_id": job.job_id})
                await asyncio.sleep(self.dequeue_timeout)

    async def execute(self, job: ScanJob) -> None:
        request = job.request
        tokens = bind_context(job_id=job.job_id, photo_id=request.photo_id, event_id=request.event_id)
        self._in_flight += 1
        try:
            try:
                result, transition = await asyncio.wait_for(self.process(request), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                logger.warning("scan_worker.timeout", extra={"attempts": job.attempts, "timeout_seconds": self.timeout_seconds})
                await self.queue.fail(job, "job timed out")
                return
            except PhotoNotFoundError:
                logger.info("scan_worker.photo_missing")
                await self.queue.complete(job, outcome="skipped")
                return
            except Exception as exc:
                logger.warning("scan_worker.job_failed", extra={"attempts": job.attempts}, exc_info=True)
                await self.queue.fail(job, str(exc) or exc.__class__.__name__)
                return
            payload = result.to_dict()
            payload["status"] = transition.status_after.value
            payload["quarantined"] = transition.quarantined
            await self.queue.complete(job, result=payload)
        finally:
            self._in_flight -= 1
            reset_context(tokens)

    async def process(self, request: ScanRequest) -> tuple[ModerationResult, Transition]:
        """Scan one request and apply its verdict; raises when the photo is gone."""
        override = ConfigOverride(auto_reject=not request.is_reported, tenant_id=request.tenant_id)
        result = await self.service.scan(request.image_ref, override)
        photo = await self.photos.get_photo(request.photo_id)
        if photo is None:
            raise PhotoNotFoundError(request.photo_id)
        transition = await self.lifecycle.apply(photo, result)
        self._log_verdict(result, transition)
        return result, transition

    def _log_verdict(self, result: ModerationResult, transition: Transition) -> None:
        extra = {
            "action": result.action.value,
            "reason": result.reason,
            "categories": [category.value for category in result.sorted_categories],
            "confidence": result.confidence,
            "status": transition.status_after.value,
            "noop": transition.noop,
        }
        if result.degraded:
            logger.warning("scan_worker.degraded_approval", extra=extra)
            return
        logger.info(_VERDICT_EVENTS[result.action], extra=extra)
