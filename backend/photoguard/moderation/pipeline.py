"""Content scanning pipeline: queue, workers and operator entry points in one object."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Mapping

from pydantic import ValidationError

from photoguard.moderation.domain.classifier import LabelClassifier
from photoguard.moderation.domain.config import load_moderation_config
from photoguard.moderation.domain.events import JobEventBus, LoggingListener, MetricsListener
from photoguard.moderation.domain.exceptions import ModerationError, PhotoNotFoundError, PipelineNotRunning
from photoguard.moderation.domain.jobs import JobQueue, JobRecord, QueueStats, RetryPolicy, ScanPriority, ScanRequest
from photoguard.moderation.domain.lifecycle import LifecycleController
from photoguard.moderation.domain.service import ModerationService
from photoguard.moderation.domain.stores import PhotoStatus, PhotoStore, QuarantineMetadata, QuarantineStore
from photoguard.moderation.jobs import quarantine_gc
from photoguard.moderation.workers.scan_worker import ScanWorkerPool
from photoguard.obs import metrics

logger = logging.getLogger(__name__)


class ContentScanningPipeline:
    """Owns the scan queue, worker pool and quarantine sweep.

    Construct it explicitly (or through :func:`build_pipeline`) and control
    its lifetime with :meth:`start` / :meth:`stop`. With ``enabled=False``
    no workers run and :meth:`enqueue` returns ``None``.
    """

    def __init__(
        self,
        *,
        queue: JobQueue,
        service: ModerationService,
        photos: PhotoStore,
        quarantine: QuarantineStore,
        events: JobEventBus | None = None,
        enabled: bool = True,
        concurrency: int = 3,
        job_timeout_seconds: float = 300.0,
        dequeue_timeout: float = 1.0,
        sweep_interval_seconds: float | None = 86400.0,
    ) -> None:
        self.queue = queue
        self.service = service
        self.photos = photos
        self.quarantine = quarantine
        self.events = events or getattr(queue, "events", None) or JobEventBus()
        self.enabled = enabled
        self.lifecycle = LifecycleController(photos=photos, quarantine=quarantine)
        self.workers = ScanWorkerPool(
            queue,
            service,
            photos,
            self.lifecycle,
            concurrency=concurrency,
            timeout_seconds=job_timeout_seconds,
            dequeue_timeout=dequeue_timeout,
        )
        self.sweep_interval_seconds = sweep_interval_seconds
        self._sweep_task: asyncio.Task | None = None
        self._shut_down = False

    # --- lifecycle -------------------------------------------------------

    async def start(self) -> None:
        if not self.enabled:
            logger.info("moderation_pipeline.disabled")
            return
        self.workers.start()
        if self.sweep_interval_seconds and self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_forever(), name="quarantine-sweep")
        logger.info("moderation_pipeline.started", extra={"concurrency": self.workers.concurrency})

    async def stop(self, grace_seconds: float | None = None) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            await asyncio.gather(self._sweep_task, return_exceptions=True)
            self._sweep_task = None
        await self.workers.stop(grace_seconds)
        logger.info("moderation_pipeline.stopped")

    async def initialize(self) -> None:
        await self.start()

    async def shutdown(self) -> None:
        """Stop processing and release the queue and classifier connections."""

        self._shut_down = True
        await self.stop()
        await self.queue.close()
        close = getattr(self.service.classifier, "close", None)
        if close is not None:
            await close()

    @property
    def running(self) -> bool:
        return self.workers.running

    # --- producers -------------------------------------------------------

    async def enqueue(self, request: ScanRequest | Mapping[str, Any]) -> str | None:
        """Queue one photo for scanning.

        Returns the job id, or ``None`` when the pipeline is disabled or the
        photo is already rejected and the request is not a report.
        """

        if not isinstance(request, ScanRequest):
            request = ScanRequest.model_validate(request)
        if self._shut_down:
            raise PipelineNotRunning("moderation pipeline has been shut down")
        if not self.enabled:
            logger.info("moderation_pipeline.enqueue_skipped", extra={"photo": request.photo_id})
            return None
        if not request.is_reported:
            status = await self.photos.get_photo_status(request.photo_id)
            if status is PhotoStatus.REJECTED:
                logger.info("moderation_pipeline.enqueue_redundant", extra={"photo": request.photo_id, "status": status.value})
                return None
        return await self.queue.enqueue(request)

    async def enqueue_batch(self, requests: Iterable[ScanRequest | Mapping[str, Any]]) -> int:
        queued = 0
        for request in requests:
            try:
                job_id = await self.enqueue(request)
            except (ValidationError, ModerationError) as exc:
                logger.warning("moderation_pipeline.batch_item_invalid", extra={"error": str(exc)})
                continue
            except Exception:
                logger.exception("moderation_pipeline.batch_item_failed")
                continue
            if job_id is not None:
                queued += 1
        logger.info("moderation_pipeline.batch_enqueued", extra={"queued": queued})
        return queued

    async def report_photo(
        self,
        photo_id: str,
        event_id: str,
        reason: str | None = None,
        *,
        tenant_id: str | None = None,
    ) -> str | None:
        """Queue a critical, review-only rescan of a photo a user reported."""

        photo = await self.photos.get_photo(photo_id)
        if photo is None:
            raise PhotoNotFoundError(photo_id)
        request = ScanRequest(
            photo_id=photo_id,
            event_id=event_id,
            image_ref=photo.image_ref,
            priority=ScanPriority.HIGH,
            is_reported=True,
            tenant_id=tenant_id or photo.tenant_id,
            user_id=photo.user_id,
            report_reason=reason,
        )
        logger.info("moderation_pipeline.photo_reported", extra={"photo": photo_id, "event": event_id, "reason": reason})
        return await self.enqueue(request)

    # --- operator surface ------------------------------------------------

    async def queue_stats(self) -> QueueStats:
        stats = await self.queue.stats()
        metrics.set_queue_depth(stats.as_dict())
        return stats

    async def pause_queue(self) -> None:
        await self.queue.pause()
        logger.info("moderation_pipeline.paused")

    async def resume_queue(self) -> None:
        await self.queue.resume()
        logger.info("moderation_pipeline.resumed")

    async def clear_queue(self) -> int:
        removed = await self.queue.drain()
        logger.info("moderation_pipeline.drained", extra={"removed": removed})
        return removed

    async def get_job(self, job_id: str) -> JobRecord | None:
        return await self.queue.get_job(job_id)

    async def quarantined_photos(self, event_id: str) -> list[QuarantineMetadata]:
        return await self.quarantine.list_by_event(event_id)

    def worker_status(self) -> dict[str, Any]:
        status = self.workers.status()
        status["enabled"] = self.enabled
        return status

    def moderation_stats(self) -> dict[str, int]:
        return self.service.stats()

    async def _sweep_forever(self) -> None:
        if not self.sweep_interval_seconds:
            return
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                await quarantine_gc.run(self.quarantine)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("quarantine_gc.failed")


async def build_pipeline(
    config: Any = None,
    *,
    redis: Any = None,
    classifier: LabelClassifier | None = None,
    photos: PhotoStore | None = None,
    quarantine: QuarantineStore | None = None,
) -> ContentScanningPipeline:
    """Wire a pipeline from settings; collaborators can be injected."""

    if config is None:
        from photoguard.settings import settings as config

    events = JobEventBus()
    events.subscribe(LoggingListener())
    events.subscribe(MetricsListener())
    retry = RetryPolicy(
        max_attempts=config.moderation_job_attempts,
        backoff_seconds=config.moderation_backoff_seconds,
        timeout_seconds=config.moderation_job_timeout_seconds,
    )

    queue: JobQueue
    if config.moderation_queue_backend == "memory":
        from photoguard.moderation.infra.memory_queue import InMemoryJobQueue

        queue = InMemoryJobQueue(retry=retry, events=events)
    else:
        from photoguard.infra.redis import redis_client
        from photoguard.moderation.infra.redis_queue import RedisJobQueue

        queue = RedisJobQueue(
            redis if redis is not None else redis_client,
            prefix=config.moderation_queue_prefix,
            retry=retry,
            events=events,
            poll_interval=config.moderation_poll_interval,
        )

    if classifier is None:
        from photoguard.moderation.infra.rekognition import RekognitionLabelClassifier

        classifier = RekognitionLabelClassifier.from_settings(config)
        if not config.classifier_configured():
            logger.warning("moderation_pipeline.classifier_unconfigured")
    service = ModerationService(
        classifier=classifier,
        configs=load_moderation_config(config.moderation_config_path),
        batch_concurrency=config.moderation_batch_concurrency,
    )

    if photos is None:
        from photoguard.infra.postgres import get_pool
        from photoguard.moderation.infra.photo_repo import PostgresPhotoStore

        photos = PostgresPhotoStore(await get_pool())
    if quarantine is None:
        from photoguard.moderation.infra.quarantine_store import S3QuarantineStore

        quarantine = S3QuarantineStore.from_settings(config)

    return ContentScanningPipeline(
        queue=queue,
        service=service,
        photos=photos,
        quarantine=quarantine,
        events=events,
        enabled=config.moderation_enabled,
        concurrency=config.moderation_worker_concurrency,
        job_timeout_seconds=config.moderation_job_timeout_seconds,
        sweep_interval_seconds=config.quarantine_sweep_interval_seconds,
    )
