"""Operator endpoints for the content scanning queue."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from photoguard.moderation.domain.exceptions import PhotoNotFoundError, PipelineNotRunning
from photoguard.moderation.domain.jobs import JobRecord
from photoguard.moderation.domain.stores import QuarantineMetadata
from photoguard.moderation.pipeline import ContentScanningPipeline

router = APIRouter(prefix="/moderation", tags=["moderation-scan"])


class QueueStatsOut(BaseModel):
    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int
    paused: bool
    workers: dict[str, Any]


class DrainOut(BaseModel):
    removed: int


class JobOut(BaseModel):
    job_id: str
    photo_id: str
    event_id: str
    state: str
    priority_rank: int
    is_reported: bool
    attempts: int
    max_attempts: int
    last_error: str | None
    created_at: datetime
    completed_at: datetime | None
    outcome: str | None
    result: dict[str, Any] | None

    @classmethod
    def from_domain(cls, record: JobRecord) -> "JobOut":
        return cls(
            job_id=record.job_id,
            photo_id=record.request.photo_id,
            event_id=record.request.event_id,
            state=record.state.value,
            priority_rank=record.priority_rank,
            is_reported=record.request.is_reported,
            attempts=record.attempts,
            max_attempts=record.max_attempts,
            last_error=record.last_error,
            created_at=record.created_at,
            completed_at=record.completed_at,
            outcome=record.outcome,
            result=record.result,
        )


class QuarantineOut(BaseModel):
    photo_id: str
    event_id: str
    status: str
    reason: str | None
    categories: list[str]
    flagged_at: datetime
    expires_at: datetime
    reviewed_by: str | None
    reviewed_at: datetime | None

    @classmethod
    def from_domain(cls, metadata: QuarantineMetadata) -> "QuarantineOut":
        return cls(
            photo_id=metadata.photo_id,
            event_id=metadata.event_id,
            status=metadata.status.value,
            reason=metadata.reason,
            categories=list(metadata.categories),
            flagged_at=metadata.flagged_at,
            expires_at=metadata.expires_at,
            reviewed_by=metadata.reviewed_by,
            reviewed_at=metadata.reviewed_at,
        )


class ReportIn(BaseModel):
    event_id: str = Field(min_length=1)
    reason: str | None = Field(default=None, max_length=500)
    tenant_id: str | None = None


class ReportOut(BaseModel):
    job_id: str | None
    queued: bool


def get_pipeline(request: Request) -> ContentScanningPipeline:
    pipeline = getattr(request.app.state, "moderation_pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="moderation pipeline unavailable")
    return pipeline


@router.get("/scan-queue/stats", response_model=QueueStatsOut)
async def queue_stats(pipeline: ContentScanningPipeline = Depends(get_pipeline)) -> QueueStatsOut:
    stats = await pipeline.queue_stats()
    return QueueStatsOut(**stats.as_dict(), paused=stats.paused, workers=pipeline.worker_status())


@router.post("/scan-queue/pause", status_code=status.HTTP_204_NO_CONTENT)
async def pause_queue(pipeline: ContentScanningPipeline = Depends(get_pipeline)) -> None:
    await pipeline.pause_queue()


@router.post("/scan-queue/resume", status_code=status.HTTP_204_NO_CONTENT)
async def resume_queue(pipeline: ContentScanningPipeline = Depends(get_pipeline)) -> None:
    await pipeline.resume_queue()


@router.post("/scan-queue/drain", response_model=DrainOut)
async def drain_queue(pipeline: ContentScanningPipeline = Depends(get_pipeline)) -> DrainOut:
    return DrainOut(removed=await pipeline.clear_queue())


@router.get("/scan-queue/jobs/{job_id}", response_model=JobOut)
async def get_job(job_id: str, pipeline: ContentScanningPipeline = Depends(get_pipeline)) -> JobOut:
    record = await pipeline.get_job(job_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job_not_found")
    return JobOut.from_domain(record)


@router.post("/photos/{photo_id}/report", response_model=ReportOut, status_code=status.HTTP_202_ACCEPTED)
async def report_photo(
    photo_id: str,
    body: ReportIn,
    pipeline: ContentScanningPipeline = Depends(get_pipeline),
) -> ReportOut:
    try:
        job_id = await pipeline.report_photo(photo_id, body.event_id, body.reason, tenant_id=body.tenant_id)
    except PhotoNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="photo_not_found") from exc
    except PipelineNotRunning as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.detail) from exc
    return ReportOut(job_id=job_id, queued=job_id is not None)


@router.get("/events/{event_id}/quarantine", response_model=list[QuarantineOut])
async def list_event_quarantine(event_id: str, pipeline: ContentScanningPipeline = Depends(get_pipeline)) -> list[QuarantineOut]:
    items = await pipeline.quarantined_photos(event_id)
    return [QuarantineOut.from_domain(item) for item in items]
