"""Scan job model, retry bookkeeping and the queue contract."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Mapping, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field


class ScanPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


# Lower rank is served first.
PRIORITY_RANK: Mapping[ScanPriority, int] = {
    ScanPriority.CRITICAL: 1,
    ScanPriority.HIGH: 2,
    ScanPriority.NORMAL: 3,
    ScanPriority.LOW: 5,
}


class ScanRequest(BaseModel):
    """One photo to scan. ``photo_id`` doubles as the deduplication key."""

    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)

    photo_id: str = Field(min_length=1)
    event_id: str = Field(min_length=1)
    image_ref: str = Field(min_length=1)
    priority: ScanPriority = ScanPriority.NORMAL
    is_reported: bool = False
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None
    report_reason: Optional[str] = None

    @property
    def effective_priority(self) -> ScanPriority:
        return ScanPriority.CRITICAL if self.is_reported else self.priority

    @property
    def priority_rank(self) -> int:
        return PRIORITY_RANK[self.effective_priority]

    @property
    def job_id(self) -> str:
        return job_id_for(self.photo_id)


def job_id_for(photo_id: str) -> str:
    return f"photo:{photo_id}"


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


PENDING_STATES = frozenset({JobState.WAITING, JobState.DELAYED})
LIVE_STATES = frozenset({JobState.WAITING, JobState.DELAYED, JobState.ACTIVE})


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 2.0
    timeout_seconds: float = 300.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_seconds < 0 or self.timeout_seconds <= 0:
            raise ValueError("backoff must be >= 0 and timeout > 0")

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt following ``attempt`` (1-based)."""

        return self.backoff_seconds * (2 ** max(0, attempt - 1))


@dataclass(frozen=True)
class RetentionPolicy:
    completed_age: timedelta = timedelta(days=7)
    completed_count: int = 1000
    failed_age: timedelta = timedelta(days=30)
    failed_count: int = 500


@dataclass(frozen=True)
class ScanJob:
    """Lease handed to a worker; ``attempts`` identifies the lease."""

    job_id: str
    request: ScanRequest
    attempts: int
    lease_expires_at: datetime


@dataclass
class JobRecord:
    """Queue-internal lifecycle wrapper around a scan request."""

    job_id: str
    request: ScanRequest
    state: JobState
    priority_rank: int
    sequence: int
    max_attempts: int
    created_at: datetime
    attempts: int = 0
    last_error: str | None = None
    available_at: datetime | None = None
    started_at: datetime | None = None
    lease_expires_at: datetime | None = None
    completed_at: datetime | None = None
    outcome: str | None = None
    result: dict[str, Any] | None = None
    attempt_history: list[datetime] = field(default_factory=list)

    @staticmethod
    def create(request: ScanRequest, *, sequence: int, now: datetime, policy: RetryPolicy) -> "JobRecord":
        return JobRecord(
            job_id=request.job_id,
            request=request,
            state=JobState.WAITING,
            priority_rank=request.priority_rank,
            sequence=sequence,
            max_attempts=policy.max_attempts,
            created_at=now,
        )

    @property
    def is_live(self) -> bool:
        return self.state in LIVE_STATES

    def activate(self, now: datetime, policy: RetryPolicy) -> ScanJob:
        self.attempts += 1
        self.state = JobState.ACTIVE
        self.started_at = now
        self.available_at = None
        self.lease_expires_at = now + timedelta(seconds=policy.timeout_seconds)
        self.attempt_history.append(now)
        return ScanJob(
            job_id=self.job_id,
            request=self.request,
            attempts=self.attempts,
            lease_expires_at=self.lease_expires_at,
        )

    def holds_lease(self, job: ScanJob) -> bool:
        return self.state is JobState.ACTIVE and self.attempts == job.attempts

    def finish(self, now: datetime, *, outcome: str, result: Mapping[str, Any] | None) -> None:
        self.state = JobState.COMPLETED
        self.completed_at = now
        self.lease_expires_at = None
        self.outcome = outcome
        self.result = dict(result) if result is not None else None

    def record_failure(self, error: str, now: datetime, policy: RetryPolicy, *, retryable: bool = True) -> float | None:
        """Apply a failed attempt; returns the backoff delay when retrying."""

        self.last_error = error
        self.lease_expires_at = None
        if retryable and self.attempts < self.max_attempts:
            delay = policy.delay_for(self.attempts)
            self.state = JobState.DELAYED
            self.available_at = now + timedelta(seconds=delay)
            return delay
        self.state = JobState.FAILED
        self.completed_at = now
        self.outcome = "failed"
        return None

    def escalate(self) -> None:
        """Promote a pending job to a reported, critical scan."""

        self.request = self.request.model_copy(update={"is_reported": True})
        self.priority_rank = self.request.priority_rank

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "request": self.request.model_dump(mode="json"),
            "state": self.state.value,
            "priority_rank": self.priority_rank,
            "sequence": self.sequence,
            "max_attempts": self.max_attempts,
            "created_at": self.created_at.isoformat(),
            "attempts": self.attempts,
            "last_error": self.last_error,
            "available_at": _iso(self.available_at),
            "started_at": _iso(self.started_at),
            "lease_expires_at": _iso(self.lease_expires_at),
            "completed_at": _iso(self.completed_at),
            "outcome": self.outcome,
            "result": self.result,
            "attempt_history": [stamp.isoformat() for stamp in self.attempt_history],
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "JobRecord":
        return JobRecord(
            job_id=str(data["job_id"]),
            request=ScanRequest.model_validate(data["request"]),
            state=JobState(data["state"]),
            priority_rank=int(data["priority_rank"]),
            sequence=int(data["sequence"]),
            max_attempts=int(data["max_attempts"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            attempts=int(data.get("attempts", 0)),
            last_error=data.get("last_error"),
            available_at=_parse(data.get("available_at")),
            started_at=_parse(data.get("started_at")),
            lease_expires_at=_parse(data.get("lease_expires_at")),
            completed_at=_parse(data.get("completed_at")),
            outcome=data.get("outcome"),
            result=data.get("result"),
            attempt_history=[datetime.fromisoformat(stamp) for stamp in data.get("attempt_history", [])],
        )

    def copy(self) -> "JobRecord":
        return replace(self, attempt_history=list(self.attempt_history), result=dict(self.result) if self.result else self.result)


@dataclass(frozen=True)
class QueueStats:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: bool = False

    def as_dict(self) -> dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
        }


class JobQueue(Protocol):
    """Durable priority queue of scan requests.

    Contract: at most one live job per photo (duplicate enqueue returns the
    existing id); dequeue serves the lowest priority rank first and FIFO
    within a rank; failures retry with exponential backoff up to
    ``RetryPolicy.max_attempts``; leases expire after
    ``RetryPolicy.timeout_seconds``; ``complete``/``fail`` for a lease that
    is no longer current are ignored and return ``False``.
    """

    async def enqueue(self, request: ScanRequest) -> str:
        ...

    async def dequeue(self, timeout: float | None = None) -> ScanJob | None:
        ...

    async def complete(self, job: ScanJob, *, outcome: str = "completed", result: Mapping[str, Any] | None = None) -> bool:
        ...

    async def fail(self, job: ScanJob, error: str, *, retryable: bool = True) -> bool:
        ...

    async def get_job(self, job_id: str) -> JobRecord | None:
        ...

    async def stats(self) -> QueueStats:
        ...

    async def pause(self) -> None:
        ...

    async def resume(self) -> None:
        ...

    async def drain(self) -> int:
        ...

    async def requeue_expired(self) -> int:
        ...

    async def close(self) -> None:
        ...


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None
