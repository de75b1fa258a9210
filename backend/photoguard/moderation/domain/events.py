"""Scan job lifecycle events and the listeners that consume them."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol

from photoguard.obs import metrics

logger = logging.getLogger(__name__)


class JobEventKind(str, Enum):
    ENQUEUED = "enqueued"
    DUPLICATE = "duplicate"
    ESCALATED = "escalated"
    ACTIVE = "active"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    RETRYING = "retrying"
    FAILED = "failed"
    STALE = "stale"
    DRAINED = "drained"


@dataclass(frozen=True)
class JobEvent:
    kind: JobEventKind
    job_id: str
    photo_id: str
    attempts: int = 0
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error: str | None = None
    action: str | None = None
    degraded: bool = False
    delay_seconds: float | None = None
    elapsed_seconds: float | None = None


class JobEventListener(Protocol):
    def __call__(self, event: JobEvent) -> None:
        ...


class JobEventBus:
    """Fan-out of lifecycle events to any number of subscribers.

    Listener failures are logged and never reach the publisher.
    """

    def __init__(self) -> None:
        self._listeners: list[JobEventListener] = []

    def subscribe(self, listener: JobEventListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: JobEventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, event: JobEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("job_events.listener_failed", extra={"kind": event.kind.value, "job": event.job_id})


class LoggingListener:
    """Writes one structured log line per lifecycle event."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logging.getLogger("photoguard.moderation.jobs")

    def __call__(self, event: JobEvent) -> None:
        extra = {
            "job": event.job_id,
            "photo": event.photo_id,
            "attempts": event.attempts,
        }
        if event.error:
            extra["error"] = event.error
        if event.action:
            extra["action"] = event.action
        if event.delay_seconds is not None:
            extra["delay_seconds"] = event.delay_seconds
        name = f"scan_job.{event.kind.value}"
        if event.kind is JobEventKind.FAILED:
            self._log.error(name, extra=extra)
        elif event.kind in {JobEventKind.RETRYING, JobEventKind.STALE}:
            self._log.warning(name, extra=extra)
        elif event.kind is JobEventKind.COMPLETED and event.degraded:
            extra["degraded"] = True
            self._log.warning(name, extra=extra)
        else:
            self._log.info(name, extra=extra)


class MetricsListener:
    """Translates lifecycle events into Prometheus counters."""

    _OUTCOMES = {
        JobEventKind.COMPLETED: "completed",
        JobEventKind.SKIPPED: "skipped",
        JobEventKind.RETRYING: "retried",
        JobEventKind.FAILED: "failed",
        JobEventKind.STALE: "stale",
    }

    def __call__(self, event: JobEvent) -> None:
        outcome = self._OUTCOMES.get(event.kind)
        if outcome is None:
            return
        metrics.inc_scan_job(outcome)
        if event.elapsed_seconds is not None:
            metrics.observe_scan_latency(event.elapsed_seconds)
        if event.kind is JobEventKind.COMPLETED and event.action:
            metrics.inc_scan_verdict(event.action, event.degraded)
