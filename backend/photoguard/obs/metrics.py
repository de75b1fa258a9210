"""Central registry for Prometheus metrics used by the moderation pipeline."""

from __future__ import annotations

from typing import Mapping

from prometheus_client import Counter, Gauge, Histogram


SCAN_JOBS_TOTAL = Counter(
	"photoguard_scan_jobs_total",
	"Content scan jobs processed by outcome",
	["outcome"],
)

SCAN_VERDICTS_TOTAL = Counter(
	"photoguard_scan_verdicts_total",
	"Moderation verdicts applied to photos",
	["action", "degraded"],
)

SCAN_LATENCY_SECONDS = Histogram(
	"photoguard_scan_latency_seconds",
	"Content scan job execution latency in seconds",
	buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
)

SCAN_QUEUE_DEPTH = Gauge(
	"photoguard_scan_queue_depth",
	"Content scan queue depth segmented by job state",
	["state"],
)

CLASSIFIER_ERRORS_TOTAL = Counter(
	"photoguard_classifier_errors_total",
	"Label classifier failures by exception type",
	["error"],
)

QUARANTINE_ACTIONS_TOTAL = Counter(
	"photoguard_quarantine_actions_total",
	"Quarantine store operations",
	["action"],
)


def inc_scan_job(outcome: str) -> None:
	SCAN_JOBS_TOTAL.labels(outcome=outcome).inc()


def inc_scan_verdict(action: str, degraded: bool) -> None:
	SCAN_VERDICTS_TOTAL.labels(action=action, degraded="true" if degraded else "false").inc()


def observe_scan_latency(elapsed_seconds: float) -> None:
	SCAN_LATENCY_SECONDS.observe(max(0.0, elapsed_seconds))


def set_queue_depth(counts: Mapping[str, int]) -> None:
	for state, value in counts.items():
		SCAN_QUEUE_DEPTH.labels(state=state).set(value)


def inc_classifier_error(error: str) -> None:
	CLASSIFIER_ERRORS_TOTAL.labels(error=error).inc()


def inc_quarantine_action(action: str, count: int = 1) -> None:
	if count <= 0:
		return
	QUARANTINE_ACTIONS_TOTAL.labels(action=action).inc(count)
