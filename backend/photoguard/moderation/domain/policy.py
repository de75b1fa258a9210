"""Pure decision policy turning classifier labels into a moderation verdict."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable

from photoguard.moderation.domain.categories import ZERO_TOLERANCE_LABELS, Category, category_for, sort_categories
from photoguard.moderation.domain.config import ModerationConfig

DEGRADED_REASON = "classifier unavailable - manual moderation required"


class ModerationAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    REVIEW = "review"


@dataclass(frozen=True)
class Label:
    """Raw label reported by the classifier, confidence as a fraction."""

    name: str
    confidence: float


@dataclass(frozen=True)
class DetectedLabel:
    name: str
    confidence: float
    category: Category


@dataclass(frozen=True)
class ModerationResult:
    """Verdict plus the detail needed to audit it."""

    safe: bool
    confidence: float
    categories: frozenset[Category]
    labels: tuple[DetectedLabel, ...]
    action: ModerationAction
    reason: str | None = None
    scanned_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    degraded: bool = False

    @property
    def sorted_categories(self) -> list[Category]:
        return sort_categories(self.categories)

    def to_dict(self) -> dict[str, Any]:
        return {
            "safe": self.safe,
            "confidence": self.confidence,
            "categories": [category.value for category in self.sorted_categories],
            "labels": [
                {"name": label.name, "confidence": label.confidence, "category": label.category.value}
                for label in self.labels
            ],
            "action": self.action.value,
            "reason": self.reason,
            "scanned_at": self.scanned_at.isoformat(),
            "degraded": self.degraded,
        }

    @staticmethod
    def degraded_approval(now: datetime | None = None) -> "ModerationResult":
        return ModerationResult(
            safe=True,
            confidence=0.0,
            categories=frozenset(),
            labels=(),
            action=ModerationAction.APPROVE,
            reason=DEGRADED_REASON,
            scanned_at=now or datetime.now(timezone.utc),
            degraded=True,
        )

    @staticmethod
    def scan_error(message: str, now: datetime | None = None) -> "ModerationResult":
        return ModerationResult(
            safe=False,
            confidence=0.0,
            categories=frozenset(),
            labels=(),
            action=ModerationAction.REVIEW,
            reason=f"Scan error: {message}",
            scanned_at=now or datetime.now(timezone.utc),
        )


def decide(
    labels: Iterable[Label],
    config: ModerationConfig,
    *,
    clock: Callable[[], datetime] | None = None,
) -> ModerationResult:
    """Map labels to categories and compute the verdict.

    Unmapped label names are ignored. Mapped labels outside
    ``config.detect_categories`` are ignored unless the label name is
    zero-tolerance, which always counts.
    """

    detected: list[DetectedLabel] = []
    categories: set[Category] = set()
    max_confidence = 0.0
    zero_tolerance = False

    for label in labels:
        category = category_for(label.name)
        if category is None:
            continue
        is_zero_tolerance = label.name in ZERO_TOLERANCE_LABELS
        if category not in config.detect_categories and not is_zero_tolerance:
            continue
        max_confidence = max(max_confidence, label.confidence)
        zero_tolerance = zero_tolerance or is_zero_tolerance
        detected.append(DetectedLabel(name=label.name, confidence=label.confidence, category=category))
        categories.add(category)

    ordered = sort_categories(categories)
    joined = ", ".join(category.value for category in ordered)
    if zero_tolerance or categories:
        if config.auto_reject:
            action = ModerationAction.REJECT
            reason: str | None = f"Detected: {joined}"
        else:
            action = ModerationAction.REVIEW
            reason = f"Flagged for review: {joined}"
    else:
        action = ModerationAction.APPROVE
        reason = None

    return ModerationResult(
        safe=not categories,
        confidence=max_confidence,
        categories=frozenset(categories),
        labels=tuple(detected),
        action=action,
        reason=reason,
        scanned_at=(clock or _utcnow)(),
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
