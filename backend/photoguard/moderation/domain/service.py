"""Moderation service combining the label classifier with the decision policy."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Sequence

from photoguard.moderation.domain.classifier import LabelClassifier
from photoguard.moderation.domain.config import ConfigOverride, ModerationConfig, StaticConfigProvider, TenantConfigProvider, merge_config
from photoguard.moderation.domain.policy import ModerationAction, ModerationResult, decide
from photoguard.obs import metrics

logger = logging.getLogger(__name__)

_SUGGESTED_STATUS = {
    ModerationAction.APPROVE: "approved",
    ModerationAction.REJECT: "rejected",
    ModerationAction.REVIEW: "pending",
}


@dataclass
class ModerationStats:
    total_scans: int = 0
    approved: int = 0
    rejected: int = 0
    flagged_for_review: int = 0
    errors: int = 0

    def record(self, result: ModerationResult, *, error: bool = False) -> None:
        self.total_scans += 1
        if error:
            self.errors += 1
        elif result.action is ModerationAction.APPROVE:
            self.approved += 1
        elif result.action is ModerationAction.REJECT:
            self.rejected += 1
        else:
            self.flagged_for_review += 1

    def as_dict(self) -> dict[str, int]:
        return {
            "total_scans": self.total_scans,
            "approved": self.approved,
            "rejected": self.rejected,
            "flagged_for_review": self.flagged_for_review,
            "errors": self.errors,
        }


@dataclass
class ModerationService:
    """Scans images and returns verdicts; never raises for classifier failures."""

    classifier: LabelClassifier
    configs: TenantConfigProvider = field(default_factory=StaticConfigProvider)
    batch_concurrency: int = 5
    clock: Callable[[], datetime] = field(default=lambda: datetime.now(timezone.utc))
    _stats: ModerationStats = field(default_factory=ModerationStats, init=False)

    def effective_config(self, override: ConfigOverride | None = None) -> ModerationConfig:
        tenant_id = override.tenant_id if override is not None else None
        return merge_config(self.configs.get(tenant_id), override)

    async def scan(self, image_ref: str, override: ConfigOverride | None = None) -> ModerationResult:
        config = self.effective_config(override)
        if not self.classifier.available:
            result = ModerationResult.degraded_approval(self.clock())
            self._stats.record(result)
            return result
        try:
            labels = await self.classifier.detect_labels(image_ref, config.min_confidence_percent)
        except Exception as exc:
            metrics.inc_classifier_error(exc.__class__.__name__)
            logger.warning("moderation.scan_error", extra={"image_ref": image_ref, "error": str(exc)}, exc_info=True)
            result = ModerationResult.scan_error(str(exc) or exc.__class__.__name__, self.clock())
            self._stats.record(result, error=True)
            return result
        result = decide(labels, config, clock=self.clock)
        self._stats.record(result)
        return result

    async def scan_batch(
        self,
        image_refs: Sequence[str],
        override: ConfigOverride | None = None,
    ) -> list[ModerationResult]:
        """Scan in fixed windows of ``batch_concurrency``, preserving input order."""

        results: list[ModerationResult] = []
        window = max(1, self.batch_concurrency)
        for start in range(0, len(image_refs), window):
            chunk = image_refs[start : start + window]
            results.extend(await asyncio.gather(*(self.scan(ref, override) for ref in chunk)))
        return results

    async def moderate_photo(
        self,
        image_ref: str,
        override: ConfigOverride | None = None,
    ) -> tuple[str, str | None]:
        """Return the photo status a verdict suggests, with its reason."""

        result = await self.scan(image_ref, override)
        status = _SUGGESTED_STATUS[result.action]
        return status, None if result.action is ModerationAction.APPROVE else result.reason

    def stats(self) -> dict[str, int]:
        return self._stats.as_dict()
