"""Photo moderation state machine applied after each scan verdict."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from photoguard.moderation.domain.policy import ModerationAction, ModerationResult
from photoguard.moderation.domain.stores import PhotoRecord, PhotoStatus, PhotoStore, QuarantineStore
from photoguard.obs import metrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Transition:
    """What applying a verdict did to one photo."""

    photo_id: str
    action: ModerationAction
    status_before: PhotoStatus
    status_after: PhotoStatus
    quarantined: bool = False
    noop: bool = False


@dataclass(slots=True)
class LifecycleController:
    """Maps verdicts onto photo status and quarantine storage.

    ``pending`` moves to ``approved`` or ``rejected``; a ``review`` verdict
    leaves the status untouched and only quarantines when categories were
    detected. ``rejected`` is final: later verdicts for the photo are
    ignored, so a replayed job never quarantines twice.
    """

    photos: PhotoStore
    quarantine: QuarantineStore

    async def apply(self, photo: PhotoRecord, result: ModerationResult) -> Transition:
        current = await self.photos.get_photo_status(photo.photo_id) or photo.status
        action = result.action

        if current is PhotoStatus.REJECTED:
            logger.info(
                "lifecycle.already_terminal",
                extra={"photo": photo.photo_id, "status": current.value, "action": action.value},
            )
            return Transition(photo.photo_id, action, current, current, noop=True)

        if action is ModerationAction.APPROVE:
            if current is PhotoStatus.APPROVED:
                return Transition(photo.photo_id, action, current, current, noop=True)
            await self.photos.set_photo_status(photo.photo_id, PhotoStatus.APPROVED)
            return Transition(photo.photo_id, action, current, PhotoStatus.APPROVED)

        if action is ModerationAction.REJECT:
            quarantined = await self._quarantine(photo, result)
            await self.photos.set_photo_status(photo.photo_id, PhotoStatus.REJECTED)
            return Transition(photo.photo_id, action, current, PhotoStatus.REJECTED, quarantined=quarantined)

        # review: never changes status
        quarantined = False
        if result.categories:
            quarantined = await self._quarantine(photo, result)
        logger.info(
            "lifecycle.flagged_for_review",
            extra={"photo": photo.photo_id, "reason": result.reason, "quarantined": quarantined},
        )
        return Transition(photo.photo_id, action, current, current, quarantined=quarantined)

    async def _quarantine(self, photo: PhotoRecord, result: ModerationResult) -> bool:
        if await self.quarantine.is_quarantined(photo.photo_id):
            logger.info("lifecycle.already_quarantined", extra={"photo": photo.photo_id})
            return False
        categories = [category.value for category in result.sorted_categories]
        await self.quarantine.quarantine(photo.event_id, photo.photo_id, result.reason, categories)
        metrics.inc_quarantine_action("quarantine")
        return True
