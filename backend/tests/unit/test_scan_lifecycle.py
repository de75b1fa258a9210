from __future__ import annotations

from datetime import datetime, timezone

import pytest

from photoguard.moderation.domain.categories import Category
from photoguard.moderation.domain.lifecycle import LifecycleController
from photoguard.moderation.domain.policy import ModerationAction, ModerationResult
from photoguard.moderation.domain.stores import PhotoStatus


def _result(action: ModerationAction, *categories: Category, reason: str | None = None) -> ModerationResult:
    return ModerationResult(
        safe=not categories,
        confidence=0.9 if categories else 0.0,
        categories=frozenset(categories),
        labels=(),
        action=action,
        reason=reason,
        scanned_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
    )


@pytest.fixture
def controller(photo_store, quarantine_store) -> LifecycleController:
    return LifecycleController(photos=photo_store, quarantine=quarantine_store)


@pytest.mark.asyncio
async def test_approve_sets_approved_without_quarantine(controller, photo_store, quarantine_store) -> None:
    photo = await photo_store.get_photo("p1")
    transition = await controller.apply(photo, _result(ModerationAction.APPROVE))
    assert transition.status_after is PhotoStatus.APPROVED
    assert await photo_store.get_photo_status("p1") is PhotoStatus.APPROVED
    assert quarantine_store.calls == []


@pytest.mark.asyncio
async def test_reject_quarantines_then_sets_rejected(controller, photo_store, quarantine_store) -> None:
    photo = await photo_store.get_photo("p1")
    result = _result(ModerationAction.REJECT, Category.VIOLENCE, Category.NUDITY, reason="Detected: nudity, violence")
    transition = await controller.apply(photo, result)
    assert transition.quarantined is True
    assert await photo_store.get_photo_status("p1") is PhotoStatus.REJECTED
    assert quarantine_store.calls == [("evt-1", "p1", "Detected: nudity, violence", ("nudity", "violence"))]


@pytest.mark.asyncio
async def test_reapplying_reject_is_idempotent(controller, photo_store, quarantine_store) -> None:
    result = _result(ModerationAction.REJECT, Category.DRUGS, reason="Detected: drugs")
    await controller.apply(await photo_store.get_photo("p1"), result)
    again = await controller.apply(await photo_store.get_photo("p1"), result)
    assert again.noop is True
    assert len(quarantine_store.calls) == 1
    assert photo_store.status_writes == [("p1", PhotoStatus.REJECTED)]


@pytest.mark.asyncio
async def test_rejected_photo_ignores_later_verdicts(controller, photo_store, quarantine_store) -> None:
    photo_store.photos["p2"].status = PhotoStatus.REJECTED
    for action in ModerationAction:
        transition = await controller.apply(await photo_store.get_photo("p2"), _result(action, Category.HATE))
        assert transition.noop is True
    assert quarantine_store.calls == []
    assert photo_store.status_writes == []


@pytest.mark.asyncio
@pytest.mark.parametrize("categories", [(), (Category.NUDITY,)])
async def test_review_never_changes_status(controller, photo_store, categories) -> None:
    photo = await photo_store.get_photo("p3")
    before = photo.status
    await controller.apply(photo, _result(ModerationAction.REVIEW, *categories, reason="Flagged for review"))
    assert await photo_store.get_photo_status("p3") is before is PhotoStatus.PENDING
    assert photo_store.status_writes == []


@pytest.mark.asyncio
async def test_review_quarantines_only_with_categories(controller, photo_store, quarantine_store) -> None:
    await controller.apply(await photo_store.get_photo("p1"), _result(ModerationAction.REVIEW, reason="Scan error: timeout"))
    assert quarantine_store.calls == []
    transition = await controller.apply(
        await photo_store.get_photo("p1"), _result(ModerationAction.REVIEW, Category.HATE, reason="Flagged for review: hate")
    )
    assert transition.quarantined is True
    assert await quarantine_store.is_quarantined("p1") is True


@pytest.mark.asyncio
async def test_already_quarantined_photo_is_not_quarantined_twice(controller, photo_store, quarantine_store) -> None:
    review = _result(ModerationAction.REVIEW, Category.NUDITY, reason="Flagged for review: nudity")
    await controller.apply(await photo_store.get_photo("p1"), review)
    reject = _result(ModerationAction.REJECT, Category.NUDITY, reason="Detected: nudity")
    transition = await controller.apply(await photo_store.get_photo("p1"), reject)
    assert transition.quarantined is False
    assert len(quarantine_store.calls) == 1
    assert await photo_store.get_photo_status("p1") is PhotoStatus.REJECTED


@pytest.mark.asyncio
async def test_approve_on_approved_photo_is_noop(controller, photo_store) -> None:
    photo_store.photos["p4"].status = PhotoStatus.APPROVED
    transition = await controller.apply(await photo_store.get_photo("p4"), _result(ModerationAction.APPROVE))
    assert transition.noop is True
    assert photo_store.status_writes == []
