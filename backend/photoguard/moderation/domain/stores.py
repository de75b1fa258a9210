"""Storage contracts and in-memory fallbacks for photo state and quarantine."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable, Protocol


class PhotoStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class QuarantineStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


@dataclass(slots=True)
class PhotoRecord:
    """Slice of the photo row the moderation pipeline reads."""

    photo_id: str
    event_id: str
    status: PhotoStatus
    image_ref: str
    user_id: str | None = None
    tenant_id: str | None = None


@dataclass(slots=True)
class QuarantineMetadata:
    photo_id: str
    event_id: str
    original_path: str
    status: QuarantineStatus
    flagged_at: datetime
    expires_at: datetime
    reason: str | None = None
    categories: list[str] = field(default_factory=list)
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "photo_id": self.photo_id,
            "event_id": self.event_id,
            "original_path": self.original_path,
            "status": self.status.value,
            "flagged_at": self.flagged_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "reason": self.reason,
            "categories": list(self.categories),
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "QuarantineMetadata":
        reviewed_at = data.get("reviewed_at")
        return QuarantineMetadata(
            photo_id=str(data["photo_id"]),
            event_id=str(data["event_id"]),
            original_path=str(data["original_path"]),
            status=QuarantineStatus(data["status"]),
            flagged_at=datetime.fromisoformat(data["flagged_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            reason=data.get("reason"),
            categories=list(data.get("categories") or []),
            reviewed_by=data.get("reviewed_by"),
            reviewed_at=datetime.fromisoformat(reviewed_at) if reviewed_at else None,
        )


class PhotoStore(Protocol):
    """Photo records owned by the surrounding application."""

    async def get_photo(self, photo_id: str) -> PhotoRecord | None:
        """Return the photo or ``None`` when it was deleted."""

    async def get_photo_status(self, photo_id: str) -> PhotoStatus | None:
        """Return the current moderation status, ``None`` when missing."""

    async def set_photo_status(self, photo_id: str, status: PhotoStatus) -> None:
        """Persist a moderation status."""


class QuarantineStore(Protocol):
    """Restricted storage for flagged photo assets."""

    async def quarantine(
        self,
        event_id: str,
        photo_id: str,
        reason: str | None,
        categories: Iterable[str],
    ) -> QuarantineMetadata:
        """Move a photo's assets out of public storage."""

    async def is_quarantined(self, photo_id: str) -> bool:
        """True while a pending quarantine entry exists for the photo."""

    async def get_metadata(self, photo_id: str) -> QuarantineMetadata | None:
        """Return the quarantine metadata for a photo."""

    async def list_by_event(self, event_id: str) -> list[QuarantineMetadata]:
        """Quarantine entries flagged for one event, oldest first."""

    async def approve(self, photo_id: str, reviewed_by: str) -> QuarantineMetadata:
        """Restore a quarantined photo to public storage."""

    async def reject(self, photo_id: str, reviewed_by: str) -> QuarantineMetadata:
        """Delete quarantined assets, keeping metadata for audit."""

    async def cleanup_expired(self, now: datetime | None = None) -> int:
        """Remove unreviewed items past their expiry; returns the count."""


class InMemoryPhotoStore(PhotoStore):
    def __init__(self, photos: Iterable[PhotoRecord] = ()) -> None:
        self.photos: dict[str, PhotoRecord] = {photo.photo_id: photo for photo in photos}
        self.status_writes: list[tuple[str, PhotoStatus]] = []

    def add(self, photo: PhotoRecord) -> None:
        self.photos[photo.photo_id] = photo

    async def get_photo(self, photo_id: str) -> PhotoRecord | None:
        photo = self.photos.get(photo_id)
        return replace(photo) if photo is not None else None

    async def get_photo_status(self, photo_id: str) -> PhotoStatus | None:
        photo = self.photos.get(photo_id)
        return photo.status if photo is not None else None

    async def set_photo_status(self, photo_id: str, status: PhotoStatus) -> None:
        photo = self.photos.get(photo_id)
        if photo is None:
            return
        photo.status = status
        self.status_writes.append((photo_id, status))


class InMemoryQuarantineStore(QuarantineStore):
    def __init__(self, *, expiry: timedelta = timedelta(days=7)) -> None:
        self.expiry = expiry
        self.items: dict[str, QuarantineMetadata] = {}
        self.calls: list[tuple[str, str, str | None, tuple[str, ...]]] = []

    async def quarantine(
        self,
        event_id: str,
        photo_id: str,
        reason: str | None,
        categories: Iterable[str],
    ) -> QuarantineMetadata:
        now = datetime.now(timezone.utc)
        category_list = [str(category) for category in categories]
        self.calls.append((event_id, photo_id, reason, tuple(category_list)))
        metadata = QuarantineMetadata(
            photo_id=photo_id,
            event_id=event_id,
            original_path=f"{event_id}/{photo_id}",
            status=QuarantineStatus.PENDING,
            flagged_at=now,
            expires_at=now + self.expiry,
            reason=reason,
            categories=category_list,
        )
        self.items[photo_id] = metadata
        return metadata

    async def is_quarantined(self, photo_id: str) -> bool:
        item = self.items.get(photo_id)
        return item is not None and item.status is QuarantineStatus.PENDING

    async def get_metadata(self, photo_id: str) -> QuarantineMetadata | None:
        return self.items.get(photo_id)

    async def list_by_event(self, event_id: str) -> list[QuarantineMetadata]:
        items = [item for item in self.items.values() if item.event_id == event_id]
        return sorted(items, key=lambda item: item.flagged_at)

    async def approve(self, photo_id: str, reviewed_by: str) -> QuarantineMetadata:
        return self._review(photo_id, reviewed_by, QuarantineStatus.APPROVED)

    async def reject(self, photo_id: str, reviewed_by: str) -> QuarantineMetadata:
        return self._review(photo_id, reviewed_by, QuarantineStatus.REJECTED)

    async def cleanup_expired(self, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        expired = 0
        for item in self.items.values():
            if item.status is QuarantineStatus.PENDING and item.expires_at <= now:
                item.status = QuarantineStatus.EXPIRED
                expired += 1
        return expired

    def _review(self, photo_id: str, reviewed_by: str, status: QuarantineStatus) -> QuarantineMetadata:
        item = self.items.get(photo_id)
        if item is None:
            raise KeyError(photo_id)
        item.status = status
        item.reviewed_by = reviewed_by
        item.reviewed_at = datetime.now(timezone.utc)
        return item
