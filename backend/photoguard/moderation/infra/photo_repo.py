"""PostgreSQL implementation of the photo store."""

from __future__ import annotations

import json
from typing import Any

import asyncpg

from photoguard.moderation.domain.stores import PhotoRecord, PhotoStatus, PhotoStore


class PostgresPhotoStore(PhotoStore):
    """Asyncpg-backed access to the ``photos`` table."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def get_photo(self, photo_id: str) -> PhotoRecord | None:
        query = """
        SELECT id, event_id, status, images, user_id
        FROM photos
        WHERE id = $1
        """
        record = await self.pool.fetchrow(query, photo_id)
        return _photo_from_record(record) if record else None

    async def get_photo_status(self, photo_id: str) -> PhotoStatus | None:
        status = await self.pool.fetchval("SELECT status FROM photos WHERE id = $1", photo_id)
        return PhotoStatus(status) if status else None

    async def set_photo_status(self, photo_id: str, status: PhotoStatus) -> None:
        query = """
        UPDATE photos
        SET status = $2,
            updated_at = NOW()
        WHERE id = $1
        """
        await self.pool.execute(query, photo_id, status.value)


def _photo_from_record(record: asyncpg.Record) -> PhotoRecord:
    images: Any = record["images"]
    if isinstance(images, str):
        images = json.loads(images)
    image_ref = ""
    if isinstance(images, dict):
        image_ref = str(images.get("full_url") or images.get("original_url") or "")
    return PhotoRecord(
        photo_id=str(record["id"]),
        event_id=str(record["event_id"]),
        status=PhotoStatus(record["status"]),
        image_ref=image_ref,
        user_id=str(record["user_id"]) if record["user_id"] else None,
    )
