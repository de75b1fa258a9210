"""S3-compatible (R2) quarantine storage for flagged photo assets."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

import boto3
from botocore.exceptions import ClientError

from photoguard.moderation.domain.stores import QuarantineMetadata, QuarantineStatus, QuarantineStore
from photoguard.obs import metrics

logger = logging.getLogger(__name__)


class S3QuarantineStore(QuarantineStore):
    """Moves photo assets between ``<event>/<photo>/`` and ``<prefix>/<photo>/``.

    Metadata lives at ``<prefix>-metadata/<photo>.json`` so it outlives the
    assets and keeps an audit trail after rejection or expiry.
    """

    def __init__(
        self,
        bucket: str,
        *,
        client: Any = None,
        prefix: str = "quarantine",
        expiry: timedelta = timedelta(days=7),
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
    ) -> None:
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.expiry = expiry
        self._client = client
        self._endpoint_url = endpoint_url
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key

    @classmethod
    def from_settings(cls, settings: Any) -> "S3QuarantineStore":
        return cls(
            settings.quarantine_bucket,
            prefix=settings.quarantine_prefix,
            expiry=timedelta(days=settings.quarantine_expiry_days),
            endpoint_url=settings.quarantine_endpoint_url,
            access_key_id=settings.quarantine_access_key_id,
            secret_access_key=settings.quarantine_secret_access_key,
        )

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = boto3.client(
                "s3",
                region_name="auto" if self._endpoint_url else None,
                endpoint_url=self._endpoint_url,
                aws_access_key_id=self._access_key_id,
                aws_secret_access_key=self._secret_access_key,
            )
        return self._client

    def _quarantine_path(self, photo_id: str) -> str:
        return f"{self.prefix}/{photo_id}"

    def _metadata_key(self, photo_id: str) -> str:
        return f"{self.prefix}-metadata/{photo_id}.json"

    async def quarantine(
        self,
        event_id: str,
        photo_id: str,
        reason: str | None,
        categories: Iterable[str],
    ) -> QuarantineMetadata:
        now = datetime.now(timezone.utc)
        category_list = [str(category) for category in categories]
        original_path = f"{event_id}/{photo_id}"
        quarantine_path = self._quarantine_path(photo_id)
        metadata = QuarantineMetadata(
            photo_id=photo_id,
            event_id=event_id,
            original_path=original_path,
            status=QuarantineStatus.PENDING,
            flagged_at=now,
            expires_at=now + self.expiry,
            reason=reason,
            categories=category_list,
        )
        object_metadata = {
            "quarantine-status": QuarantineStatus.PENDING.value,
            "quarantine-reason": reason or "",
            "quarantine-categories": ",".join(category_list),
            "original-path": original_path,
        }
        for name in await self._list_assets(original_path):
            await self._copy(f"{original_path}/{name}", f"{quarantine_path}/{name}", metadata=object_metadata)
        await self._store_metadata(metadata)
        await self._delete_assets(original_path)
        logger.info(
            "quarantine.stored",
            extra={"photo": photo_id, "event": event_id, "reason": reason, "categories": category_list},
        )
        return metadata

    async def is_quarantined(self, photo_id: str) -> bool:
        metadata = await self.get_metadata(photo_id)
        return metadata is not None and metadata.status is QuarantineStatus.PENDING

    async def get_metadata(self, photo_id: str) -> QuarantineMetadata | None:
        try:
            response = await asyncio.to_thread(
                self.client.get_object, Bucket=self.bucket, Key=self._metadata_key(photo_id)
            )
        except ClientError as exc:
            if _is_missing(exc):
                return None
            raise
        body = await asyncio.to_thread(response["Body"].read)
        return QuarantineMetadata.from_dict(json.loads(body))

    async def list_by_event(self, event_id: str) -> list[QuarantineMetadata]:
        items = []
        for photo_id in await self._list_metadata_ids():
            metadata = await self.get_metadata(photo_id)
            if metadata is not None and metadata.event_id == event_id:
                items.append(metadata)
        return sorted(items, key=lambda item: item.flagged_at)

    async def approve(self, photo_id: str, reviewed_by: str) -> QuarantineMetadata:
        metadata = await self._require(photo_id)
        quarantine_path = self._quarantine_path(photo_id)
        for name in await self._list_assets(quarantine_path):
            await self._copy(f"{quarantine_path}/{name}", f"{metadata.original_path}/{name}")
        metadata.status = QuarantineStatus.APPROVED
        metadata.reviewed_by = reviewed_by
        metadata.reviewed_at = datetime.now(timezone.utc)
        await self._store_metadata(metadata)
        await self._delete_assets(quarantine_path)
        metrics.inc_quarantine_action("approve")
        logger.info("quarantine.approved", extra={"photo": photo_id, "reviewed_by": reviewed_by})
        return metadata

    async def reject(self, photo_id: str, reviewed_by: str) -> QuarantineMetadata:
        metadata = await self._require(photo_id)
        await self._delete_assets(self._quarantine_path(photo_id))
        metadata.status = QuarantineStatus.REJECTED
        metadata.reviewed_by = reviewed_by
        metadata.reviewed_at = datetime.now(timezone.utc)
        await self._store_metadata(metadata)
        metrics.inc_quarantine_action("reject")
        logger.info("quarantine.rejected", extra={"photo": photo_id, "reviewed_by": reviewed_by})
        return metadata

    async def cleanup_expired(self, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        cleaned = 0
        for photo_id in await self._list_metadata_ids():
            metadata = await self.get_metadata(photo_id)
            if metadata is None or metadata.status is not QuarantineStatus.PENDING:
                continue
            if metadata.expires_at >= now:
                continue
            await self._delete_assets(self._quarantine_path(photo_id))
            metadata.status = QuarantineStatus.EXPIRED
            metadata.reviewed_by = "system-cleanup"
            metadata.reviewed_at = now
            await self._store_metadata(metadata)
            cleaned += 1
        if cleaned:
            metrics.inc_quarantine_action("expire", cleaned)
            logger.info("quarantine.expired", extra={"count": cleaned})
        return cleaned

    async def preview_url(self, photo_id: str, *, expires_in: int = 3600) -> str | None:
        """Presigned GET for the thumbnail, or the first asset when there is none."""

        names = await self._list_assets(self._quarantine_path(photo_id))
        if not names:
            return None
        name = next((candidate for candidate in names if "thumbnail" in candidate), names[0])
        return await asyncio.to_thread(
            self.client.generate_presigned_url,
            "get_object",
            Params={"Bucket": self.bucket, "Key": f"{self._quarantine_path(photo_id)}/{name}"},
            ExpiresIn=expires_in,
        )

    async def stats(self, now: datetime | None = None) -> dict[str, int]:
        now = now or datetime.now(timezone.utc)
        counts = {status.value: 0 for status in QuarantineStatus}
        counts["total"] = 0
        counts["expiring_24h"] = 0
        for photo_id in await self._list_metadata_ids():
            metadata = await self.get_metadata(photo_id)
            if metadata is None:
                continue
            counts["total"] += 1
            counts[metadata.status.value] += 1
            if metadata.status is QuarantineStatus.PENDING and metadata.expires_at < now + timedelta(days=1):
                counts["expiring_24h"] += 1
        return counts

    # --- s3 helpers ------------------------------------------------------

    async def _require(self, photo_id: str) -> QuarantineMetadata:
        metadata = await self.get_metadata(photo_id)
        if metadata is None:
            raise KeyError(f"quarantined photo {photo_id} not found")
        return metadata

    async def _list_keys(self, prefix: str) -> list[str]:
        def _list() -> list[str]:
            keys: list[str] = []
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys.extend(item["Key"] for item in page.get("Contents", []))
            return keys

        return await asyncio.to_thread(_list)

    async def _list_assets(self, path: str) -> list[str]:
        keys = await self._list_keys(f"{path}/")
        return [key.rsplit("/", 1)[-1] for key in keys if key.rsplit("/", 1)[-1]]

    async def _list_metadata_ids(self) -> list[str]:
        keys = await self._list_keys(f"{self.prefix}-metadata/")
        return [key.rsplit("/", 1)[-1].removesuffix(".json") for key in keys if key.endswith(".json")]

    async def _copy(self, source_key: str, dest_key: str, *, metadata: dict[str, str] | None = None) -> None:
        kwargs: dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": dest_key,
            "CopySource": {"Bucket": self.bucket, "Key": source_key},
        }
        if metadata is not None:
            kwargs["MetadataDirective"] = "REPLACE"
            kwargs["Metadata"] = metadata
        await asyncio.to_thread(self.client.copy_object, **kwargs)

    async def _delete_assets(self, path: str) -> None:
        names = await self._list_assets(path)
        if not names:
            return
        objects = [{"Key": f"{path}/{name}"} for name in names]
        # DeleteObjects accepts at most 1000 keys per call.
        for start in range(0, len(objects), 1000):
            await asyncio.to_thread(
                self.client.delete_objects,
                Bucket=self.bucket,
                Delete={"Objects": objects[start : start + 1000]},
            )

    async def _store_metadata(self, metadata: QuarantineMetadata) -> None:
        await asyncio.to_thread(
            self.client.put_object,
            Bucket=self.bucket,
            Key=self._metadata_key(metadata.photo_id),
            Body=json.dumps(metadata.to_dict()).encode("utf-8"),
            ContentType="application/json",
        )


def _is_missing(exc: ClientError) -> bool:
    code = exc.response.get("Error", {}).get("Code")
    return code in {"404", "NoSuchKey", "NotFound"}
