"""AWS Rekognition adapter for the label classifier contract."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Sequence
from urllib.parse import urlparse

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from photoguard.moderation.domain.classifier import LabelClassifier
from photoguard.moderation.domain.exceptions import ClassifierError
from photoguard.moderation.domain.policy import Label

logger = logging.getLogger(__name__)

# DetectModerationLabels rejects inline images above 5 MB.
MAX_IMAGE_BYTES = 5 * 1024 * 1024


def parse_s3_object(image_ref: str) -> dict[str, str] | None:
    """Return ``{"Bucket", "Name"}`` for path-style S3 URLs, else ``None``."""

    try:
        parsed = urlparse(image_ref)
    except ValueError:
        return None
    host = parsed.hostname or ""
    if not host.endswith(".amazonaws.com"):
        return None
    parts = [part for part in parsed.path.split("/") if part]
    if len(parts) < 2:
        return None
    return {"Bucket": parts[0], "Name": "/".join(parts[1:])}


class RekognitionLabelClassifier(LabelClassifier):
    """Calls ``DetectModerationLabels`` through a boto3 client.

    boto3 is synchronous, so calls run in a worker thread. Without
    credentials (and without an injected client) the adapter reports
    itself unavailable and the service fails open.
    """

    def __init__(
        self,
        *,
        region: str = "us-east-1",
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        session_token: str | None = None,
        client: Any = None,
        http: httpx.AsyncClient | None = None,
        fetch_timeout: float = 10.0,
    ) -> None:
        self.region = region
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._session_token = session_token
        self._client = client
        self._http = http
        self._owns_http = http is None
        self.fetch_timeout = fetch_timeout

    @classmethod
    def from_settings(cls, settings: Any) -> "RekognitionLabelClassifier":
        return cls(
            region=settings.aws_region,
            access_key_id=settings.aws_access_key_id,
            secret_access_key=settings.aws_secret_access_key,
            session_token=settings.aws_session_token,
        )

    @property
    def available(self) -> bool:
        return self._client is not None or bool(self._access_key_id and self._secret_access_key)

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = boto3.client(
                "rekognition",
                region_name=self.region,
                aws_access_key_id=self._access_key_id,
                aws_secret_access_key=self._secret_access_key,
                aws_session_token=self._session_token,
            )
        return self._client

    async def detect_labels(self, image_ref: str, min_confidence_percent: float) -> Sequence[Label]:
        if not self.available:
            raise ClassifierError("rekognition credentials are not configured")
        image = await self._image_for(image_ref)
        client = self._get_client()
        try:
            response = await asyncio.to_thread(
                client.detect_moderation_labels,
                Image=image,
                MinConfidence=float(min_confidence_percent),
            )
        except (BotoCoreError, ClientError) as exc:
            raise ClassifierError(f"rekognition call failed: {exc}") from exc
        return _labels_from_response(response)

    async def _image_for(self, image_ref: str) -> dict[str, Any]:
        s3_object = parse_s3_object(image_ref)
        if s3_object is not None:
            return {"S3Object": s3_object}
        return {"Bytes": await self._fetch_bytes(image_ref)}

    async def _fetch_bytes(self, url: str) -> bytes:
        http = self._http
        if http is None:
            http = httpx.AsyncClient(timeout=self.fetch_timeout, follow_redirects=True)
            self._http = http
        try:
            response = await http.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ClassifierError(f"image fetch failed: {exc}") from exc
        content = response.content
        if not content:
            raise ClassifierError("image fetch returned an empty body")
        if len(content) > MAX_IMAGE_BYTES:
            raise ClassifierError(f"image exceeds {MAX_IMAGE_BYTES} bytes")
        return content

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None


def _labels_from_response(response: Mapping[str, Any]) -> list[Label]:
    raw = response.get("ModerationLabels")
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ClassifierError("malformed rekognition response: ModerationLabels is not a list")
    labels: list[Label] = []
    for item in raw:
        name = item.get("Name") if isinstance(item, Mapping) else None
        if not name:
            continue
        try:
            confidence = float(item.get("Confidence", 0.0)) / 100.0
        except (TypeError, ValueError) as exc:
            raise ClassifierError(f"malformed rekognition confidence for {name!r}") from exc
        labels.append(Label(name=str(name), confidence=max(0.0, min(1.0, confidence))))
    return labels
