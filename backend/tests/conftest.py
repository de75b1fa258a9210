import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from photoguard.moderation.domain.events import JobEventBus
from photoguard.moderation.domain.policy import Label
from photoguard.moderation.domain.stores import InMemoryPhotoStore, InMemoryQuarantineStore, PhotoRecord, PhotoStatus


class FakeClock:
	"""Manually advanced UTC clock."""

	def __init__(self, start: datetime | None = None) -> None:
		self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

	def __call__(self) -> datetime:
		return self.now

	def advance(self, seconds: float) -> None:
		self.now = self.now + timedelta(seconds=seconds)


class StubClassifier:
	"""Classifier returning canned labels per image ref."""

	def __init__(self, labels=None, *, available: bool = True, error: Exception | None = None) -> None:
		self.labels = dict(labels or {})
		self._available = available
		self.error = error
		self.calls: list[tuple[str, float]] = []

	@property
	def available(self) -> bool:
		return self._available

	async def detect_labels(self, image_ref: str, min_confidence_percent: float):
		self.calls.append((image_ref, min_confidence_percent))
		if self.error is not None:
			raise self.error
		return [Label(name, confidence) for name, confidence in self.labels.get(image_ref, [])]


class RecordingListener:
	def __init__(self) -> None:
		self.events = []

	def __call__(self, event) -> None:
		self.events.append(event)

	def kinds(self) -> list[str]:
		return [event.kind.value for event in self.events]


@pytest_asyncio.fixture
async def fake_redis():
	from photoguard.infra.redis import set_redis_client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(None)
		await client.flushall()
		await client.aclose()


@pytest.fixture
def clock() -> FakeClock:
	return FakeClock()


@pytest.fixture
def recorder() -> RecordingListener:
	return RecordingListener()


@pytest.fixture
def events(recorder: RecordingListener) -> JobEventBus:
	bus = JobEventBus()
	bus.subscribe(recorder)
	return bus


@pytest.fixture
def photo_store() -> InMemoryPhotoStore:
	return InMemoryPhotoStore(
		[
			PhotoRecord(photo_id=f"p{index}", event_id="evt-1", status=PhotoStatus.PENDING, image_ref=f"https://cdn.test/p{index}.jpg")
			for index in range(1, 6)
		]
	)


@pytest.fixture
def quarantine_store() -> InMemoryQuarantineStore:
	return InMemoryQuarantineStore()


@pytest.fixture
def stub_classifier() -> StubClassifier:
	return StubClassifier()


@pytest.fixture
def make_classifier():
	return StubClassifier
