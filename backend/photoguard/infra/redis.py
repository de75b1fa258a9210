"""Redis connection management.

Provides a stable proxy object so imports like `from photoguard.infra.redis import redis_client`
always reference the same proxy instance. The underlying client can be swapped at
runtime (e.g., to fakeredis in tests) without breaking previously imported references.
The real client is created lazily so importing the package never opens a connection.
"""

from __future__ import annotations

from typing import Optional

import redis.asyncio as redis

from photoguard.settings import settings


class RedisProxy:
	"""Lightweight proxy that forwards attribute access to an underlying Redis client."""

	def __init__(self, client: Optional[redis.Redis] = None):
		self._client: Optional[redis.Redis] = client

	def set_client(self, client: Optional[redis.Redis]) -> None:
		self._client = client

	@property
	def client(self) -> redis.Redis:
		if self._client is None:
			self._client = redis.from_url(settings.redis_url, decode_responses=True)
		return self._client

	async def close(self) -> None:
		if self._client is not None:
			await self._client.aclose()
			self._client = None

	def __getattr__(self, item):
		return getattr(self.client, item)


redis_client: RedisProxy = RedisProxy()


def set_redis_client(client: Optional[redis.Redis]) -> None:
	redis_client.set_client(client)
