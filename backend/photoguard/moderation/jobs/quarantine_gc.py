"""Expire quarantined photos nobody reviewed in time."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from photoguard.moderation.domain.stores import QuarantineStore

logger = logging.getLogger(__name__)


async def run(store: QuarantineStore, *, now: datetime | None = None) -> int:
    """Delete pending quarantine items past their expiry; returns the count."""

    now = now or datetime.now(timezone.utc)
    expired = await store.cleanup_expired(now)
    logger.info("quarantine_gc.completed", extra={"expired": expired})
    return expired
