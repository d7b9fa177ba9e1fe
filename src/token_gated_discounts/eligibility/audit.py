"""Audit sinks for eligibility evaluations.

Audit records are for analytics only. A sink that fails logs a warning and
never changes the eligibility result.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING

from token_gated_discounts.storage.repos import EligibilityCheckDTO, EligibilityCheckRepository

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from token_gated_discounts.eligibility.models import EligibilityAuditEvent
    from token_gated_discounts.protocols import AuditSink
    from token_gated_discounts.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_STREAM_MAXLEN = 100_000


class DatabaseAuditSink:
    """Writes one eligibility_checks row per evaluation."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def record(self, event: EligibilityAuditEvent) -> None:
        async with self._db.get_async_session() as session:
            await EligibilityCheckRepository(session).insert(EligibilityCheckDTO.from_event(event))


class RedisAuditSink:
    """Publishes audit events to a Redis stream.

    Example:
        ```python
        redis = Redis.from_url("redis://localhost:6379")
        sink = RedisAuditSink(redis, stream_key="eligibility:checks")
        ```
    """

    def __init__(
        self,
        redis: Redis,
        *,
        stream_key: str,
        maxlen: int = DEFAULT_STREAM_MAXLEN,
    ) -> None:
        self._redis = redis
        self._stream_key = stream_key
        self._maxlen = maxlen

    async def record(self, event: EligibilityAuditEvent) -> None:
        await self._redis.xadd(
            self._stream_key,
            {"event": json.dumps(event.to_dict())},
            maxlen=self._maxlen,
            approximate=True,
        )


async def emit_audit_event(sinks: Sequence[AuditSink], event: EligibilityAuditEvent) -> None:
    """Send ``event`` to every sink, logging failures."""
    for sink in sinks:
        try:
            await sink.record(event)
        except Exception as e:
            logger.warning(
                "Audit sink %s failed for campaign %s / identity %d: %s",
                type(sink).__name__,
                event.campaign_code,
                event.identity_id,
                e,
            )
