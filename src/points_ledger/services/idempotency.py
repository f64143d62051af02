from __future__ import annotations

import logging
from typing import Optional

from ..db.base import BaseDBManager
from ..models.processed_event import ClaimResult, ProcessedEvent

logger = logging.getLogger(__name__)


class IdempotencyGuard:
    """
    At-most-once gate keyed by external event id or caller idempotency key.

    Claims are plain rows in `processed_events`. They must be taken inside
    `BaseDBManager.transaction(...)` together with the effect they protect:
    if the effect fails the unit rolls back and the claim goes with it, so a
    redelivery is processed afresh. Claims never expire.
    """

    def __init__(self, db: BaseDBManager) -> None:
        self._db = db

    async def claim(
        self,
        key: str,
        *,
        event_type: str,
        account_id: Optional[str] = None,
    ) -> ClaimResult:
        if not key:
            raise ValueError("idempotency key must be non-empty")

        acquired = await self._db.insert_processed_event(
            ProcessedEvent(event_id=key, event_type=event_type, account_id=account_id)
        )
        if acquired:
            return ClaimResult(key=key, acquired=True)

        existing = await self._db.get_processed_event(key)
        logger.info("Key %s already claimed", key, extra={"event_type": event_type})
        return ClaimResult(
            key=key,
            acquired=False,
            previous_outcome=existing.outcome if existing else None,
        )

    async def release(self, key: str, outcome: str) -> None:
        """Record the final outcome on the claim row. The row itself is kept."""
        await self._db.update_processed_event_outcome(key, outcome)
