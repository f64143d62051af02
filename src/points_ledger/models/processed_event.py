from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field

from .base import DBSerializableModel, utcnow


class ProcessedEvent(DBSerializableModel):
    """
    Dedup record for an external event id or caller idempotency key.

    Rows are never deleted: replaying a key must stay a no-op forever.
    """

    collection_name: ClassVar[str] = "processed_events"
    primary_key: ClassVar[str] = "event_id"

    event_id: str
    event_type: str
    account_id: Optional[str] = None
    outcome: Optional[str] = None
    processed_at: datetime = Field(default_factory=utcnow)


class ClaimResult(BaseModel):
    key: str
    acquired: bool
    previous_outcome: Optional[str] = None

    model_config = ConfigDict(frozen=True)
