from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class LedgerEventType(str, Enum):
    TRANSACTION = "transaction"
    WEBHOOK = "webhook"
    SUBSCRIPTION = "subscription"
    ERROR = "error"


class LedgerEntry(DBSerializableModel):
    """
    Structured audit entry persisted to DB and mirrored to the audit file.

    Audit entries describe decisions; they are never read back to compute
    balances.
    """

    collection_name: ClassVar[str] = "ledger_audit"

    id: Optional[str] = Field(default=None)
    event_type: LedgerEventType
    account_id: Optional[str] = None
    correlation_id: Optional[str] = Field(
        default=None,
        description="Correlation id for tracing a logical operation across components.",
    )
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
