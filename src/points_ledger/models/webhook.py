"""Payment provider event envelope and ingestion outcomes."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..exceptions import MalformedEvent


class EventCategory(str, Enum):
    """Closed set of event categories the engine reacts to."""

    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAID = "invoice_paid"
    INVOICE_FAILED = "invoice_failed"
    UNKNOWN = "unknown"


EVENT_CATEGORIES: Dict[str, EventCategory] = {
    "checkout.session.completed": EventCategory.CHECKOUT_COMPLETED,
    "checkout.session.async_payment_succeeded": EventCategory.CHECKOUT_COMPLETED,
    "customer.subscription.created": EventCategory.SUBSCRIPTION_UPDATED,
    "customer.subscription.updated": EventCategory.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventCategory.SUBSCRIPTION_DELETED,
    "invoice.payment_succeeded": EventCategory.INVOICE_PAID,
    "invoice.paid": EventCategory.INVOICE_PAID,
    "invoice.payment_failed": EventCategory.INVOICE_FAILED,
}


class ProviderEvent(BaseModel):
    """Normalized webhook envelope (``id``, ``type``, ``created``, ``data.object``)."""

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created: datetime
    data: Dict[str, Any] = Field(default_factory=dict)
    livemode: bool = False

    model_config = ConfigDict(extra="ignore", frozen=True)

    @classmethod
    def parse_payload(cls, payload: str) -> "ProviderEvent":
        try:
            return cls.model_validate_json(payload)
        except ValidationError as exc:
            raise MalformedEvent(f"unparsable event envelope: {exc.error_count()} error(s)") from exc

    @property
    def object(self) -> Dict[str, Any]:
        obj = self.data.get("object")
        return obj if isinstance(obj, dict) else {}

    @property
    def category(self) -> EventCategory:
        return EVENT_CATEGORIES.get(self.type, EventCategory.UNKNOWN)


class IngestOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    DROPPED = "dropped"
    REJECTED = "rejected"
    RETRY = "retry"


_HTTP_STATUS = {
    IngestOutcome.PROCESSED: 200,
    IngestOutcome.DUPLICATE: 200,
    IngestOutcome.IGNORED: 200,
    IngestOutcome.DROPPED: 200,
    IngestOutcome.REJECTED: 400,
    IngestOutcome.RETRY: 503,
}


class IngestResult(BaseModel):
    outcome: IngestOutcome
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    account_id: Optional[str] = None
    detail: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self.outcome]

    @property
    def acknowledged(self) -> bool:
        return self.http_status == 200
