from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .base import DBSerializableModel, IndexSpec, utcnow


class PlanTag(str, Enum):
    TRIAL = "trial"
    PAID = "paid"


class SubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    # Derived on read from ``expires_at``; never persisted.
    EXPIRED = "expired"


class Account(DBSerializableModel):
    """
    Billing subject (one per company/user).

    Carries subscription state only. Point balances live exclusively in the
    transaction ledger.
    """

    collection_name: ClassVar[str] = "accounts"
    indexes: ClassVar[Tuple[IndexSpec, ...]] = (
        IndexSpec(fields=("external_customer_ref",), unique=True, partial=True),
    )

    id: str
    plan: PlanTag = PlanTag.TRIAL
    status: SubscriptionStatus = SubscriptionStatus.TRIAL
    expires_at: Optional[datetime] = Field(
        default=None,
        description="End of the trial window or of the current billing period.",
    )
    external_customer_ref: Optional[str] = Field(
        default=None,
        description="Payment provider customer id; empty until the first payment.",
    )
    external_subscription_ref: Optional[str] = None
    status_event_at: Optional[datetime] = Field(
        default=None,
        description="Provider timestamp of the event that last set the status.",
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class TransitionResult(BaseModel):
    """Outcome of a subscription status update."""

    account: Account
    previous_status: Optional[SubscriptionStatus] = None
    applied: bool
    reason: str = ""

    model_config = ConfigDict(frozen=True)


class SubscriptionView(BaseModel):
    """Read model of an account's subscription, evaluated at ``as_of``."""

    account_id: str
    plan: PlanTag
    status: SubscriptionStatus
    stored_status: SubscriptionStatus
    expires_at: Optional[datetime] = None
    days_remaining: Optional[int] = None
    is_active: bool
    as_of: datetime

    model_config = ConfigDict(frozen=True)
