from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .account import PlanTag, SubscriptionStatus
from .transaction import Transaction, TransactionKind


class DebitRequest(BaseModel):
    account_id: str = Field(min_length=1)
    amount: int = Field(gt=0)
    kind: TransactionKind
    description: str = ""
    idempotency_key: str = Field(min_length=1, max_length=255)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DebitResponse(BaseModel):
    transaction: Transaction
    replayed: bool = False
    balance: int


class InsufficientFundsResponse(BaseModel):
    error: str = "insufficient_funds"
    required: int
    available: int


class RefundRequest(BaseModel):
    account_id: str = Field(min_length=1)
    transaction_id: str = Field(min_length=1)
    reason: Optional[str] = None


class CreditResponse(BaseModel):
    transaction: Transaction
    duplicate: bool
    balance: int


class BalanceResponse(BaseModel):
    account_id: str
    balance: int
    transactions: List[Transaction]
    next_cursor: Optional[str] = None


class SubscriptionResponse(BaseModel):
    account_id: str
    plan: PlanTag
    status: SubscriptionStatus
    expires_at: Optional[datetime] = None
    days_remaining: Optional[int] = None
    is_active: bool


class PackageResponse(BaseModel):
    id: str
    name: str
    points: int
    price_cents: int
    currency: str
    points_per_dollar: float


class WebhookAck(BaseModel):
    received: bool
    outcome: str
    detail: Optional[str] = None
