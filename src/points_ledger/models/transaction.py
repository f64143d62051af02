from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .base import DBSerializableModel, IndexSpec, utcnow


class TransactionKind(str, Enum):
    PURCHASE = "purchase"
    BONUS = "bonus"
    REFUND = "refund"
    SCREENING = "screening"
    VOICE_INTERVIEW = "voice_interview"

    @property
    def is_credit(self) -> bool:
        return self in CREDIT_KINDS

    @property
    def is_debit(self) -> bool:
        return self in DEBIT_KINDS


CREDIT_KINDS = frozenset({TransactionKind.PURCHASE, TransactionKind.BONUS, TransactionKind.REFUND})
DEBIT_KINDS = frozenset({TransactionKind.SCREENING, TransactionKind.VOICE_INTERVIEW})


class TransactionDraft(BaseModel):
    """A transaction that has not been written yet; the store assigns id and timestamp."""

    account_id: str = Field(min_length=1)
    amount: int
    kind: TransactionKind
    description: str
    external_ref: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @field_validator("amount")
    @classmethod
    def _non_zero(cls, value: int) -> int:
        if value == 0:
            raise ValueError("amount must be non-zero")
        return value


class Transaction(DBSerializableModel):
    """
    Immutable ledger row. Positive amounts are credits, negative are debits.
    """

    collection_name: ClassVar[str] = "point_transactions"
    indexes: ClassVar[Tuple[IndexSpec, ...]] = (
        IndexSpec(fields=("external_ref",), unique=True, partial=True),
        IndexSpec(fields=("account_id", "created_at", "id")),
    )

    id: str
    account_id: str
    amount: int
    kind: TransactionKind
    description: str
    external_ref: Optional[str] = Field(
        default=None,
        description="Checkout session id, debit idempotency key or refund key.",
    )
    created_at: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_draft(cls, draft: TransactionDraft, *, transaction_id: str, created_at: Optional[datetime] = None) -> "Transaction":
        return cls(
            id=transaction_id,
            created_at=created_at or utcnow(),
            **draft.model_dump(),
        )


class CreditResult(BaseModel):
    transaction: Transaction
    duplicate: bool = False

    model_config = ConfigDict(frozen=True)


class DebitResult(BaseModel):
    """A written debit; ``replayed`` is set when the idempotency key had already been charged."""

    transaction: Transaction
    replayed: bool = False

    model_config = ConfigDict(frozen=True)


class InsufficientFunds(BaseModel):
    """Business refusal of a debit; returned, never raised."""

    account_id: str
    required: int
    available: int

    model_config = ConfigDict(frozen=True)


class TransactionPage(BaseModel):
    items: List[Transaction] = Field(default_factory=list)
    next_cursor: Optional[str] = None


class BalanceStatement(BaseModel):
    account_id: str
    balance: int
    transactions: List[Transaction] = Field(default_factory=list)
    next_cursor: Optional[str] = None
