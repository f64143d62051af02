from .account import Account, PlanTag, SubscriptionStatus, SubscriptionView, TransitionResult
from .ledger import LedgerEntry, LedgerEventType
from .package import Package
from .processed_event import ClaimResult, ProcessedEvent
from .transaction import (
    CREDIT_KINDS,
    DEBIT_KINDS,
    BalanceStatement,
    CreditResult,
    DebitResult,
    InsufficientFunds,
    Transaction,
    TransactionDraft,
    TransactionKind,
    TransactionPage,
)
from .webhook import EventCategory, IngestOutcome, IngestResult, ProviderEvent

__all__ = [
    "Account",
    "BalanceStatement",
    "ClaimResult",
    "CREDIT_KINDS",
    "CreditResult",
    "DEBIT_KINDS",
    "DebitResult",
    "EventCategory",
    "IngestOutcome",
    "IngestResult",
    "InsufficientFunds",
    "LedgerEntry",
    "LedgerEventType",
    "Package",
    "PlanTag",
    "ProcessedEvent",
    "ProviderEvent",
    "SubscriptionStatus",
    "SubscriptionView",
    "Transaction",
    "TransactionDraft",
    "TransactionKind",
    "TransactionPage",
    "TransitionResult",
]
