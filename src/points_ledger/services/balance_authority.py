from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Union

from ..config import Settings, get_settings
from ..db.base import BaseDBManager
from ..exceptions import ConflictError, StorageError, TransactionNotFound
from ..logging.ledger_logger import LedgerLogger
from ..models.transaction import (
    CreditResult,
    DebitResult,
    InsufficientFunds,
    Transaction,
    TransactionDraft,
    TransactionKind,
)

logger = logging.getLogger(__name__)

DebitOutcome = Union[DebitResult, InsufficientFunds]


def debit_ref(idempotency_key: str) -> str:
    return f"debit:{idempotency_key}"


def refund_ref(transaction_id: str) -> str:
    return f"refund:{transaction_id}"


class BalanceAuthority:
    """
    The only writer of ledger transactions.

    Every credit and debit runs inside one `transaction(account_id)` unit,
    so the balance read and the append that depends on it cannot interleave
    with another writer on the same account. The balance is never stored;
    it is always the sum of the account's rows.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        settings: Optional[Settings] = None,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._settings = settings or get_settings()

    def cost_of(self, kind: TransactionKind, quantity: int = 1) -> int:
        """Point price of ``quantity`` billable actions of ``kind``."""
        if quantity <= 0:
            raise ValueError("quantity must be positive")
        rates = {
            TransactionKind.SCREENING: self._settings.screening_cost,
            TransactionKind.VOICE_INTERVIEW: self._settings.voice_interview_cost,
        }
        if kind not in rates:
            raise ValueError(f"{kind.value} is not a billable action")
        return rates[kind] * quantity

    async def credit(
        self,
        account_id: str,
        amount: int,
        kind: TransactionKind = TransactionKind.PURCHASE,
        description: str = "",
        external_ref: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> CreditResult:
        if amount <= 0:
            raise ValueError("amount must be positive")
        if not kind.is_credit:
            raise ValueError(f"{kind.value} is not a credit kind")

        async with self._db.transaction(account_id):
            if external_ref is not None:
                existing = await self._db.get_transaction_by_ref(external_ref)
                if existing is not None:
                    return self._duplicate_credit(existing, account_id, amount, kind)

            tx = await self._db.append_transaction(
                TransactionDraft(
                    account_id=account_id,
                    amount=amount,
                    kind=kind,
                    description=description,
                    external_ref=external_ref,
                    metadata=metadata or {},
                )
            )
            balance = await self._db.balance_of(account_id)
            await self._ledger.log_transaction(
                account_id=account_id,
                message="Points credited",
                details={
                    "transaction_id": tx.id,
                    "amount": amount,
                    "kind": kind.value,
                    "external_ref": external_ref,
                    "balance": balance,
                },
                correlation_id=correlation_id,
            )

        logger.info(
            "Credited %s points to %s",
            amount,
            account_id,
            extra={"kind": kind.value, "external_ref": external_ref},
        )
        return CreditResult(transaction=tx)

    def _duplicate_credit(
        self,
        existing: Transaction,
        account_id: str,
        amount: int,
        kind: TransactionKind,
    ) -> CreditResult:
        if existing.account_id != account_id or existing.kind != kind:
            raise ConflictError(
                f"external reference {existing.external_ref} is bound to "
                f"{existing.kind.value} on account {existing.account_id}"
            )
        if existing.amount != amount:
            logger.warning(
                "Duplicate credit %s with different amount (%s recorded, %s requested)",
                existing.external_ref,
                existing.amount,
                amount,
            )
        return CreditResult(transaction=existing, duplicate=True)

    async def grant_bonus(
        self,
        account_id: str,
        amount: int,
        description: str = "Bonus points",
        external_ref: Optional[str] = None,
    ) -> CreditResult:
        return await self.credit(
            account_id,
            amount,
            kind=TransactionKind.BONUS,
            description=description,
            external_ref=external_ref,
        )

    async def debit(
        self,
        account_id: str,
        amount: int,
        kind: TransactionKind,
        description: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> DebitOutcome:
        """
        Check-and-debit as one unit.

        Returns the written debit, or `InsufficientFunds` without touching
        the ledger. A key that was already charged returns the original
        transaction with `replayed` set and charges nothing.
        Retryable storage errors are retried a bounded number of times.
        """
        if amount <= 0:
            raise ValueError("amount must be positive")
        if not kind.is_debit:
            raise ValueError(f"{kind.value} is not a debit kind")
        if not idempotency_key:
            raise ValueError("idempotency_key must be non-empty")

        attempts = self._settings.debit_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return await self._debit_once(
                    account_id, amount, kind, description, idempotency_key, metadata, correlation_id
                )
            except StorageError as exc:
                if not exc.retryable or attempt == attempts:
                    raise
                logger.warning(
                    "Debit %s hit a transient storage error (attempt %s/%s): %s",
                    idempotency_key,
                    attempt,
                    attempts,
                    exc,
                )
                await asyncio.sleep(self._settings.debit_retry_backoff_seconds * attempt)
        raise AssertionError("unreachable")

    async def _debit_once(
        self,
        account_id: str,
        amount: int,
        kind: TransactionKind,
        description: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]],
        correlation_id: Optional[str],
    ) -> DebitOutcome:
        ref = debit_ref(idempotency_key)
        async with self._db.transaction(account_id):
            existing = await self._db.get_transaction_by_ref(ref)
            if existing is not None:
                if (
                    existing.account_id != account_id
                    or existing.kind != kind
                    or existing.amount != -amount
                ):
                    raise ConflictError(
                        f"idempotency key {idempotency_key} was used with different parameters"
                    )
                logger.info("Replayed debit %s", idempotency_key, extra={"transaction_id": existing.id})
                return DebitResult(transaction=existing, replayed=True)

            available = await self._db.balance_of(account_id)
            if available < amount:
                await self._ledger.log_transaction(
                    account_id=account_id,
                    message="Debit refused: insufficient points",
                    details={"required": amount, "available": available, "kind": kind.value},
                    correlation_id=correlation_id or idempotency_key,
                )
                logger.info("Insufficient points on %s: need %s, have %s", account_id, amount, available)
                return InsufficientFunds(account_id=account_id, required=amount, available=available)

            tx = await self._db.append_transaction(
                TransactionDraft(
                    account_id=account_id,
                    amount=-amount,
                    kind=kind,
                    description=description,
                    external_ref=ref,
                    metadata=metadata or {},
                )
            )
            await self._ledger.log_transaction(
                account_id=account_id,
                message="Points debited",
                details={
                    "transaction_id": tx.id,
                    "amount": amount,
                    "kind": kind.value,
                    "balance": available - amount,
                },
                correlation_id=correlation_id or idempotency_key,
            )
        return DebitResult(transaction=tx)

    async def refund(
        self,
        account_id: str,
        transaction_id: str,
        reason: str = "",
        correlation_id: Optional[str] = None,
    ) -> CreditResult:
        """Credit back a prior debit. Refunding the same debit twice is a no-op."""
        tx = await self._db.get_transaction(transaction_id)
        if tx is None or tx.account_id != account_id:
            raise TransactionNotFound(f"transaction {transaction_id} not found for account {account_id}")
        if not tx.kind.is_debit:
            raise ValueError("only debits can be refunded")

        return await self.credit(
            account_id,
            -tx.amount,
            kind=TransactionKind.REFUND,
            description=reason or f"Refund of {tx.kind.value}",
            external_ref=refund_ref(tx.id),
            metadata={"refunded_transaction_id": tx.id},
            correlation_id=correlation_id,
        )
