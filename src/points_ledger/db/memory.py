from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, nullcontext
from contextvars import ContextVar
from typing import AsyncIterator, Callable, Dict, List, Optional

from .base import BaseDBManager, PageMarker
from ..exceptions import ConflictError
from ..models.account import Account
from ..models.base import utcnow
from ..models.ledger import LedgerEntry
from ..models.processed_event import ProcessedEvent
from ..models.transaction import Transaction, TransactionDraft

UndoLog = List[Callable[[], None]]


class InMemoryDBManager(BaseDBManager):
    """
    In-memory implementation used for tests and local development.

    Units of work are real: each account has its own asyncio lock, and every
    write inside `transaction()` records an undo step that is replayed in
    reverse when the block raises (including cancellation). Not durable, so
    not suitable for production.

    ``op_delay`` adds an await point to every operation so concurrent tests
    actually interleave.
    """

    def __init__(self, op_delay: float = 0.0) -> None:
        super().__init__()
        self._accounts: Dict[str, Account] = {}
        self._transactions: Dict[str, Transaction] = {}
        self._refs: Dict[str, str] = {}
        self._events: Dict[str, ProcessedEvent] = {}
        self._ledger: List[LedgerEntry] = []
        self._locks: Dict[str, asyncio.Lock] = {}
        self._undo: ContextVar[Optional[UndoLog]] = ContextVar("points_ledger_undo", default=None)
        self._id_counter: int = 0
        self._op_delay = op_delay

    def _next_id(self) -> str:
        self._id_counter += 1
        return f"{self._id_counter:012d}"

    async def _pause(self) -> None:
        if self._op_delay:
            await asyncio.sleep(self._op_delay)

    def _record_undo(self, step: Callable[[], None]) -> None:
        undo_log = self._undo.get()
        if undo_log is not None:
            undo_log.append(step)

    @property
    def ledger_entries(self) -> List[LedgerEntry]:
        return list(self._ledger)

    @asynccontextmanager
    async def transaction(self, account_id: Optional[str] = None) -> AsyncIterator[None]:
        if self._undo.get() is not None:
            yield
            return

        lock = self._locks.setdefault(account_id, asyncio.Lock()) if account_id else nullcontext()
        async with lock:
            with self._collect_commit_hooks() as hooks:
                undo_log: UndoLog = []
                token = self._undo.set(undo_log)
                try:
                    yield
                except BaseException:
                    for step in reversed(undo_log):
                        step()
                    raise
                finally:
                    self._undo.reset(token)
            for hook in hooks:
                hook()

    # Accounts
    async def add_account(self, account: Account) -> Account:
        await self._pause()
        if account.id in self._accounts:
            raise ConflictError(f"account {account.id} already exists")
        self._accounts[account.id] = account
        self._record_undo(lambda: self._accounts.pop(account.id, None))
        return account

    async def get_account(self, account_id: str) -> Optional[Account]:
        await self._pause()
        return self._accounts.get(account_id)

    async def update_account(self, account: Account) -> Account:
        await self._pause()
        previous = self._accounts.get(account.id)
        if previous is None:
            raise ValueError("Account must exist to be updated")
        if account.external_customer_ref:
            owner = await self.find_account_by_customer_ref(account.external_customer_ref)
            if owner is not None and owner.id != account.id:
                raise ConflictError(f"customer {account.external_customer_ref} belongs to another account")
        self._accounts[account.id] = account
        self._record_undo(lambda: self._accounts.__setitem__(account.id, previous))
        return account

    async def find_account_by_customer_ref(self, customer_ref: str) -> Optional[Account]:
        for account in self._accounts.values():
            if account.external_customer_ref == customer_ref:
                return account
        return None

    # Ledger store
    async def append_transaction(self, draft: TransactionDraft) -> Transaction:
        await self._pause()
        if draft.external_ref is not None and draft.external_ref in self._refs:
            raise ConflictError(f"external reference {draft.external_ref} already recorded")
        tx = Transaction.from_draft(draft, transaction_id=self._next_id(), created_at=utcnow())
        self._transactions[tx.id] = tx
        if tx.external_ref is not None:
            self._refs[tx.external_ref] = tx.id

        def undo() -> None:
            self._transactions.pop(tx.id, None)
            if tx.external_ref is not None:
                self._refs.pop(tx.external_ref, None)

        self._record_undo(undo)
        return tx

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        await self._pause()
        return self._transactions.get(transaction_id)

    async def get_transaction_by_ref(self, external_ref: str) -> Optional[Transaction]:
        await self._pause()
        tx_id = self._refs.get(external_ref)
        return self._transactions.get(tx_id) if tx_id else None

    async def balance_of(self, account_id: str) -> int:
        await self._pause()
        return sum(t.amount for t in self._transactions.values() if t.account_id == account_id)

    async def list_transactions(
        self,
        account_id: str,
        limit: int,
        before: Optional[PageMarker] = None,
    ) -> List[Transaction]:
        await self._pause()
        rows = sorted(
            (t for t in self._transactions.values() if t.account_id == account_id),
            key=lambda t: (t.created_at, t.id),
            reverse=True,
        )
        if before is not None:
            rows = [t for t in rows if (t.created_at, t.id) < before]
        return rows[:limit]

    # Processed events
    async def insert_processed_event(self, event: ProcessedEvent) -> bool:
        await self._pause()
        if event.event_id in self._events:
            return False
        self._events[event.event_id] = event
        self._record_undo(lambda: self._events.pop(event.event_id, None))
        return True

    async def get_processed_event(self, event_id: str) -> Optional[ProcessedEvent]:
        return self._events.get(event_id)

    async def update_processed_event_outcome(self, event_id: str, outcome: str) -> None:
        previous = self._events.get(event_id)
        if previous is None:
            return
        self._events[event_id] = previous.model_copy(update={"outcome": outcome})
        self._record_undo(lambda: self._events.__setitem__(event_id, previous))

    # Audit
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.id is None:
            entry.id = self._next_id()
        self._ledger.append(entry)
        self._record_undo(lambda: self._ledger.remove(entry))
        return entry
