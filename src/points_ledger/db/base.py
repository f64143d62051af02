from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import AsyncIterator, Callable, Iterator, List, Optional, Tuple

from ..models.account import Account
from ..models.ledger import LedgerEntry
from ..models.processed_event import ProcessedEvent
from ..models.transaction import Transaction, TransactionDraft

# (created_at, id) of the last row already returned to the caller.
PageMarker = Tuple[datetime, str]

CommitHook = Callable[[], None]


class BaseDBManager(ABC):
    """
    DB-agnostic async manager interface.

    Concrete implementations (in-memory, MongoDB) provide the atomicity and
    per-account serialization the ledger relies on through `transaction()`.
    Storage failures are raised as `StorageError`; a duplicate external
    reference on append is raised as `ConflictError`.
    """

    def __init__(self) -> None:
        self._commit_hooks: ContextVar[Optional[List[CommitHook]]] = ContextVar(
            "points_ledger_commit_hooks", default=None
        )

    @abstractmethod
    @asynccontextmanager
    async def transaction(self, account_id: Optional[str] = None) -> AsyncIterator[None]:
        """
        Provide one atomic unit of work.

        Units for the same ``account_id`` are serialized with respect to
        each other. Any exception rolls back every write made inside the
        block. Nested calls join the outermost unit.
        """
        yield

    def after_commit(self, hook: CommitHook) -> None:
        """
        Run ``hook`` once the current unit of work commits.

        Hooks are discarded when the unit rolls back. Outside a unit the
        hook runs immediately.
        """
        pending = self._commit_hooks.get()
        if pending is None:
            hook()
        else:
            pending.append(hook)

    @contextmanager
    def _collect_commit_hooks(self) -> Iterator[List[CommitHook]]:
        hooks: List[CommitHook] = []
        token = self._commit_hooks.set(hooks)
        try:
            yield hooks
        finally:
            self._commit_hooks.reset(token)

    async def ensure_indexes(self) -> None:
        """Create backend indexes; a no-op where the backend needs none."""
        return None

    async def close(self) -> None:
        return None

    # Accounts
    @abstractmethod
    async def add_account(self, account: Account) -> Account: ...

    @abstractmethod
    async def get_account(self, account_id: str) -> Optional[Account]: ...

    @abstractmethod
    async def update_account(self, account: Account) -> Account: ...

    @abstractmethod
    async def find_account_by_customer_ref(self, customer_ref: str) -> Optional[Account]: ...

    # Ledger store
    @abstractmethod
    async def append_transaction(self, draft: TransactionDraft) -> Transaction: ...

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]: ...

    @abstractmethod
    async def get_transaction_by_ref(self, external_ref: str) -> Optional[Transaction]: ...

    @abstractmethod
    async def balance_of(self, account_id: str) -> int:
        """Sum of every transaction amount for the account."""
        ...

    @abstractmethod
    async def list_transactions(
        self,
        account_id: str,
        limit: int,
        before: Optional[PageMarker] = None,
    ) -> List[Transaction]:
        """Newest first, strictly older than ``before`` when given."""
        ...

    # Processed events
    @abstractmethod
    async def insert_processed_event(self, event: ProcessedEvent) -> bool:
        """Insert the claim row; return False if the event id is already present."""
        ...

    @abstractmethod
    async def get_processed_event(self, event_id: str) -> Optional[ProcessedEvent]: ...

    @abstractmethod
    async def update_processed_event_outcome(self, event_id: str, outcome: str) -> None: ...

    # Audit
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...
