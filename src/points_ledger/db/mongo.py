from __future__ import annotations

from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern

from .base import BaseDBManager, PageMarker
from ..exceptions import ConflictError, StorageError
from ..models.account import Account
from ..models.base import DBSerializableModel, utcnow
from ..models.ledger import LedgerEntry
from ..models.processed_event import ProcessedEvent
from ..models.transaction import Transaction, TransactionDraft

ACCOUNT_LOCKS = "account_locks"

_RETRYABLE_LABELS = ("TransientTransactionError", "UnknownTransactionCommitResult")


def _storage_error(exc: PyMongoError) -> StorageError:
    retryable = any(exc.has_error_label(label) for label in _RETRYABLE_LABELS)
    return StorageError(f"mongo operation failed: {exc}", retryable=retryable)


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    Each `transaction()` is a multi-document transaction on a client
    session (replica set or sharded cluster required). Units scoped to an
    account first bump that account's document in `account_locks`; two
    concurrent units for the same account therefore write-conflict and one
    of them aborts with a retryable `StorageError` instead of both reading
    the same balance.

    IDs are stored as string `_id` fields and mirrored in the model's
    primary key attribute.
    """

    def __init__(self, client: AsyncIOMotorClient, database: AsyncIOMotorDatabase) -> None:
        super().__init__()
        self._client = client
        self._db = database
        self._session: ContextVar[Optional[AsyncIOMotorClientSession]] = ContextVar(
            "points_ledger_mongo_session", default=None
        )

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri, tz_aware=True)
        return cls(client, client[db_name])

    @asynccontextmanager
    async def transaction(self, account_id: Optional[str] = None) -> AsyncIterator[None]:
        if self._session.get() is not None:
            yield
            return

        try:
            with self._collect_commit_hooks() as hooks:
                async with await self._client.start_session() as session:
                    async with session.start_transaction(
                        read_concern=ReadConcern("snapshot"),
                        write_concern=WriteConcern("majority"),
                    ):
                        token = self._session.set(session)
                        try:
                            if account_id:
                                await self._db[ACCOUNT_LOCKS].update_one(
                                    {"_id": account_id},
                                    {"$inc": {"version": 1}, "$set": {"locked_at": utcnow()}},
                                    upsert=True,
                                    session=session,
                                )
                            yield
                        finally:
                            self._session.reset(token)
        except PyMongoError as exc:
            raise _storage_error(exc) from exc
        for hook in hooks:
            hook()

    async def ensure_indexes(self) -> None:
        with self._errors():
            transactions = self._db[Transaction.collection_name]
            await transactions.create_index(
                [("external_ref", ASCENDING)],
                unique=True,
                partialFilterExpression={"external_ref": {"$type": "string"}},
                name="external_ref_uniq",
            )
            await transactions.create_index(
                [("account_id", ASCENDING), ("created_at", DESCENDING), ("_id", DESCENDING)],
                name="account_id_created_at_id_idx",
            )
            await self._db[Account.collection_name].create_index(
                [("external_customer_ref", ASCENDING)],
                unique=True,
                partialFilterExpression={"external_customer_ref": {"$type": "string"}},
                name="external_customer_ref_uniq",
            )

    async def close(self) -> None:
        self._client.close()

    # Helper utilities
    def _current(self) -> Optional[AsyncIOMotorClientSession]:
        return self._session.get()

    @contextmanager
    def _errors(self) -> Iterator[None]:
        try:
            yield
        except DuplicateKeyError as exc:
            raise ConflictError(str(exc)) from exc
        except PyMongoError as exc:
            raise _storage_error(exc) from exc

    @staticmethod
    def _to_doc(model: DBSerializableModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        data["_id"] = data.pop(model.primary_key)
        return data

    # Accounts
    async def add_account(self, account: Account) -> Account:
        with self._errors():
            await self._db[Account.collection_name].insert_one(self._to_doc(account), session=self._current())
        return account

    async def get_account(self, account_id: str) -> Optional[Account]:
        with self._errors():
            doc = await self._db[Account.collection_name].find_one({"_id": account_id}, session=self._current())
        return Account.from_db(doc) if doc else None

    async def update_account(self, account: Account) -> Account:
        data = self._to_doc(account)
        with self._errors():
            result = await self._db[Account.collection_name].replace_one(
                {"_id": data["_id"]}, data, upsert=False, session=self._current()
            )
        if result.matched_count == 0:
            raise ValueError("Account must exist to be updated")
        return account

    async def find_account_by_customer_ref(self, customer_ref: str) -> Optional[Account]:
        with self._errors():
            doc = await self._db[Account.collection_name].find_one(
                {"external_customer_ref": customer_ref}, session=self._current()
            )
        return Account.from_db(doc) if doc else None

    # Ledger store
    async def append_transaction(self, draft: TransactionDraft) -> Transaction:
        tx = Transaction.from_draft(draft, transaction_id=uuid4().hex, created_at=utcnow())
        with self._errors():
            await self._db[Transaction.collection_name].insert_one(self._to_doc(tx), session=self._current())
        return tx

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        with self._errors():
            doc = await self._db[Transaction.collection_name].find_one({"_id": transaction_id}, session=self._current())
        return Transaction.from_db(doc) if doc else None

    async def get_transaction_by_ref(self, external_ref: str) -> Optional[Transaction]:
        with self._errors():
            doc = await self._db[Transaction.collection_name].find_one(
                {"external_ref": external_ref}, session=self._current()
            )
        return Transaction.from_db(doc) if doc else None

    async def balance_of(self, account_id: str) -> int:
        pipeline = [
            {"$match": {"account_id": account_id}},
            {"$group": {"_id": None, "total": {"$sum": "$amount"}}},
        ]
        with self._errors():
            cursor = self._db[Transaction.collection_name].aggregate(pipeline, session=self._current())
            docs = await cursor.to_list(length=1)
        return int(docs[0]["total"]) if docs else 0

    async def list_transactions(
        self,
        account_id: str,
        limit: int,
        before: Optional[PageMarker] = None,
    ) -> List[Transaction]:
        query: Dict[str, Any] = {"account_id": account_id}
        if before is not None:
            created_at, tx_id = before
            query["$or"] = [
                {"created_at": {"$lt": created_at}},
                {"created_at": created_at, "_id": {"$lt": tx_id}},
            ]
        with self._errors():
            cursor = (
                self._db[Transaction.collection_name]
                .find(query, session=self._current())
                .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
                .limit(limit)
            )
            docs = await cursor.to_list(length=limit)
        return [Transaction.from_db(d) for d in docs]

    # Processed events
    async def insert_processed_event(self, event: ProcessedEvent) -> bool:
        col = self._db[ProcessedEvent.collection_name]
        session = self._current()
        with self._errors():
            # Checked first: a duplicate-key error would abort the enclosing transaction.
            if await col.find_one({"_id": event.event_id}, projection={"_id": 1}, session=session):
                return False
            await col.insert_one(self._to_doc(event), session=session)
        return True

    async def get_processed_event(self, event_id: str) -> Optional[ProcessedEvent]:
        with self._errors():
            doc = await self._db[ProcessedEvent.collection_name].find_one({"_id": event_id}, session=self._current())
        return ProcessedEvent.from_db(doc) if doc else None

    async def update_processed_event_outcome(self, event_id: str, outcome: str) -> None:
        with self._errors():
            await self._db[ProcessedEvent.collection_name].update_one(
                {"_id": event_id}, {"$set": {"outcome": outcome}}, session=self._current()
            )

    # Audit
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.id is None:
            entry.id = uuid4().hex
        with self._errors():
            await self._db[LedgerEntry.collection_name].insert_one(self._to_doc(entry), session=self._current())
        return entry
