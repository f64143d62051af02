from __future__ import annotations

import base64
import binascii
import json
from datetime import datetime
from typing import Optional

from ..db.base import BaseDBManager, PageMarker
from ..models.transaction import BalanceStatement, Transaction, TransactionPage

MAX_PAGE_SIZE = 200


def encode_cursor(tx: Transaction) -> str:
    payload = json.dumps({"created_at": tx.created_at.isoformat(), "id": tx.id})
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> PageMarker:
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("ascii"))
        data = json.loads(raw.decode("utf-8"))
        created_at = datetime.fromisoformat(data["created_at"])
        tx_id = str(data["id"])
    except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError) as exc:
        raise ValueError("invalid cursor") from exc
    if created_at.tzinfo is None:
        raise ValueError("invalid cursor")
    return created_at, tx_id


class LedgerService:
    """
    Read path over the transaction ledger: balances and keyset-paginated
    history, newest first.

    The cursor names the last row already returned, so rows appended after
    the first page sort before it and never shift later pages.
    """

    def __init__(self, db: BaseDBManager) -> None:
        self._db = db

    async def balance_of(self, account_id: str) -> int:
        return await self._db.balance_of(account_id)

    async def history(
        self,
        account_id: str,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> TransactionPage:
        if limit <= 0 or limit > MAX_PAGE_SIZE:
            raise ValueError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        before = decode_cursor(cursor) if cursor else None

        # One extra row tells us whether another page exists.
        rows = await self._db.list_transactions(account_id, limit + 1, before)
        items = rows[:limit]
        next_cursor = encode_cursor(items[-1]) if len(rows) > limit else None
        return TransactionPage(items=items, next_cursor=next_cursor)

    async def statement(
        self,
        account_id: str,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> BalanceStatement:
        async with self._db.transaction():
            balance = await self._db.balance_of(account_id)
            page = await self.history(account_id, limit=limit, cursor=cursor)
        return BalanceStatement(
            account_id=account_id,
            balance=balance,
            transactions=page.items,
            next_cursor=page.next_cursor,
        )
