from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from ..db.base import BaseDBManager
from ..models.ledger import LedgerEntry, LedgerEventType

logger = logging.getLogger(__name__)


class LedgerLogger:
    """
    Structured audit logger that writes to the store and to a file.

    File logging is append-only, line-delimited JSON for easier ingestion
    by log aggregators. DB logging uses the `LedgerEntry` model and the
    configured `BaseDBManager`, so an entry written inside a unit of work
    commits or rolls back together with it.
    """

    def __init__(self, db: BaseDBManager, file_path: Optional[Path] = None) -> None:
        self._db = db
        self._file_path = file_path
        if self._file_path is not None:
            self._file_path.parent.mkdir(parents=True, exist_ok=True)

    async def log_transaction(
        self,
        account_id: str,
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(LedgerEventType.TRANSACTION, account_id, message, details, correlation_id)

    async def log_webhook(
        self,
        message: str,
        details: dict[str, Any],
        account_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(LedgerEventType.WEBHOOK, account_id, message, details, correlation_id)

    async def log_subscription(
        self,
        account_id: str,
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(LedgerEventType.SUBSCRIPTION, account_id, message, details, correlation_id)

    async def log_error(
        self,
        message: str,
        details: dict[str, Any],
        account_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(LedgerEventType.ERROR, account_id, message, details, correlation_id)

    async def _log(
        self,
        event_type: LedgerEventType,
        account_id: Optional[str],
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str],
    ) -> None:
        entry = LedgerEntry(
            event_type=event_type,
            account_id=account_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

        await self._db.add_ledger_entry(entry)
        if self._file_path is not None:
            # Only committed entries reach the file.
            self._db.after_commit(lambda: self._write_line(entry))

    def _write_line(self, entry: LedgerEntry) -> None:
        # File mirror is best-effort; the DB entry is authoritative.
        try:
            line = json.dumps(entry.serialize_for_db(), default=str)
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as exc:
            logger.warning("Audit file write failed: %s", exc, extra={"path": str(self._file_path)})
