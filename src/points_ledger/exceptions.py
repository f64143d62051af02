"""Error taxonomy for the points ledger engine."""
from __future__ import annotations


class PointsLedgerError(Exception):
    """Base class for engine errors."""


class StorageError(PointsLedgerError):
    """Storage layer failure. ``retryable`` marks transient conflicts and timeouts."""

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class ConflictError(PointsLedgerError):
    """An external reference or idempotency key is already bound to different parameters."""


class TransactionNotFound(PointsLedgerError):
    pass


class AccountNotFound(PointsLedgerError):
    pass


class MalformedEvent(PointsLedgerError):
    """Event payload cannot be interpreted; retrying delivery will not fix it."""


class BadSignature(PointsLedgerError):
    """Webhook signature is missing or does not match the shared secret."""


__all__ = [
    "AccountNotFound",
    "BadSignature",
    "ConflictError",
    "MalformedEvent",
    "PointsLedgerError",
    "StorageError",
    "TransactionNotFound",
]
