from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any, Callable, Dict, Optional

import pytest

from points_ledger.config import Settings
from points_ledger.db.memory import InMemoryDBManager
from points_ledger.engine import PointsEngine, build_engine
from points_ledger.logging.ledger_logger import LedgerLogger

WEBHOOK_SECRET = "whsec_test_secret"

TEST_PACKAGES = [
    {"id": "starter_pack", "name": "Starter Pack", "points": 500, "price_cents": 4900, "price_ref": "price_starter"},
    {"id": "growth", "name": "Growth", "points": 100, "price_cents": 8000, "price_ref": "price_growth"},
    {"id": "legacy", "name": "Legacy", "points": 10, "price_cents": 1000, "is_active": False},
]


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        stripe_webhook_secret=WEBHOOK_SECRET,
        ledger_log_path=tmp_path / "audit.jsonl",
        debit_retry_backoff_seconds=0,
        packages_json=json.dumps(TEST_PACKAGES),
    )


@pytest.fixture
def db() -> InMemoryDBManager:
    # A small per-operation delay makes concurrent units actually interleave.
    return InMemoryDBManager(op_delay=0.001)


@pytest.fixture
def ledger(db, tmp_path) -> LedgerLogger:
    return LedgerLogger(db=db, file_path=tmp_path / "audit.jsonl")


@pytest.fixture
def engine(settings, db) -> PointsEngine:
    return build_engine(settings=settings, db=db)


def _sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def _event(
    event_type: str,
    obj: Dict[str, Any],
    event_id: str = "evt_1",
    created: Optional[int] = None,
) -> str:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": int(time.time()) if created is None else created,
            "livemode": False,
            "data": {"object": obj},
        }
    )


@pytest.fixture
def sign() -> Callable[..., str]:
    """Build a provider-style signature header for a payload."""
    return _sign


@pytest.fixture
def make_event() -> Callable[..., str]:
    """Serialize a provider event envelope around ``data.object``."""
    return _event


@pytest.fixture
def checkout_session() -> Callable[..., Dict[str, Any]]:
    def factory(
        session_id: str = "cs_test_1",
        account_id: Optional[str] = "acct-1",
        package_id: Optional[str] = "starter_pack",
        **overrides: Any,
    ) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {}
        if account_id is not None:
            metadata["userId"] = account_id
        if package_id is not None:
            metadata["packageId"] = package_id
        session = {
            "id": session_id,
            "object": "checkout.session",
            "mode": "payment",
            "payment_status": "paid",
            "customer": "cus_123",
            "amount_total": 4900,
            "currency": "usd",
            "metadata": metadata,
        }
        session.update(overrides)
        return session

    return factory
