from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .config import Settings, get_settings
from .db.base import BaseDBManager
from .db.memory import InMemoryDBManager
from .db.mongo import MongoDBManager
from .logging.ledger_logger import LedgerLogger
from .services.balance_authority import BalanceAuthority
from .services.catalog import PackageCatalog
from .services.idempotency import IdempotencyGuard
from .services.ledger_service import LedgerService
from .services.subscription_service import SubscriptionService
from .services.webhook_service import WebhookIngestionService

logger = logging.getLogger(__name__)


@dataclass
class PointsEngine:
    """All services sharing one store; built once per process (or per test)."""

    settings: Settings
    db: BaseDBManager
    ledger: LedgerLogger
    ledger_service: LedgerService
    authority: BalanceAuthority
    subscriptions: SubscriptionService
    catalog: PackageCatalog
    webhooks: WebhookIngestionService


def create_db_manager(settings: Settings) -> BaseDBManager:
    if settings.mongo_uri:
        logger.info("Using MongoDB store %s", settings.mongo_db)
        return MongoDBManager.from_client_uri(settings.mongo_uri, settings.mongo_db)
    logger.warning("POINTS_MONGO_URI not set; using the in-memory store (not durable)")
    return InMemoryDBManager()


def build_engine(
    settings: Optional[Settings] = None,
    db: Optional[BaseDBManager] = None,
) -> PointsEngine:
    settings = settings or get_settings()
    db = db or create_db_manager(settings)
    ledger = LedgerLogger(db=db, file_path=settings.ledger_log_path)
    authority = BalanceAuthority(db=db, ledger=ledger, settings=settings)
    subscriptions = SubscriptionService(db=db, ledger=ledger, settings=settings)
    catalog = PackageCatalog.from_settings(settings)
    webhooks = WebhookIngestionService(
        db=db,
        ledger=ledger,
        authority=authority,
        subscriptions=subscriptions,
        catalog=catalog,
        guard=IdempotencyGuard(db),
        settings=settings,
    )
    return PointsEngine(
        settings=settings,
        db=db,
        ledger=ledger,
        ledger_service=LedgerService(db),
        authority=authority,
        subscriptions=subscriptions,
        catalog=catalog,
        webhooks=webhooks,
    )
