from .balance_authority import BalanceAuthority
from .catalog import DEFAULT_PACKAGES, PackageCatalog
from .idempotency import IdempotencyGuard
from .ledger_service import LedgerService
from .subscription_service import SubscriptionService, effective_status, map_provider_status
from .webhook_service import WebhookIngestionService

__all__ = [
    "BalanceAuthority",
    "DEFAULT_PACKAGES",
    "IdempotencyGuard",
    "LedgerService",
    "PackageCatalog",
    "SubscriptionService",
    "WebhookIngestionService",
    "effective_status",
    "map_provider_status",
]
