from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Dict, Optional

from ..config import Settings, get_settings
from ..db.base import BaseDBManager
from ..exceptions import AccountNotFound, ConflictError, MalformedEvent
from ..logging.ledger_logger import LedgerLogger
from ..models.account import (
    Account,
    PlanTag,
    SubscriptionStatus,
    SubscriptionView,
    TransitionResult,
)
from ..models.base import utcnow

logger = logging.getLogger(__name__)

_PROVIDER_STATUSES: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
}

_ACTIVE_STATUSES = frozenset(
    {SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}
)


def effective_status(
    status: SubscriptionStatus,
    expires_at: Optional[datetime],
    now: datetime,
) -> SubscriptionStatus:
    """Trial and active subscriptions read as expired once ``expires_at`` has passed."""
    if status in (SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE):
        if expires_at is not None and expires_at <= now:
            return SubscriptionStatus.EXPIRED
    return status


def map_provider_status(provider_status: str) -> SubscriptionStatus:
    try:
        return _PROVIDER_STATUSES[provider_status]
    except KeyError:
        raise MalformedEvent(f"unknown subscription status {provider_status!r}") from None


def _days_remaining(expires_at: Optional[datetime], now: datetime) -> Optional[int]:
    if expires_at is None:
        return None
    seconds = (expires_at - now).total_seconds()
    return max(0, math.ceil(seconds / 86400))


class SubscriptionService:
    """
    Subscription state per account: trial, active, past due, cancelled.

    Provider events are applied last-writer-wins on the provider's event
    timestamp, so a redelivered or reordered older event never overrides a
    newer one. Points are not touched here.
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

    async def open_account(self, account_id: str, now: Optional[datetime] = None) -> Account:
        """Create the account in trial if it does not exist yet; return it either way."""
        async with self._db.transaction(account_id):
            account = await self._db.get_account(account_id)
            if account is not None:
                return account

            now = now or utcnow()
            account = Account(
                id=account_id,
                plan=PlanTag.TRIAL,
                status=SubscriptionStatus.TRIAL,
                expires_at=now + timedelta(days=self._settings.trial_days),
                created_at=now,
                updated_at=now,
            )
            account = await self._db.add_account(account)
            await self._ledger.log_subscription(
                account_id=account_id,
                message="Trial started",
                details={"expires_at": account.expires_at.isoformat()},
            )
        logger.info("Opened account %s in trial", account_id)
        return account

    async def get_account(self, account_id: str) -> Account:
        account = await self._db.get_account(account_id)
        if account is None:
            raise AccountNotFound(f"account {account_id} not found")
        return account

    async def get_status(self, account_id: str, now: Optional[datetime] = None) -> SubscriptionView:
        account = await self.get_account(account_id)
        now = now or utcnow()
        status = effective_status(account.status, account.expires_at, now)
        return SubscriptionView(
            account_id=account.id,
            plan=account.plan,
            status=status,
            stored_status=account.status,
            expires_at=account.expires_at,
            days_remaining=_days_remaining(account.expires_at, now),
            is_active=status in _ACTIVE_STATUSES,
            as_of=now,
        )

    async def apply_provider_status(
        self,
        account_id: str,
        status: SubscriptionStatus,
        event_at: datetime,
        expires_at: Optional[datetime] = None,
        customer_ref: Optional[str] = None,
        subscription_ref: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> TransitionResult:
        if status == SubscriptionStatus.EXPIRED:
            raise ValueError("expired is derived, not applied")

        async with self._db.transaction(account_id):
            account = await self.open_account(account_id, now=event_at)
            previous = account.status
            updates = await self._ref_updates(account, customer_ref, subscription_ref)

            if account.status_event_at is not None and account.status_event_at > event_at:
                if updates:
                    account = await self._save(account, updates)
                logger.info(
                    "Skipped stale %s for %s (event %s older than %s)",
                    status.value,
                    account_id,
                    event_at.isoformat(),
                    account.status_event_at.isoformat(),
                )
                return TransitionResult(
                    account=account,
                    previous_status=previous,
                    applied=False,
                    reason="stale",
                )

            updates.update(status=status, status_event_at=event_at)
            if expires_at is not None:
                updates["expires_at"] = expires_at
            if status == SubscriptionStatus.ACTIVE:
                updates["plan"] = PlanTag.PAID
            account = await self._save(account, updates)

            await self._ledger.log_subscription(
                account_id=account_id,
                message="Subscription status changed",
                details={
                    "from": previous.value,
                    "to": status.value,
                    "event_at": event_at.isoformat(),
                    "expires_at": account.expires_at.isoformat() if account.expires_at else None,
                },
                correlation_id=correlation_id,
            )

        logger.info("Subscription %s: %s -> %s", account_id, previous.value, status.value)
        return TransitionResult(account=account, previous_status=previous, applied=True)

    async def record_customer(
        self,
        account_id: str,
        customer_ref: str,
        subscription_ref: Optional[str] = None,
    ) -> Account:
        """Bind the provider customer id to the account without touching its status."""
        async with self._db.transaction(account_id):
            account = await self.open_account(account_id)
            updates = await self._ref_updates(account, customer_ref, subscription_ref)
            if updates:
                account = await self._save(account, updates)
        return account

    async def reconcile(
        self,
        account_id: str,
        status: SubscriptionStatus,
        expires_at: Optional[datetime],
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """Operator override. Ignores the event timestamp guard; always audited."""
        if status == SubscriptionStatus.EXPIRED:
            raise ValueError("expired is derived, not applied")
        now = now or utcnow()

        async with self._db.transaction(account_id):
            account = await self.open_account(account_id, now=now)
            previous = account.status
            updates = {"status": status, "expires_at": expires_at, "status_event_at": now}
            if status == SubscriptionStatus.ACTIVE:
                updates["plan"] = PlanTag.PAID
            account = await self._save(account, updates)
            await self._ledger.log_subscription(
                account_id=account_id,
                message="Subscription reconciled",
                details={
                    "from": previous.value,
                    "to": status.value,
                    "expires_at": expires_at.isoformat() if expires_at else None,
                },
            )

        logger.warning("Subscription %s reconciled by operator: %s -> %s", account_id, previous.value, status.value)
        return TransitionResult(account=account, previous_status=previous, applied=True, reason="reconciled")

    # Helper utilities
    async def _ref_updates(
        self,
        account: Account,
        customer_ref: Optional[str],
        subscription_ref: Optional[str],
    ) -> dict:
        updates = {}
        if customer_ref and customer_ref != account.external_customer_ref:
            owner = await self._db.find_account_by_customer_ref(customer_ref)
            if owner is not None and owner.id != account.id:
                raise ConflictError(f"customer {customer_ref} is bound to account {owner.id}")
            updates["external_customer_ref"] = customer_ref
        if subscription_ref and subscription_ref != account.external_subscription_ref:
            updates["external_subscription_ref"] = subscription_ref
        return updates

    async def _save(self, account: Account, updates: dict) -> Account:
        updated = account.model_copy(update={**updates, "updated_at": utcnow()})
        return await self._db.update_account(updated)
