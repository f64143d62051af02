from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from points_ledger.exceptions import AccountNotFound, ConflictError, MalformedEvent
from points_ledger.models.account import PlanTag, SubscriptionStatus
from points_ledger.services.subscription_service import effective_status, map_provider_status

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "status, expires_at, expected",
    [
        (SubscriptionStatus.TRIAL, NOW + timedelta(days=1), SubscriptionStatus.TRIAL),
        (SubscriptionStatus.TRIAL, NOW, SubscriptionStatus.EXPIRED),
        (SubscriptionStatus.ACTIVE, NOW - timedelta(seconds=1), SubscriptionStatus.EXPIRED),
        (SubscriptionStatus.ACTIVE, None, SubscriptionStatus.ACTIVE),
        (SubscriptionStatus.PAST_DUE, NOW - timedelta(days=3), SubscriptionStatus.PAST_DUE),
        (SubscriptionStatus.CANCELLED, NOW - timedelta(days=3), SubscriptionStatus.CANCELLED),
    ],
)
def test_effective_status(status, expires_at, expected):
    assert effective_status(status, expires_at, NOW) == expected


def test_provider_status_mapping():
    assert map_provider_status("trialing") == SubscriptionStatus.ACTIVE
    assert map_provider_status("unpaid") == SubscriptionStatus.PAST_DUE
    assert map_provider_status("incomplete_expired") == SubscriptionStatus.CANCELLED
    with pytest.raises(MalformedEvent):
        map_provider_status("mystery")


@pytest.mark.asyncio
async def test_open_account_starts_trial_once(engine):
    service = engine.subscriptions

    account = await service.open_account("acct-1", now=NOW)
    again = await service.open_account("acct-1", now=NOW + timedelta(days=5))

    assert account.status == SubscriptionStatus.TRIAL
    assert account.plan == PlanTag.TRIAL
    assert account.expires_at == NOW + timedelta(days=14)
    assert again.expires_at == account.expires_at


@pytest.mark.asyncio
async def test_get_status_reports_days_remaining(engine):
    service = engine.subscriptions
    await service.open_account("acct-1", now=NOW)

    view = await service.get_status("acct-1", now=NOW + timedelta(days=12, hours=12))
    assert view.status == SubscriptionStatus.TRIAL
    assert view.days_remaining == 2
    assert view.is_active is True

    expired = await service.get_status("acct-1", now=NOW + timedelta(days=15))
    assert expired.status == SubscriptionStatus.EXPIRED
    assert expired.stored_status == SubscriptionStatus.TRIAL
    assert expired.days_remaining == 0
    assert expired.is_active is False


@pytest.mark.asyncio
async def test_get_status_unknown_account(engine):
    with pytest.raises(AccountNotFound):
        await engine.subscriptions.get_status("ghost")


@pytest.mark.asyncio
async def test_active_sets_paid_plan(engine):
    result = await engine.subscriptions.apply_provider_status(
        "acct-1",
        SubscriptionStatus.ACTIVE,
        event_at=NOW,
        expires_at=NOW + timedelta(days=30),
        customer_ref="cus_1",
        subscription_ref="sub_1",
    )

    assert result.applied is True
    assert result.account.plan == PlanTag.PAID
    assert result.account.status == SubscriptionStatus.ACTIVE
    assert result.account.external_customer_ref == "cus_1"
    assert result.account.external_subscription_ref == "sub_1"


@pytest.mark.asyncio
async def test_older_event_does_not_override_newer(engine):
    service = engine.subscriptions
    await service.apply_provider_status("acct-1", SubscriptionStatus.ACTIVE, event_at=NOW)

    stale = await service.apply_provider_status(
        "acct-1",
        SubscriptionStatus.PAST_DUE,
        event_at=NOW - timedelta(minutes=5),
        customer_ref="cus_1",
    )

    assert stale.applied is False
    assert stale.reason == "stale"
    account = await service.get_account("acct-1")
    assert account.status == SubscriptionStatus.ACTIVE
    # Provider references are still recorded from stale events.
    assert account.external_customer_ref == "cus_1"


@pytest.mark.asyncio
async def test_equal_timestamps_apply_latest_arrival(engine):
    service = engine.subscriptions
    await service.apply_provider_status("acct-1", SubscriptionStatus.ACTIVE, event_at=NOW)
    result = await service.apply_provider_status("acct-1", SubscriptionStatus.PAST_DUE, event_at=NOW)

    assert result.applied is True
    assert result.account.status == SubscriptionStatus.PAST_DUE


@pytest.mark.asyncio
async def test_cancel_keeps_plan(engine):
    service = engine.subscriptions
    await service.apply_provider_status("acct-1", SubscriptionStatus.ACTIVE, event_at=NOW)
    result = await service.apply_provider_status(
        "acct-1", SubscriptionStatus.CANCELLED, event_at=NOW + timedelta(days=1)
    )

    assert result.account.status == SubscriptionStatus.CANCELLED
    assert result.account.plan == PlanTag.PAID
    view = await service.get_status("acct-1", now=NOW + timedelta(days=2))
    assert view.is_active is False


@pytest.mark.asyncio
async def test_expired_cannot_be_applied(engine):
    with pytest.raises(ValueError):
        await engine.subscriptions.apply_provider_status("acct-1", SubscriptionStatus.EXPIRED, event_at=NOW)


@pytest.mark.asyncio
async def test_reconcile_bypasses_timestamp_guard(engine):
    service = engine.subscriptions
    await service.apply_provider_status("acct-1", SubscriptionStatus.CANCELLED, event_at=NOW + timedelta(days=1))

    result = await service.reconcile(
        "acct-1", SubscriptionStatus.ACTIVE, expires_at=NOW + timedelta(days=30), now=NOW
    )

    assert result.applied is True
    assert result.reason == "reconciled"
    assert result.account.status == SubscriptionStatus.ACTIVE
    assert "Subscription reconciled" in [e.message for e in engine.db.ledger_entries]


@pytest.mark.asyncio
async def test_record_customer_does_not_touch_status(engine):
    service = engine.subscriptions
    await service.open_account("acct-1", now=NOW)

    account = await service.record_customer("acct-1", "cus_1")

    assert account.external_customer_ref == "cus_1"
    assert account.status == SubscriptionStatus.TRIAL
    with pytest.raises(ConflictError):
        await service.record_customer("acct-2", "cus_1")


@pytest.mark.asyncio
async def test_subscription_changes_never_touch_points(engine):
    await engine.subscriptions.apply_provider_status("acct-1", SubscriptionStatus.ACTIVE, event_at=NOW)
    assert await engine.db.list_transactions("acct-1", limit=10) == []
