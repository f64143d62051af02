from __future__ import annotations

import asyncio
import json

import pytest

from points_ledger.db.memory import InMemoryDBManager
from points_ledger.exceptions import ConflictError, StorageError, TransactionNotFound
from points_ledger.models.transaction import DebitResult, InsufficientFunds, TransactionKind
from points_ledger.services.balance_authority import BalanceAuthority

SCREENING = TransactionKind.SCREENING


class FlakyDBManager(InMemoryDBManager):
    """Fails the next ``failures`` balance reads with a storage error."""

    def __init__(self, retryable: bool = True) -> None:
        super().__init__()
        self.failures = 0
        self.retryable = retryable

    async def balance_of(self, account_id: str) -> int:
        if self.failures:
            self.failures -= 1
            raise StorageError("write conflict", retryable=self.retryable)
        return await super().balance_of(account_id)


@pytest.mark.asyncio
async def test_credit_then_debit(engine):
    authority = engine.authority

    credit = await authority.credit("acct-1", 100, description="Starter", external_ref="cs_1")
    result = await authority.debit("acct-1", 40, SCREENING, "screen resume", "req-1")

    assert credit.duplicate is False
    assert isinstance(result, DebitResult)
    assert result.replayed is False
    assert result.transaction.amount == -40
    assert result.transaction.external_ref == "debit:req-1"
    assert await engine.db.balance_of("acct-1") == 60


@pytest.mark.asyncio
async def test_concurrent_debits_never_overspend(engine):
    """Balance 100, two concurrent debits of 60: one succeeds, one is refused."""
    authority = engine.authority
    await authority.credit("acct-1", 100, external_ref="cs_1")

    results = await asyncio.gather(
        authority.debit("acct-1", 60, SCREENING, "screen", "req-a"),
        authority.debit("acct-1", 60, SCREENING, "screen", "req-b"),
    )

    successes = [r for r in results if isinstance(r, DebitResult)]
    refusals = [r for r in results if isinstance(r, InsufficientFunds)]
    assert len(successes) == 1
    assert refusals == [InsufficientFunds(account_id="acct-1", required=60, available=40)]
    assert await engine.db.balance_of("acct-1") == 40


@pytest.mark.asyncio
async def test_many_concurrent_debits_stop_at_zero(engine):
    authority = engine.authority
    await authority.grant_bonus("acct-1", 5)

    results = await asyncio.gather(
        *(authority.debit("acct-1", 1, SCREENING, "screen", f"req-{i}") for i in range(12))
    )

    assert sum(isinstance(r, DebitResult) for r in results) == 5
    assert await engine.db.balance_of("acct-1") == 0


@pytest.mark.asyncio
async def test_insufficient_funds_writes_nothing(engine):
    await engine.authority.grant_bonus("acct-1", 3)

    result = await engine.authority.debit("acct-1", 4, TransactionKind.VOICE_INTERVIEW, "interview", "req-1")

    assert result == InsufficientFunds(account_id="acct-1", required=4, available=3)
    assert await engine.db.get_transaction_by_ref("debit:req-1") is None
    assert await engine.db.balance_of("acct-1") == 3


@pytest.mark.asyncio
async def test_debit_replay_returns_original(engine):
    authority = engine.authority
    await authority.grant_bonus("acct-1", 10)

    first = await authority.debit("acct-1", 2, SCREENING, "screen", "req-1")
    again = await authority.debit("acct-1", 2, SCREENING, "screen", "req-1")

    assert again.replayed is True
    assert again.transaction == first.transaction
    assert await engine.db.balance_of("acct-1") == 8


@pytest.mark.asyncio
async def test_debit_replay_with_other_parameters_conflicts(engine):
    authority = engine.authority
    await authority.grant_bonus("acct-1", 10)
    await authority.debit("acct-1", 2, SCREENING, "screen", "req-1")

    with pytest.raises(ConflictError):
        await authority.debit("acct-1", 3, SCREENING, "screen", "req-1")
    with pytest.raises(ConflictError):
        await authority.debit("acct-2", 2, SCREENING, "screen", "req-1")
    assert await engine.db.balance_of("acct-1") == 8


@pytest.mark.asyncio
async def test_duplicate_credit_reference(engine):
    authority = engine.authority
    first = await authority.credit("acct-1", 500, external_ref="cs_1")
    second = await authority.credit("acct-1", 500, external_ref="cs_1")

    assert second.duplicate is True
    assert second.transaction.id == first.transaction.id
    assert await engine.db.balance_of("acct-1") == 500

    with pytest.raises(ConflictError):
        await authority.credit("acct-2", 500, external_ref="cs_1")


@pytest.mark.parametrize(
    "call",
    [
        lambda a: a.credit("acct-1", 0),
        lambda a: a.credit("acct-1", 5, kind=SCREENING),
        lambda a: a.debit("acct-1", -1, SCREENING, "x", "k"),
        lambda a: a.debit("acct-1", 1, TransactionKind.BONUS, "x", "k"),
        lambda a: a.debit("acct-1", 1, SCREENING, "x", ""),
    ],
)
@pytest.mark.asyncio
async def test_invalid_arguments(engine, call):
    with pytest.raises(ValueError):
        await call(engine.authority)


@pytest.mark.asyncio
async def test_refund_credits_back_once(engine):
    authority = engine.authority
    await authority.grant_bonus("acct-1", 10)
    debit = (await authority.debit("acct-1", 4, SCREENING, "screen", "req-1")).transaction

    refund = await authority.refund("acct-1", debit.id, reason="screening failed")
    again = await authority.refund("acct-1", debit.id, reason="screening failed")

    assert refund.transaction.kind == TransactionKind.REFUND
    assert refund.transaction.amount == 4
    assert again.duplicate is True
    assert refund.transaction.external_ref == f"refund:{debit.id}"
    assert await engine.db.balance_of("acct-1") == 10


@pytest.mark.asyncio
async def test_refund_rejects_unknown_or_credit_rows(engine):
    authority = engine.authority
    bonus = await authority.grant_bonus("acct-1", 10)

    with pytest.raises(TransactionNotFound):
        await authority.refund("acct-1", "missing")
    with pytest.raises(TransactionNotFound):
        await authority.refund("acct-2", bonus.transaction.id)
    with pytest.raises(ValueError):
        await authority.refund("acct-1", bonus.transaction.id)


def test_cost_of_billable_actions(engine):
    assert engine.authority.cost_of(SCREENING) == 1
    assert engine.authority.cost_of(SCREENING, 25) == 25
    assert engine.authority.cost_of(TransactionKind.VOICE_INTERVIEW, 3) == 6
    with pytest.raises(ValueError):
        engine.authority.cost_of(TransactionKind.PURCHASE)


@pytest.mark.asyncio
async def test_debit_retries_transient_storage_errors(settings, ledger):
    db = FlakyDBManager()
    authority = BalanceAuthority(db=db, ledger=ledger, settings=settings)
    await authority.grant_bonus("acct-1", 10)

    db.failures = 2
    result = await authority.debit("acct-1", 3, SCREENING, "screen", "req-1")

    assert isinstance(result, DebitResult)
    assert await db.balance_of("acct-1") == 7


@pytest.mark.asyncio
async def test_debit_gives_up_after_max_attempts(settings, ledger):
    db = FlakyDBManager()
    authority = BalanceAuthority(db=db, ledger=ledger, settings=settings)
    await authority.grant_bonus("acct-1", 10)

    db.failures = settings.debit_max_attempts
    with pytest.raises(StorageError):
        await authority.debit("acct-1", 3, SCREENING, "screen", "req-1")
    assert await db.get_transaction_by_ref("debit:req-1") is None


@pytest.mark.asyncio
async def test_non_retryable_storage_error_is_raised_immediately(settings, ledger):
    db = FlakyDBManager(retryable=False)
    authority = BalanceAuthority(db=db, ledger=ledger, settings=settings)
    await authority.grant_bonus("acct-1", 10)

    db.failures = 1
    with pytest.raises(StorageError):
        await authority.debit("acct-1", 3, SCREENING, "screen", "req-1")
    # Only the failing attempt consumed a failure.
    assert db.failures == 0
    assert await db.balance_of("acct-1") == 10


@pytest.mark.asyncio
async def test_decisions_are_audited(engine, settings):
    await engine.authority.credit("acct-1", 5, external_ref="cs_1")
    await engine.authority.debit("acct-1", 9, SCREENING, "screen", "req-1")

    messages = [e.message for e in engine.db.ledger_entries]
    assert messages == ["Points credited", "Debit refused: insufficient points"]

    lines = settings.ledger_log_path.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["message"] for line in lines] == messages


@pytest.mark.asyncio
async def test_rolled_back_debit_leaves_no_audit_line(engine, settings):
    await engine.authority.grant_bonus("acct-1", 10)

    with pytest.raises(RuntimeError):
        async with engine.db.transaction("acct-1"):
            await engine.authority.debit("acct-1", 3, SCREENING, "screen", "req-1")
            raise RuntimeError("work failed after the debit")

    lines = settings.ledger_log_path.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["message"] for line in lines] == ["Points credited"]
    assert [e.message for e in engine.db.ledger_entries] == ["Points credited"]
    assert await engine.db.balance_of("acct-1") == 10
