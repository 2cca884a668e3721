"""Tests for CreditLedger: atomic debit, idempotency, provisioning."""

import asyncio
from datetime import datetime, timezone

import pytest

from creditgate.account_cache import AccountCache
from creditgate.backends.memory import InMemoryBackend
from creditgate.config import CreditGateConfig
from creditgate.constants import ActionCategory, TransactionKind
from creditgate.errors import UnknownActionError
from creditgate.ledger import CreditLedger, LedgerStatus, new_account
from creditgate.registry import ActionCostDefinition, ActionCostRegistry

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)

REGISTRY = ActionCostRegistry(
    [
        ActionCostDefinition("order_create", "Create Order", 50, ActionCategory.ORDERS),
        ActionCostDefinition("orders_view", "View Orders", 0, ActionCategory.ORDERS),
        ActionCostDefinition("invoice_create", "Create Invoice", 100, ActionCategory.INVOICES),
    ],
    {"create_order": "order_create"},
)


def _ledger(starting_balance: int = 120) -> tuple[CreditLedger, InMemoryBackend]:
    backend = InMemoryBackend()
    config = CreditGateConfig(starting_balance=starting_balance)
    ledger = CreditLedger(AccountCache(backend), REGISTRY, config, clock=lambda: NOW)
    return ledger, backend


# ---------------------------------------------------------------------------
# Provisioning
# ---------------------------------------------------------------------------


class TestNewAccount:
    def test_starting_allocation_is_a_transaction(self) -> None:
        account = new_account("t1", CreditGateConfig(), NOW)
        assert account.balance == 500
        txn = account.find_transaction("initial_grant:t1")
        assert txn.kind is TransactionKind.INITIAL_GRANT
        assert account.free_balance == 500
        assert sum(t.delta for t in account.outbox) == account.balance

    def test_anchor_defaults_to_provisioning_day(self) -> None:
        account = new_account("t1", CreditGateConfig(), datetime(2026, 6, 17, tzinfo=timezone.utc))
        assert account.billing_anchor_day == 17
        assert account.monthly_period == "2026-06-17"

    def test_zero_starting_balance_has_no_grant(self) -> None:
        account = new_account("t1", CreditGateConfig(starting_balance=0), NOW)
        assert account.recent == {}
        assert account.outbox == []


# ---------------------------------------------------------------------------
# Debit
# ---------------------------------------------------------------------------


class TestDebit:
    @pytest.mark.asyncio
    async def test_debit_ok_and_persisted(self) -> None:
        ledger, backend = _ledger()
        result = await ledger.debit("t1", "order_create", "req-1")
        assert result.status is LedgerStatus.OK
        assert result.balance_after == 70
        assert '"balance": 70' in await backend.fetch_account("t1")

    @pytest.mark.asyncio
    async def test_insufficient_reports_shortfall(self) -> None:
        ledger, _ = _ledger(starting_balance=30)
        result = await ledger.debit("t1", "order_create", "req-1")
        assert result.status is LedgerStatus.INSUFFICIENT_CREDITS
        assert result.balance_after == 30
        assert result.shortfall == 20
        assert not result.ok

    @pytest.mark.asyncio
    async def test_replay_returns_prior_result(self) -> None:
        ledger, _ = _ledger()
        first = await ledger.debit("t1", "order_create", "req-1")
        await ledger.debit("t1", "order_create", "req-2")
        replay = await ledger.debit("t1", "order_create", "req-1")
        assert replay.status is LedgerStatus.DUPLICATE
        assert replay.balance_after == first.balance_after == 70
        assert await ledger.balance("t1") == 20

    @pytest.mark.asyncio
    async def test_zero_cost_skips_ledger(self) -> None:
        ledger, _ = _ledger(starting_balance=0)
        result = await ledger.debit("t1", "orders_view", "req-1")
        assert result.status is LedgerStatus.SKIPPED
        assert result.ok
        assert result.transaction is None

    @pytest.mark.asyncio
    async def test_alias_debits_canonical_cost(self) -> None:
        ledger, _ = _ledger()
        result = await ledger.debit("t1", "create_order", "req-1")
        assert result.cost == 50

    @pytest.mark.asyncio
    async def test_unknown_action_raises(self) -> None:
        ledger, _ = _ledger()
        with pytest.raises(UnknownActionError):
            await ledger.debit("t1", "order_teleport", "req-1")

    @pytest.mark.asyncio
    async def test_concurrent_debits_only_one_affordable(self) -> None:
        ledger, _ = _ledger(starting_balance=120)
        await ledger.debit("t1", "order_create", "warmup")  # 70 left
        results = await asyncio.gather(
            ledger.debit("t1", "order_create", "a"),
            ledger.debit("t1", "order_create", "b"),
        )
        statuses = sorted(r.status.value for r in results)
        assert statuses == ["insufficient_credits", "ok"]
        assert await ledger.balance("t1") == 20

    @pytest.mark.asyncio
    async def test_tenants_do_not_share_balances(self) -> None:
        ledger, _ = _ledger()
        await ledger.debit("t1", "order_create", "req-1")
        assert await ledger.balance("t2") is None
        await ledger.debit("t2", "order_create", "req-1")
        assert await ledger.balance("t2") == 70

    @pytest.mark.asyncio
    async def test_key_reused_for_other_action_is_conflict(self) -> None:
        ledger, _ = _ledger(starting_balance=500)
        await ledger.debit("t1", "order_create", "req-1")
        result = await ledger.debit("t1", "invoice_create", "req-1")
        assert result.status is LedgerStatus.CONFLICT
        assert not result.ok
        assert await ledger.balance("t1") == 450

    @pytest.mark.asyncio
    async def test_system_key_cannot_be_replayed_as_action(self) -> None:
        ledger, _ = _ledger()
        result = await ledger.debit("t1", "order_create", "initial_grant:t1")
        assert result.status is LedgerStatus.OK
        assert result.balance_after == 70

    @pytest.mark.asyncio
    async def test_log_reaches_backend_and_sums_to_balance(self) -> None:
        ledger, backend = _ledger()
        await ledger.debit("t1", "order_create", "req-1")
        await ledger.credit("t1", 500, "promo", "promo-1")
        rows = backend.transactions("t1")
        assert [row["idempotency_key"] for row in rows] == [
            "initial_grant:t1", "action:req-1", "credit:promo-1",
        ]
        assert sum(row["delta"] for row in rows) == await ledger.balance("t1") == 570


# ---------------------------------------------------------------------------
# Credit
# ---------------------------------------------------------------------------


class TestCredit:
    @pytest.mark.asyncio
    async def test_credit_ok(self) -> None:
        ledger, _ = _ledger()
        result = await ledger.credit("t1", 500, "promo", "promo-1")
        assert result.status is LedgerStatus.OK
        assert result.balance_after == 620

    @pytest.mark.asyncio
    async def test_credit_replay(self) -> None:
        ledger, _ = _ledger()
        await ledger.credit("t1", 500, "promo", "promo-1")
        replay = await ledger.credit("t1", 500, "promo", "promo-1")
        assert replay.status is LedgerStatus.DUPLICATE
        assert replay.balance_after == 620
        assert await ledger.balance("t1") == 620

    @pytest.mark.asyncio
    async def test_credit_and_debit_keys_do_not_collide(self) -> None:
        ledger, _ = _ledger()
        await ledger.debit("t1", "order_create", "k1")
        result = await ledger.credit("t1", 500, "promo", "k1")
        assert result.status is LedgerStatus.OK
        assert result.balance_after == 570

    @pytest.mark.asyncio
    async def test_non_positive_amount_rejected(self) -> None:
        ledger, _ = _ledger()
        with pytest.raises(ValueError):
            await ledger.credit("t1", 0, "nothing", "k")
