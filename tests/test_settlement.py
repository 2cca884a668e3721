"""Tests for purchase settlement: packages, idempotency, grace/trigger reset."""

import logging
from datetime import datetime, timedelta, timezone

import pytest

from creditgate.account_cache import AccountCache
from creditgate.backends.memory import InMemoryBackend
from creditgate.config import CreditGateConfig
from creditgate.constants import GraceState, TransactionKind
from creditgate.grace import GracePeriodManager
from creditgate.settlement import (
    CreditPackage,
    PackageCatalog,
    PurchaseSettlement,
    SettlementStatus,
)
from creditgate.triggers import TriggerEngine

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def _settlement(starting_balance: int = 0) -> tuple[PurchaseSettlement, AccountCache]:
    config = CreditGateConfig(starting_balance=starting_balance)
    cache = AccountCache(InMemoryBackend())
    settlement = PurchaseSettlement(
        cache,
        GracePeriodManager(config),
        TriggerEngine(config.thresholds),
        config=config,
        clock=lambda: NOW,
    )
    return settlement, cache


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class TestPackageCatalog:
    def test_default_packages(self) -> None:
        catalog = PackageCatalog()
        assert [p.id for p in catalog] == [
            "quick-boost", "starter-pack", "growth-pack", "power-pack",
        ]
        assert catalog.get("growth-pack").credits == 5000
        assert catalog.get("starter-pack").badge == "POPULAR"

    def test_price_per_credit(self) -> None:
        assert PackageCatalog().get("quick-boost").price_per_credit == pytest.approx(3.998)

    def test_unknown_package(self) -> None:
        assert PackageCatalog().get("mega-pack") is None

    def test_duplicate_id_rejected(self) -> None:
        with pytest.raises(ValueError):
            PackageCatalog([CreditPackage("a", "A", 1, 1), CreditPackage("a", "A", 2, 2)])

    def test_zero_credit_package_rejected(self) -> None:
        with pytest.raises(ValueError):
            PackageCatalog([CreditPackage("a", "A", 0, 100)])


# ---------------------------------------------------------------------------
# apply_purchase
# ---------------------------------------------------------------------------


class TestApplyPurchase:
    @pytest.mark.asyncio
    async def test_credits_package(self) -> None:
        settlement, _ = _settlement(starting_balance=500)
        result = await settlement.apply_purchase("t1", "starter-pack", "pay_1")
        assert result.status is SettlementStatus.OK
        assert result.balance_after == 2000
        assert result.credits == 1500

    @pytest.mark.asyncio
    async def test_redelivery_is_duplicate(self) -> None:
        settlement, cache = _settlement(starting_balance=500)
        first = await settlement.apply_purchase("t1", "quick-boost", "pay_123")
        second = await settlement.apply_purchase("t1", "quick-boost", "pay_123")
        assert second.status is SettlementStatus.DUPLICATE_PAYMENT
        assert second.balance_after == first.balance_after == 1000
        assert second.credits == 500
        assert (await cache.get("t1")).balance == 1000

    @pytest.mark.asyncio
    async def test_redelivery_after_window_found_in_log(self) -> None:
        settlement, cache = _settlement(starting_balance=500)
        await settlement.apply_purchase("t1", "quick-boost", "pay_123")
        account = await cache.get("t1")
        account.recent.clear()  # aged out of the idempotency window

        again = await settlement.apply_purchase("t1", "quick-boost", "pay_123")
        assert again.status is SettlementStatus.DUPLICATE_PAYMENT
        assert again.ok
        assert account.balance == 1000

    @pytest.mark.asyncio
    async def test_reference_stored_under_payment_scope(self) -> None:
        settlement, cache = _settlement(starting_balance=500)
        await settlement.apply_purchase("t1", "quick-boost", "pay_123")
        account = await cache.get("t1")
        assert account.find_transaction("pay_123") is None
        assert account.find_transaction("payment:pay_123").kind is TransactionKind.PURCHASE

    @pytest.mark.asyncio
    async def test_colliding_entry_is_conflict_not_duplicate(self, caplog) -> None:
        settlement, cache = _settlement(starting_balance=500)
        await settlement.apply_purchase("t1", "quick-boost", "seed")
        account = await cache.get("t1")
        account.apply_adjustment(-10, "payment:pay_9", NOW, "manual")

        with caplog.at_level(logging.ERROR, logger="creditgate.settlement"):
            result = await settlement.apply_purchase("t1", "starter-pack", "pay_9")
        assert result.status is SettlementStatus.REFERENCE_CONFLICT
        assert not result.ok
        assert result.credits == 0
        assert account.balance == 990
        assert "pay_9" in caplog.text

    @pytest.mark.asyncio
    async def test_unknown_package_logged_and_not_credited(self, caplog) -> None:
        settlement, cache = _settlement(starting_balance=500)
        with caplog.at_level(logging.ERROR, logger="creditgate.settlement"):
            result = await settlement.apply_purchase("t1", "mega-pack", "pay_9")
        assert result.status is SettlementStatus.UNKNOWN_PACKAGE
        assert not result.ok
        assert "mega-pack" in caplog.text
        assert await cache.get("t1") is None

    @pytest.mark.asyncio
    async def test_purchase_ends_grace(self) -> None:
        settlement, cache = _settlement(starting_balance=0)
        await settlement.apply_purchase("t1", "quick-boost", "seed")
        account = await cache.get("t1")
        account.balance = 0
        account.grace.state = GraceState.BLOCKED
        account.grace.started_at = (NOW - timedelta(days=2)).isoformat()
        account.grace.actions_used = 5

        await settlement.apply_purchase("t1", "quick-boost", "pay_2")
        assert account.grace.state is GraceState.ACTIVE
        assert account.grace.actions_used == 0

    @pytest.mark.asyncio
    async def test_purchase_rearms_recovered_triggers(self) -> None:
        settlement, cache = _settlement(starting_balance=50)
        await settlement.apply_purchase("t1", "quick-boost", "seed")
        account = await cache.get("t1")
        account.fired_triggers.update({2000, 1000, 500, 100})

        await settlement.apply_purchase("t1", "starter-pack", "pay_2")
        assert account.balance == 2050
        assert account.fired_triggers == set()
