"""Purchase settlement: credit packages and idempotent crediting.

The payment reference from the payment collaborator is the idempotency
key, so webhook redelivery returns the first result instead of crediting
twice. References share no key space with action keys.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from creditgate.account import CreditTransaction, TenantCreditAccount
from creditgate.account_cache import AccountCache
from creditgate.config import CreditGateConfig
from creditgate.constants import TransactionKind
from creditgate.grace import GracePeriodManager
from creditgate.ledger import (
    PAYMENT_SCOPE,
    LedgerStatus,
    credit_account,
    new_account,
    scoped_key,
    utcnow,
)
from creditgate.triggers import TriggerEngine

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Packages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CreditPackage:
    id: str
    name: str
    credits: int
    price_minor_units: int  # cents
    badge: str | None = None

    @property
    def price_per_credit(self) -> float:
        """Price of one credit in minor units."""
        return self.price_minor_units / self.credits

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "credits": self.credits,
            "price_minor_units": self.price_minor_units,
            "price_per_credit": round(self.price_per_credit, 4),
            "badge": self.badge,
        }


DEFAULT_PACKAGES: tuple[CreditPackage, ...] = (
    CreditPackage("quick-boost", "Quick Boost", 500, 1999),
    CreditPackage("starter-pack", "Starter Pack", 1500, 4999, badge="POPULAR"),
    CreditPackage("growth-pack", "Growth Pack", 5000, 12999, badge="BEST VALUE"),
    CreditPackage("power-pack", "Power Pack", 15000, 29999),
)


class PackageCatalog:
    def __init__(self, packages: Iterable[CreditPackage] = DEFAULT_PACKAGES) -> None:
        self._packages: dict[str, CreditPackage] = {}
        for package in packages:
            if package.id in self._packages:
                raise ValueError(f"Duplicate package id: {package.id}")
            if package.credits <= 0 or package.price_minor_units < 0:
                raise ValueError(f"Invalid credits or price for package {package.id}")
            self._packages[package.id] = package

    def get(self, package_id: str) -> CreditPackage | None:
        return self._packages.get(package_id)

    def __iter__(self) -> Iterator[CreditPackage]:
        return iter(self._packages.values())

    def __len__(self) -> int:
        return len(self._packages)


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------


class SettlementStatus(str, Enum):
    OK = "ok"
    DUPLICATE_PAYMENT = "duplicate_payment"
    UNKNOWN_PACKAGE = "unknown_package"
    REFERENCE_CONFLICT = "reference_conflict"


@dataclass(frozen=True)
class SettlementResult:
    status: SettlementStatus
    payment_reference: str
    package_id: str
    balance_after: int | None = None
    credits: int = 0

    @property
    def ok(self) -> bool:
        return self.status in (SettlementStatus.OK, SettlementStatus.DUPLICATE_PAYMENT)


class PurchaseSettlement:
    """Credits purchased packages and notifies grace and trigger state.

    Payment references are stored as ``payment:<reference>``. References
    older than the account's idempotency window are found in the
    backend's transaction log, so a late redelivery still settles once.
    """

    def __init__(
        self,
        cache: AccountCache,
        grace: GracePeriodManager,
        triggers: TriggerEngine,
        catalog: PackageCatalog | None = None,
        config: CreditGateConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._cache = cache
        self._grace = grace
        self._triggers = triggers
        self._catalog = catalog or PackageCatalog()
        self._config = config or CreditGateConfig()
        self._clock = clock

    @property
    def catalog(self) -> PackageCatalog:
        return self._catalog

    def settle_account(
        self,
        account: TenantCreditAccount,
        package: CreditPackage,
        payment_reference: str,
        now: datetime,
        *,
        logged: CreditTransaction | None = None,
    ) -> SettlementResult:
        """Credit ``package`` to a locked account.

        ``logged`` is the backend log entry for this reference, if any.
        """
        key = scoped_key(PAYMENT_SCOPE, payment_reference)
        prior = account.find_transaction(key) or logged
        if prior is not None and prior.kind is TransactionKind.PURCHASE:
            if prior.delta != package.credits:
                logger.warning(
                    "Payment %s for %s was settled as %d credits; redelivered as %s.",
                    payment_reference, account.tenant_id, prior.delta, package.id,
                )
            logger.info(
                "Payment %s already settled for %s; returning prior result.",
                payment_reference, account.tenant_id,
            )
            return SettlementResult(
                status=SettlementStatus.DUPLICATE_PAYMENT,
                payment_reference=payment_reference,
                package_id=package.id,
                balance_after=prior.balance_after,
                credits=prior.delta,
            )

        credit = None
        if prior is None:
            credit = credit_account(
                account, package.credits, f"Purchase: {package.name}", key, now,
            )
        if credit is None or credit.status is LedgerStatus.CONFLICT:
            logger.error(
                "Payment reference %s for %s collides with an existing %s entry; "
                "not credited.",
                payment_reference, account.tenant_id,
                prior.kind.value if prior else "ledger",
            )
            return SettlementResult(
                status=SettlementStatus.REFERENCE_CONFLICT,
                payment_reference=payment_reference,
                package_id=package.id,
                balance_after=account.balance,
            )

        self._grace.on_balance_change(account, now)
        self._triggers.clear_recovered(account)
        logger.info(
            "Settled %s (%d credits) for %s; balance %d.",
            payment_reference, package.credits, account.tenant_id, credit.balance_after,
        )
        return SettlementResult(
            status=SettlementStatus.OK,
            payment_reference=payment_reference,
            package_id=package.id,
            balance_after=credit.balance_after,
            credits=package.credits,
        )

    async def apply_purchase(
        self, tenant_id: str, package_id: str, payment_reference: str,
    ) -> SettlementResult:
        package = self._catalog.get(package_id)
        if package is None:
            logger.error(
                "Unknown package %r in payment %s for %s; not credited.",
                package_id, payment_reference, tenant_id,
            )
            return SettlementResult(
                status=SettlementStatus.UNKNOWN_PACKAGE,
                payment_reference=payment_reference,
                package_id=package_id,
            )

        now = self._clock()
        logged = await self._cache.logged_transaction(
            tenant_id, scoped_key(PAYMENT_SCOPE, payment_reference),
        )

        def step(account: TenantCreditAccount) -> tuple[SettlementResult, bool]:
            pruned = account.prune_recent(now, self._config.idempotency_retention)
            result = self.settle_account(account, package, payment_reference, now, logged=logged)
            return result, bool(pruned) or result.status is SettlementStatus.OK

        return await self._cache.transact(
            tenant_id,
            step,
            create=lambda: new_account(tenant_id, self._config, now),
            attempts=self._config.retry_attempts,
            base_delay=self._config.retry_base_delay,
        )
