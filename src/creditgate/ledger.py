"""Credit ledger: atomic debit and credit with idempotency.

The sync ``*_account`` functions do the bookkeeping on an account the
caller already holds under ``AccountCache.locked()``; the async wrappers
take the lock, provision unknown tenants and persist. ``MeteringEngine``
composes the sync halves with entitlement checks and triggers.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from creditgate.account import CreditTransaction, TenantCreditAccount
from creditgate.account_cache import AccountCache
from creditgate.config import CreditGateConfig
from creditgate.constants import Tier, TransactionKind
from creditgate.registry import ActionCostDefinition, ActionCostRegistry

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Caller-supplied idempotency keys are stored under a scope prefix, so a
# caller can never name a system entry (``initial_grant:<tenant>``,
# ``free_grant:<tenant>:<cycle>``) or another kind of caller key.
ACTION_SCOPE = "action"
PAYMENT_SCOPE = "payment"
ADJUSTMENT_SCOPE = "adjustment"
CREDIT_SCOPE = "credit"


def scoped_key(scope: str, idempotency_key: str) -> str:
    return f"{scope}:{idempotency_key}"


def is_replay_of(prior: CreditTransaction, definition: ActionCostDefinition) -> bool:
    """True when ``prior`` records this same action, so its result can be replayed."""
    return (
        prior.kind in (TransactionKind.USAGE, TransactionKind.GRACE_USAGE)
        and prior.action_key == definition.key
    )


class LedgerStatus(str, Enum):
    OK = "ok"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"  # zero-cost, no transaction
    CONFLICT = "conflict"  # key already used for something else


@dataclass(frozen=True)
class DebitResult:
    status: LedgerStatus
    balance_after: int
    cost: int = 0
    shortfall: int = 0
    transaction: CreditTransaction | None = None

    @property
    def ok(self) -> bool:
        return self.status in (LedgerStatus.OK, LedgerStatus.SKIPPED)


@dataclass(frozen=True)
class CreditResult:
    status: LedgerStatus
    balance_after: int
    transaction: CreditTransaction | None = None


# ---------------------------------------------------------------------------
# Bookkeeping on a locked account
# ---------------------------------------------------------------------------


def debit_account(
    account: TenantCreditAccount,
    definition: ActionCostDefinition,
    idempotency_key: str,
    now: datetime,
) -> DebitResult:
    """Subtract the action's cost if affordable. Never leaves balance < 0.

    ``idempotency_key`` is the scoped key. A key already used for a
    different action (or for a credit) is a CONFLICT and changes nothing.
    """
    prior = account.find_transaction(idempotency_key)
    if prior is not None:
        if not is_replay_of(prior, definition):
            logger.warning(
                "Idempotency key %r for %s already recorded a %s of %s; refusing %s.",
                idempotency_key, account.tenant_id, prior.kind.value,
                prior.action_key or "credits", definition.key,
            )
            return DebitResult(
                status=LedgerStatus.CONFLICT,
                balance_after=account.balance,
                cost=definition.cost,
            )
        return DebitResult(
            status=LedgerStatus.DUPLICATE,
            balance_after=prior.balance_after,
            cost=-prior.delta,
            transaction=prior,
        )

    if definition.is_free:
        return DebitResult(status=LedgerStatus.SKIPPED, balance_after=account.balance)

    txn = account.apply_debit(definition.key, definition.cost, idempotency_key, now)
    if txn is None:
        return DebitResult(
            status=LedgerStatus.INSUFFICIENT_CREDITS,
            balance_after=account.balance,
            cost=definition.cost,
            shortfall=definition.cost - account.balance,
        )
    return DebitResult(
        status=LedgerStatus.OK,
        balance_after=txn.balance_after,
        cost=definition.cost,
        transaction=txn,
    )


def credit_account(
    account: TenantCreditAccount,
    amount: int,
    reason: str,
    idempotency_key: str,
    now: datetime,
    *,
    kind: TransactionKind = TransactionKind.PURCHASE,
) -> CreditResult:
    """Add ``amount`` credits once per (scoped) idempotency key.

    A key already used for a different kind of entry is a CONFLICT.
    """
    if amount <= 0:
        raise ValueError(f"credit amount must be positive, got {amount}")

    prior = account.find_transaction(idempotency_key)
    if prior is not None:
        if prior.kind is not kind:
            return CreditResult(status=LedgerStatus.CONFLICT, balance_after=account.balance)
        return CreditResult(
            status=LedgerStatus.DUPLICATE, balance_after=prior.balance_after, transaction=prior,
        )
    txn = account.apply_credit(amount, idempotency_key, now, kind=kind, reason=reason)
    return CreditResult(status=LedgerStatus.OK, balance_after=txn.balance_after, transaction=txn)


def new_account(
    tenant_id: str,
    config: CreditGateConfig,
    now: datetime,
    *,
    tier: Tier = Tier.FREE,
    timezone_name: str = "UTC",
    billing_anchor_day: int | None = None,
) -> TenantCreditAccount:
    """Build a fresh account holding the starting allocation.

    The allocation is a free ``initial_grant`` transaction keyed
    ``initial_grant:<tenant>``, so the log always sums to the balance.
    """
    account = TenantCreditAccount(
        tenant_id=tenant_id,
        tier=tier,
        timezone=timezone_name,
        created_at=now.isoformat(),
    )
    account.billing_anchor_day = billing_anchor_day or account.local_date(now).day
    account.roll_periods(now)
    if config.starting_balance > 0:
        account.apply_credit(
            config.starting_balance,
            f"initial_grant:{tenant_id}",
            now,
            kind=TransactionKind.INITIAL_GRANT,
            reason="Starting allocation",
        )
    logger.info(
        "Provisioned %s account for %s with %d credits.",
        tier.value, tenant_id, account.balance,
    )
    return account


# ---------------------------------------------------------------------------
# CreditLedger
# ---------------------------------------------------------------------------


class CreditLedger:
    """Tenant-scoped debit/credit against the account cache.

    Serialization is per tenant (the cache lock), never global. Both
    operations persist before returning.
    """

    def __init__(
        self,
        cache: AccountCache,
        registry: ActionCostRegistry,
        config: CreditGateConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._cache = cache
        self._registry = registry
        self._config = config or CreditGateConfig()
        self._clock = clock

    def _create(self, tenant_id: str, now: datetime) -> Callable[[], TenantCreditAccount]:
        return lambda: new_account(tenant_id, self._config, now)

    async def debit(
        self, tenant_id: str, action_key: str, idempotency_key: str,
    ) -> DebitResult:
        """Debit the registered cost of ``action_key``.

        Raises UnknownActionError for keys the registry does not know.
        """
        definition = self._registry.resolve(action_key)
        now = self._clock()
        key = scoped_key(ACTION_SCOPE, idempotency_key)

        def step(account: TenantCreditAccount) -> tuple[DebitResult, bool]:
            pruned = account.prune_recent(now, self._config.idempotency_retention)
            result = debit_account(account, definition, key, now)
            return result, bool(pruned) or result.status is LedgerStatus.OK

        return await self._cache.transact(
            tenant_id,
            step,
            create=self._create(tenant_id, now),
            attempts=self._config.retry_attempts,
            base_delay=self._config.retry_base_delay,
        )

    async def credit(
        self, tenant_id: str, amount: int, reason: str, idempotency_key: str,
    ) -> CreditResult:
        if amount <= 0:
            raise ValueError(f"credit amount must be positive, got {amount}")
        now = self._clock()
        key = scoped_key(CREDIT_SCOPE, idempotency_key)

        def step(account: TenantCreditAccount) -> tuple[CreditResult, bool]:
            pruned = account.prune_recent(now, self._config.idempotency_retention)
            result = credit_account(account, amount, reason, key, now)
            return result, bool(pruned) or result.status is LedgerStatus.OK

        return await self._cache.transact(
            tenant_id,
            step,
            create=self._create(tenant_id, now),
            attempts=self._config.retry_attempts,
            base_delay=self._config.retry_base_delay,
        )

    async def balance(self, tenant_id: str) -> int | None:
        account = await self._cache.get(tenant_id)
        return None if account is None else account.balance
