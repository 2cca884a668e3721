"""MeteringEngine: one entry point for actions, purchases and tenant admin.

Each call names its tenant explicitly and runs as one serialized unit on
that tenant's account: roll periods, evaluate entitlement, debit or spend
grace, fire triggers, persist. Different tenants never contend.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from creditgate.account import TenantCreditAccount, billing_cycle_start
from creditgate.account_cache import AccountCache
from creditgate.backend import AccountBackend
from creditgate.backends import backend_from_config
from creditgate.config import CreditGateConfig
from creditgate.confirmation import verify_confirmation
from creditgate.constants import (
    CREDIT_STATUS_CRITICAL,
    CREDIT_STATUS_WARNING,
    CreditStatus,
    DenyReason,
    Tier,
    TransactionKind,
)
from creditgate.errors import ConcurrentModificationError, ConfirmationError, UnknownActionError
from creditgate.evaluator import EntitlementEvaluator
from creditgate.grace import GracePeriodManager
from creditgate.ledger import (
    ACTION_SCOPE,
    ADJUSTMENT_SCOPE,
    CreditLedger,
    CreditResult,
    LedgerStatus,
    debit_account,
    is_replay_of,
    new_account,
    scoped_key,
    utcnow,
)
from creditgate.registry import ActionCostDefinition, ActionCostRegistry, default_registry
from creditgate.settlement import PackageCatalog, PurchaseSettlement, SettlementResult
from creditgate.triggers import TriggerEngine, TriggerFired

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Denials that depend on the balance or grace state another instance may
# have changed since this one cached the account.
_STALE_SENSITIVE = frozenset({
    DenyReason.INSUFFICIENT_CREDITS,
    DenyReason.MINIMUM_BALANCE,
    DenyReason.GRACE_BLOCKED,
})


def credit_status(balance: int, tier: Tier) -> CreditStatus:
    """Coarse balance health. Paid tenants are unlimited."""
    if tier is Tier.PAID:
        return CreditStatus.UNLIMITED
    if balance <= 0:
        return CreditStatus.DEPLETED
    if balance <= CREDIT_STATUS_CRITICAL:
        return CreditStatus.CRITICAL
    if balance <= CREDIT_STATUS_WARNING:
        return CreditStatus.WARNING
    return CreditStatus.HEALTHY


@dataclass(frozen=True)
class ActionResult:
    """Outcome of one metered action, safe to hand to UI collaborators."""

    allowed: bool
    balance_after: int
    action_key: str
    cost: int = 0
    denied_reason: DenyReason | None = None
    detail: str | None = None
    triggers_fired: tuple[TriggerFired, ...] = field(default_factory=tuple)
    replayed: bool = False
    in_grace: bool = False
    shortfall: int = 0

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "allowed": self.allowed,
            "balance_after": self.balance_after,
            "action_key": self.action_key,
            "cost": self.cost,
            "triggers_fired": [t.to_dict() for t in self.triggers_fired],
        }
        if self.denied_reason is not None:
            data["denied_reason"] = self.denied_reason.value
        if self.detail:
            data["detail"] = self.detail
        if self.shortfall:
            data["shortfall"] = self.shortfall
        if self.replayed:
            data["replayed"] = True
        if self.in_grace:
            data["in_grace"] = True
        return data


class MeteringEngine:
    """Composes registry, evaluator, ledger, grace, triggers and settlement.

    ``clock`` returns an aware datetime; tests pin it to exercise period
    boundaries and grace expiry.
    """

    def __init__(
        self,
        backend: AccountBackend | None = None,
        *,
        config: CreditGateConfig | None = None,
        registry: ActionCostRegistry | None = None,
        catalog: PackageCatalog | None = None,
        cache: AccountCache | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or CreditGateConfig()
        self.config.validate()
        self.registry = registry or default_registry()
        self.cache = cache or AccountCache(backend or backend_from_config(self.config))
        self.grace = GracePeriodManager(self.config)
        self.triggers = TriggerEngine(self.config.thresholds)
        self.evaluator = EntitlementEvaluator(self.config, self.grace)
        self.ledger = CreditLedger(self.cache, self.registry, self.config, clock)
        self.settlement = PurchaseSettlement(
            self.cache, self.grace, self.triggers, catalog, self.config, clock,
        )
        self._clock = clock

    # -- plumbing ---------------------------------------------------------------

    def _create(
        self,
        tenant_id: str,
        now: datetime,
        *,
        tier: Tier = Tier.FREE,
        timezone_name: str = "UTC",
        billing_anchor_day: int | None = None,
    ) -> Callable[[], TenantCreditAccount]:
        def build() -> TenantCreditAccount:
            account = new_account(
                tenant_id, self.config, now,
                tier=tier, timezone_name=timezone_name, billing_anchor_day=billing_anchor_day,
            )
            self.grace.on_balance_change(account, now)
            return account
        return build

    async def _transact(
        self,
        tenant_id: str,
        fn: Callable[[TenantCreditAccount], tuple[T, bool]],
        now: datetime,
        create: Callable[[], TenantCreditAccount] | None = None,
    ) -> T:
        return await self.cache.transact(
            tenant_id,
            fn,
            create=create or self._create(tenant_id, now),
            attempts=self.config.retry_attempts,
            base_delay=self.config.retry_base_delay,
        )

    async def _current_balance(self, tenant_id: str) -> int:
        account = await self.cache.get(tenant_id)
        return 0 if account is None else account.balance

    # -- actions ----------------------------------------------------------------

    async def perform_action(
        self, tenant_id: str, action_key: str, idempotency_key: str,
    ) -> ActionResult:
        """Gate and meter one action. Denials are results, not exceptions.

        A denial that hinges on the balance or grace state is re-checked
        once against the stored account when the cached copy turns out to
        be stale (another instance settled a purchase, say).
        """
        try:
            definition = self.registry.resolve(action_key)
        except UnknownActionError:
            logger.error("Unknown action %r requested by %s; refused.", action_key, tenant_id)
            return ActionResult(
                allowed=False,
                balance_after=await self._current_balance(tenant_id),
                action_key=action_key,
                denied_reason=DenyReason.UNKNOWN_ACTION,
                detail=f"Unknown action: {action_key}",
            )

        result = await self._perform_once(tenant_id, definition, idempotency_key)
        if result.denied_reason in _STALE_SENSITIVE and await self.cache.reload(tenant_id):
            result = await self._perform_once(tenant_id, definition, idempotency_key)
        return result

    async def _perform_once(
        self, tenant_id: str, definition: ActionCostDefinition, idempotency_key: str,
    ) -> ActionResult:
        now = self._clock()
        key = scoped_key(ACTION_SCOPE, idempotency_key)

        def step(account: TenantCreditAccount) -> tuple[ActionResult, bool]:
            return self._perform(account, definition, key, now)

        try:
            return await self._transact(tenant_id, step, now)
        except ConcurrentModificationError:
            logger.error(
                "Gave up on %s for %s after %d conflicting updates.",
                definition.key, tenant_id, self.config.retry_attempts,
            )
            if definition.is_free:
                return ActionResult(
                    allowed=True,
                    balance_after=await self._current_balance(tenant_id),
                    action_key=definition.key,
                )
            return ActionResult(
                allowed=False,
                balance_after=await self._current_balance(tenant_id),
                action_key=definition.key,
                cost=definition.cost,
                denied_reason=DenyReason.EVALUATION_FAILED,
                detail="Account is busy; please retry.",
            )

    def _perform(
        self,
        account: TenantCreditAccount,
        definition: ActionCostDefinition,
        key: str,
        now: datetime,
    ) -> tuple[ActionResult, bool]:
        changed = account.roll_periods(now)
        changed = self.grace.refresh(account, now) or changed
        changed = bool(account.prune_recent(now, self.config.idempotency_retention)) or changed

        prior = account.find_transaction(key)
        if prior is not None:
            if not is_replay_of(prior, definition):
                logger.warning(
                    "Idempotency key %r for %s already recorded %s; refusing %s.",
                    key, account.tenant_id, prior.action_key or prior.kind.value, definition.key,
                )
                return ActionResult(
                    allowed=False,
                    balance_after=account.balance,
                    action_key=definition.key,
                    cost=definition.cost,
                    denied_reason=DenyReason.IDEMPOTENCY_CONFLICT,
                    detail="Idempotency key was already used for a different action.",
                ), changed
            return ActionResult(
                allowed=True,
                balance_after=prior.balance_after,
                action_key=definition.key,
                cost=max(0, -prior.delta),
                triggers_fired=tuple(
                    TriggerFired(threshold=t, balance_after=prior.balance_after)
                    for t in prior.triggers
                ),
                replayed=True,
                in_grace=prior.kind is TransactionKind.GRACE_USAGE,
            ), changed

        decision = self.evaluator.safe_evaluate(account, definition, now)
        if not decision.allowed:
            return ActionResult(
                allowed=False,
                balance_after=account.balance,
                action_key=definition.key,
                cost=definition.cost,
                denied_reason=decision.reason,
                detail=decision.detail,
            ), changed

        if decision.in_grace:
            account.record_usage(definition.key, key, now, kind=TransactionKind.GRACE_USAGE)
            account.count_usage(definition.counter_key)
            self.grace.consume(account, now)
            return ActionResult(
                allowed=True,
                balance_after=account.balance,
                action_key=definition.key,
                cost=definition.cost,
                in_grace=True,
            ), True

        if definition.is_free or not self.evaluator.is_metered(account):
            account.record_usage(definition.key, key, now)
            account.count_usage(definition.counter_key)
            return ActionResult(
                allowed=True, balance_after=account.balance, action_key=definition.key,
            ), True

        before = account.balance
        debit = debit_account(account, definition, key, now)
        if debit.status is LedgerStatus.INSUFFICIENT_CREDITS:
            return ActionResult(
                allowed=False,
                balance_after=debit.balance_after,
                action_key=definition.key,
                cost=definition.cost,
                denied_reason=DenyReason.INSUFFICIENT_CREDITS,
                detail=(
                    f"{definition.display_name} costs {definition.cost} credits; "
                    f"balance is {debit.balance_after}."
                ),
                shortfall=debit.shortfall,
            ), changed

        account.count_usage(definition.counter_key)
        fired = self.triggers.check_triggers(account, before, debit.balance_after)
        if debit.transaction is not None:
            debit.transaction.triggers = [f.threshold for f in fired]
        self.grace.on_balance_change(account, now)
        return ActionResult(
            allowed=True,
            balance_after=debit.balance_after,
            action_key=definition.key,
            cost=definition.cost,
            triggers_fired=tuple(fired),
        ), True

    # -- purchases --------------------------------------------------------------

    async def apply_purchase(
        self, tenant_id: str, package_id: str, payment_reference: str,
    ) -> SettlementResult:
        return await self.settlement.apply_purchase(tenant_id, package_id, payment_reference)

    async def settle_confirmation(self, token: str) -> SettlementResult:
        """Verify a signed purchase confirmation, then settle it."""
        if not self.config.confirmation_public_key:
            raise ConfirmationError("No confirmation public key configured.")
        confirmation = verify_confirmation(token, self.config.confirmation_public_key)
        return await self.apply_purchase(
            confirmation.tenant_id, confirmation.package_id, confirmation.payment_reference,
        )

    # -- tenant administration --------------------------------------------------

    async def provision_tenant(
        self,
        tenant_id: str,
        *,
        tier: Tier = Tier.FREE,
        timezone_name: str = "UTC",
        billing_anchor_day: int | None = None,
    ) -> dict[str, Any]:
        """Create the tenant's account with its starting allocation.

        Idempotent: an existing account is returned unchanged.
        """
        now = self._clock()
        create = self._create(
            tenant_id, now,
            tier=tier, timezone_name=timezone_name, billing_anchor_day=billing_anchor_day,
        )
        return await self._transact(
            tenant_id, lambda account: (self._summarize(account, now), False), now, create,
        )

    async def _set_active(self, tenant_id: str, active: bool) -> bool:
        now = self._clock()

        def step(account: TenantCreditAccount) -> tuple[bool, bool]:
            if account.active is active:
                return False, False
            account.active = active
            logger.info("Tenant %s %s.", tenant_id, "reactivated" if active else "deactivated")
            return True, True

        return await self._transact(tenant_id, step, now)

    async def deactivate_tenant(self, tenant_id: str) -> bool:
        return await self._set_active(tenant_id, False)

    async def reactivate_tenant(self, tenant_id: str) -> bool:
        return await self._set_active(tenant_id, True)

    async def set_tier(self, tenant_id: str, tier: Tier) -> dict[str, Any]:
        now = self._clock()

        def step(account: TenantCreditAccount) -> tuple[dict[str, Any], bool]:
            changed = account.tier is not tier
            if changed:
                logger.info("Tenant %s moved from %s to %s.", tenant_id, account.tier.value, tier.value)
                account.tier = tier
            return self._summarize(account, now), changed

        return await self._transact(tenant_id, step, now)

    async def adjust_credits(
        self, tenant_id: str, amount: int, reason: str, idempotency_key: str,
    ) -> CreditResult:
        """Admin adjustment (signed). The balance is clamped at zero."""
        if amount == 0:
            raise ValueError("adjustment amount must be non-zero")
        now = self._clock()
        key = scoped_key(ADJUSTMENT_SCOPE, idempotency_key)

        def step(account: TenantCreditAccount) -> tuple[CreditResult, bool]:
            pruned = account.prune_recent(now, self.config.idempotency_retention)
            prior = account.find_transaction(key)
            if prior is not None:
                return CreditResult(
                    status=LedgerStatus.DUPLICATE,
                    balance_after=prior.balance_after,
                    transaction=prior,
                ), bool(pruned)
            before = account.balance
            txn = account.apply_adjustment(amount, key, now, reason)
            if txn.delta < 0:
                txn.triggers = [
                    f.threshold for f in self.triggers.check_triggers(account, before, account.balance)
                ]
            else:
                self.triggers.clear_recovered(account)
            self.grace.on_balance_change(account, now)
            logger.info(
                "Adjusted %s by %d (requested %d): %s.", tenant_id, txn.delta, amount, reason,
            )
            return CreditResult(
                status=LedgerStatus.OK, balance_after=txn.balance_after, transaction=txn,
            ), True

        return await self._transact(tenant_id, step, now)

    async def refresh_free_allocation(self, tenant_id: str) -> CreditResult | None:
        """Monthly free-tier grant: free credits become allocation plus rollover.

        Only the free part of the balance is replaced; purchased credits
        carry over in full. Rollover is a percentage of unspent free credits.

        Keyed ``free_grant:<tenant>:<cycle-start>``, so running it twice in
        one billing cycle is a duplicate. Paid tenants are skipped (None).
        """
        now = self._clock()
        rollover_pct = self.config.free_rollover_percent

        def step(account: TenantCreditAccount) -> tuple[CreditResult | None, bool]:
            if account.tier is not Tier.FREE:
                return None, False
            changed = account.roll_periods(now)
            changed = bool(account.prune_recent(now, self.config.idempotency_retention)) or changed
            cycle = billing_cycle_start(account.local_date(now), account.billing_anchor_day)
            key = f"free_grant:{tenant_id}:{cycle.isoformat()}"
            prior = account.find_transaction(key)
            if prior is not None:
                return CreditResult(
                    status=LedgerStatus.DUPLICATE,
                    balance_after=prior.balance_after,
                    transaction=prior,
                ), changed

            rollover = math.floor(account.free_balance * rollover_pct / 100)
            txn = account.apply_allocation(
                self.config.free_monthly_credits + rollover,
                key,
                now,
                f"Monthly free allocation ({rollover} rolled over)",
            )
            self.triggers.clear_recovered(account)
            self.grace.on_balance_change(account, now)
            logger.info(
                "Free allocation for %s: balance %d (cycle %s).",
                tenant_id, txn.balance_after, cycle.isoformat(),
            )
            return CreditResult(
                status=LedgerStatus.OK, balance_after=txn.balance_after, transaction=txn,
            ), True

        return await self._transact(tenant_id, step, now)

    # -- queries ----------------------------------------------------------------

    async def get_balance(self, tenant_id: str) -> int | None:
        """Current balance, or None for a tenant never provisioned."""
        account = await self.cache.get(tenant_id)
        return None if account is None else account.balance

    def _summarize(self, account: TenantCreditAccount, now: datetime) -> dict[str, Any]:
        deadline = self.grace.deadline(account)
        return {
            "tenant_id": account.tenant_id,
            "balance": account.balance,
            "free_balance": account.free_balance,
            "purchased_balance": account.purchased_balance,
            "tier": account.tier.value,
            "active": account.active,
            "credit_status": credit_status(account.balance, account.tier).value,
            "grace": {
                "state": self.grace.effective_state(account, now).value,
                "started_at": account.grace.started_at,
                "actions_used": account.grace.actions_used,
                "deadline": deadline.isoformat() if deadline else None,
            },
            "daily_counters": dict(account.daily_counters),
            "monthly_counters": dict(account.monthly_counters),
            "credits_used_today": account.credits_used_today,
            "credits_used_this_month": account.credits_used_this_month,
            "total_credited": account.total_credited,
            "total_consumed": account.total_consumed,
            "fired_triggers": sorted(account.fired_triggers, reverse=True),
        }

    async def summary(self, tenant_id: str) -> dict[str, Any] | None:
        account = await self.cache.get(tenant_id)
        if account is None:
            return None
        return self._summarize(account, self._clock())

    # -- sweeps -----------------------------------------------------------------

    async def _sweep(self, fn: Callable[[TenantCreditAccount], bool]) -> int:
        changed = 0
        for tenant_id in self.cache.cached_tenants():
            async with self.cache.locked(tenant_id) as account:
                if account is not None and fn(account):
                    self.cache.mark_dirty(tenant_id)
                    changed += 1
        return changed

    async def reset_counters(self, now: datetime | None = None) -> int:
        """Roll daily/monthly counters for cached tenants. Idempotent."""
        at = now or self._clock()
        count = await self._sweep(lambda account: account.roll_periods(at))
        if count:
            logger.info("Counter reset sweep rolled %d account(s).", count)
        return count

    async def expire_grace_periods(self, now: datetime | None = None) -> int:
        """Block cached GRACE tenants whose window closed. Idempotent."""
        at = now or self._clock()
        return await self._sweep(lambda account: self.grace.refresh(account, at))

    # -- lifecycle --------------------------------------------------------------

    async def start(self) -> None:
        await self.cache.start_background_flush()

    async def stop(self) -> None:
        await self.cache.stop()
