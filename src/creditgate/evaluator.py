"""Entitlement evaluation: may this tenant do X right now?

Runs before the ledger is touched and only reads the loaded account
snapshot. Checks short-circuit in a fixed order: tenant status, blocked
features, free-tier caps, minimum balance, grace state.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime

from creditgate.account import TenantCreditAccount, billing_cycle_start
from creditgate.config import CreditGateConfig
from creditgate.constants import DenyReason, Tier
from creditgate.grace import GracePeriodManager
from creditgate.registry import ActionCostDefinition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: DenyReason | None = None
    detail: str | None = None
    in_grace: bool = False

    @classmethod
    def allow(cls, *, in_grace: bool = False) -> Decision:
        return cls(allowed=True, in_grace=in_grace)

    @classmethod
    def deny(cls, reason: DenyReason, detail: str | None = None) -> Decision:
        return cls(allowed=False, reason=reason, detail=detail)


class EntitlementEvaluator:
    def __init__(self, config: CreditGateConfig, grace: GracePeriodManager) -> None:
        self._config = config
        self._grace = grace

    def is_metered(self, account: TenantCreditAccount) -> bool:
        """Whether actions for this tenant are priced at all."""
        return account.tier is Tier.FREE or self._config.meter_paid_tier

    def requires_confirmation(self, definition: ActionCostDefinition) -> bool:
        """High-cost actions the UI should confirm before running."""
        return definition.cost >= self._config.high_cost_threshold

    def required_balance(self, cost: int) -> int:
        """Balance needed to start a full-balance action: cost plus buffer."""
        pct = math.ceil(cost * self._config.min_balance_buffer_percent / 100)
        return cost + max(self._config.min_balance_buffer_floor, pct)

    def _usage(
        self, account: TenantCreditAccount, counter_key: str, now: datetime, *, daily: bool,
    ) -> int:
        """Counter value for the period containing ``now`` (0 if it rolled over)."""
        today = account.local_date(now)
        if daily:
            if account.daily_period != today.isoformat():
                return 0
            return account.daily_counters.get(counter_key, 0)
        cycle = billing_cycle_start(today, account.billing_anchor_day).isoformat()
        if account.monthly_period != cycle:
            return 0
        return account.monthly_counters.get(counter_key, 0)

    def evaluate(
        self,
        account: TenantCreditAccount,
        definition: ActionCostDefinition,
        now: datetime,
    ) -> Decision:
        if not account.active:
            return Decision.deny(DenyReason.TENANT_INACTIVE, "Tenant account is deactivated.")

        # 1. Blocked features for this tier.
        blocked = self._config.blocked_categories.get(account.tier.value, ())
        if (account.tier is Tier.FREE and definition.blocked_on_free_tier) or (
            definition.category.value in blocked
        ):
            logger.info(
                "Feature %s not available on %s tier for %s.",
                definition.key, account.tier.value, account.tenant_id,
            )
            return Decision.deny(
                DenyReason.FEATURE_NOT_AVAILABLE,
                f"{definition.display_name} is not available on the {account.tier.value} tier.",
            )

        # 2. Free-tier caps, counted even for zero-cost actions.
        if account.tier is Tier.FREE:
            key = definition.counter_key
            for daily, caps, label in (
                (True, self._config.daily_caps, "daily"),
                (False, self._config.monthly_caps, "monthly"),
            ):
                cap = caps.get(key)
                if cap is None:
                    continue
                used = self._usage(account, key, now, daily=daily)
                if used >= cap:
                    logger.info(
                        "Cap exceeded for %s: %s %s=%d/%d.",
                        account.tenant_id, label, key, used, cap,
                    )
                    return Decision.deny(
                        DenyReason.CAP_EXCEEDED,
                        f"Free tier {label} limit reached for {key} ({used}/{cap}).",
                    )

        if definition.is_free or not self.is_metered(account):
            return Decision.allow()

        # 3. Full-balance actions must be affordable up front.
        if definition.requires_full_balance:
            needed = self.required_balance(definition.cost)
            if account.balance < needed:
                return Decision.deny(
                    DenyReason.MINIMUM_BALANCE,
                    f"{definition.display_name} needs a balance of {needed} "
                    f"(cost {definition.cost} plus buffer); you have {account.balance}.",
                )

        # 4. Grace state.
        check = self._grace.check(account, definition, now)
        if not check.allowed:
            return Decision.deny(check.reason or DenyReason.GRACE_BLOCKED, check.detail)
        return Decision.allow(in_grace=check.in_grace)

    def safe_evaluate(
        self,
        account: TenantCreditAccount,
        definition: ActionCostDefinition,
        now: datetime,
    ) -> Decision:
        """``evaluate()`` that never raises.

        An unexpected fault denies anything with a cost and allows free
        actions, so a bug can neither hand out paid work nor block viewing.
        """
        try:
            return self.evaluate(account, definition, now)
        except Exception:
            logger.exception(
                "Entitlement evaluation failed for %s/%s.", account.tenant_id, definition.key,
            )
            if definition.is_free:
                return Decision.allow()
            return Decision.deny(
                DenyReason.EVALUATION_FAILED, "Entitlement check failed; please retry.",
            )
