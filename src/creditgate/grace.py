"""Grace period state machine for tenants whose balance reached zero.

    ACTIVE  --balance hits 0-------------------------->  GRACE
    GRACE   --timer expires or action budget spent---->  BLOCKED
    GRACE / BLOCKED  --credit brings balance above 0-->  ACTIVE

While in GRACE a limited number of low-cost actions are let through
without a debit (recorded as zero-delta ``grace_usage`` transactions).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

from creditgate.account import TenantCreditAccount
from creditgate.config import CreditGateConfig
from creditgate.constants import DenyReason, GraceState
from creditgate.registry import ActionCostDefinition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GraceCheck:
    """Outcome of the grace check for one paid action."""

    allowed: bool
    in_grace: bool = False  # allowed only because of the grace window
    reason: DenyReason | None = None
    detail: str | None = None


_NOT_NEEDED = GraceCheck(allowed=True)


class GracePeriodManager:
    def __init__(self, config: CreditGateConfig) -> None:
        self._duration = timedelta(hours=config.grace_duration_hours)
        self._budget = config.grace_action_budget
        self._max_cost = config.grace_max_action_cost
        self._excluded_categories = frozenset(config.grace_excluded_categories)
        self._excluded_actions = frozenset(config.grace_excluded_actions)
        self._exempt_actions = frozenset(config.blocked_exempt_actions)

    # -- queries ----------------------------------------------------------------

    def deadline(self, account: TenantCreditAccount) -> datetime | None:
        started = account.grace.started_at
        if account.grace.state is not GraceState.GRACE or not started:
            return None
        return datetime.fromisoformat(started) + self._duration

    def is_exhausted(self, account: TenantCreditAccount, now: datetime) -> bool:
        """True if a GRACE account has run out of time or budget."""
        if account.grace.state is not GraceState.GRACE:
            return False
        if account.grace.actions_used >= self._budget:
            return True
        deadline = self.deadline(account)
        return deadline is not None and now >= deadline

    def effective_state(self, account: TenantCreditAccount, now: datetime) -> GraceState:
        if self.is_exhausted(account, now):
            return GraceState.BLOCKED
        return account.grace.state

    def check(
        self, account: TenantCreditAccount, definition: ActionCostDefinition, now: datetime,
    ) -> GraceCheck:
        """Decide whether grace state permits ``definition``. Pure."""
        if definition.is_free:
            return _NOT_NEEDED

        state = self.effective_state(account, now)
        if state is GraceState.ACTIVE:
            return _NOT_NEEDED

        if state is GraceState.BLOCKED:
            if definition.key in self._exempt_actions:
                return _NOT_NEEDED
            return GraceCheck(
                allowed=False,
                reason=DenyReason.GRACE_BLOCKED,
                detail="Credits depleted and grace period over. Purchase credits to continue.",
            )

        # GRACE: the ledger handles anything the balance still covers.
        if account.balance >= definition.cost:
            return _NOT_NEEDED
        if (
            definition.category.value in self._excluded_categories
            or definition.key in self._excluded_actions
        ):
            return GraceCheck(
                allowed=False,
                reason=DenyReason.INSUFFICIENT_CREDITS,
                detail=f"{definition.display_name} is not available during the grace period.",
            )
        if definition.cost > self._max_cost:
            return GraceCheck(
                allowed=False,
                reason=DenyReason.INSUFFICIENT_CREDITS,
                detail=(
                    f"{definition.display_name} costs {definition.cost} credits; "
                    f"grace period covers actions up to {self._max_cost}."
                ),
            )
        return GraceCheck(allowed=True, in_grace=True)

    # -- transitions ------------------------------------------------------------

    def refresh(self, account: TenantCreditAccount, now: datetime) -> bool:
        """Move an exhausted GRACE account to BLOCKED. Returns True on change."""
        if not self.is_exhausted(account, now):
            return False
        account.grace.state = GraceState.BLOCKED
        logger.info(
            "Grace period ended for %s (%d/%d actions used).",
            account.tenant_id, account.grace.actions_used, self._budget,
        )
        return True

    def on_balance_change(self, account: TenantCreditAccount, now: datetime) -> bool:
        """Apply balance-driven transitions. Returns True on change."""
        state = account.grace.state
        if account.balance > 0 and state is not GraceState.ACTIVE:
            account.grace.reset()
            logger.info("Tenant %s back to active (balance %d).", account.tenant_id, account.balance)
            return True
        if account.balance == 0 and state is GraceState.ACTIVE:
            account.grace.state = GraceState.GRACE
            account.grace.started_at = now.isoformat()
            account.grace.actions_used = 0
            logger.info(
                "Tenant %s reached zero balance; grace period started (%s).",
                account.tenant_id, self._duration,
            )
            return True
        return False

    def consume(self, account: TenantCreditAccount, now: datetime) -> None:
        """Spend one grace action; the last one moves the account to BLOCKED."""
        account.grace.actions_used += 1
        self.refresh(account, now)

    def expire_overdue(
        self, accounts: Iterable[TenantCreditAccount], now: datetime,
    ) -> int:
        """Sweep: block every GRACE account whose window has closed."""
        return sum(1 for account in accounts if self.refresh(account, now))
