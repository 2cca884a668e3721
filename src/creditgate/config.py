"""creditgate configuration: plain frozen dataclass, no pydantic.

The host application constructs this from its own settings (env vars,
pydantic-settings, etc.) and passes it to the engine.
"""

from dataclasses import dataclass, field
from datetime import timedelta

from creditgate.constants import (
    DEFAULT_THRESHOLDS,
    FREE_TIER_MONTHLY_CREDITS,
    GRACE_ACTION_BUDGET,
    GRACE_DURATION_HOURS,
    GRACE_MAX_ACTION_COST,
    HIGH_COST_THRESHOLD,
    IDEMPOTENCY_RETENTION_DAYS,
    MIN_BALANCE_BUFFER_FLOOR,
    MIN_BALANCE_BUFFER_PERCENT,
    STARTING_FREE_BALANCE,
)


def _default_daily_caps() -> dict[str, int]:
    return {
        "menu_creations": 1,
        "manual_orders": 3,
        "sms": 2,
        "emails": 5,
        "pos_sales": 5,
        "bulk_operations": 1,
    }


def _default_monthly_caps() -> dict[str, int]:
    return {
        "invoice_creations": 3,
        "custom_reports": 0,
        "ai_features": 0,
    }


def _default_blocked_categories() -> dict[str, tuple[str, ...]]:
    return {"free": ("ai", "api"), "paid": ()}


@dataclass(frozen=True)
class CreditGateConfig:
    starting_balance: int = STARTING_FREE_BALANCE
    free_monthly_credits: int = FREE_TIER_MONTHLY_CREDITS
    free_rollover_percent: int = 0

    # Free-tier caps keyed by quota group (see ActionCostDefinition.quota_group).
    daily_caps: dict[str, int] = field(default_factory=_default_daily_caps)
    monthly_caps: dict[str, int] = field(default_factory=_default_monthly_caps)
    blocked_categories: dict[str, tuple[str, ...]] = field(
        default_factory=_default_blocked_categories
    )

    grace_duration_hours: float = GRACE_DURATION_HOURS
    grace_action_budget: int = GRACE_ACTION_BUDGET
    grace_max_action_cost: int = GRACE_MAX_ACTION_COST
    grace_excluded_categories: tuple[str, ...] = ("exports", "ai")
    grace_excluded_actions: tuple[str, ...] = ("send_bulk_sms", "send_bulk_email")
    blocked_exempt_actions: tuple[str, ...] = ()

    min_balance_buffer_floor: int = MIN_BALANCE_BUFFER_FLOOR
    min_balance_buffer_percent: int = MIN_BALANCE_BUFFER_PERCENT

    thresholds: tuple[int, ...] = DEFAULT_THRESHOLDS
    high_cost_threshold: int = HIGH_COST_THRESHOLD
    meter_paid_tier: bool = False

    retry_attempts: int = 3
    retry_base_delay: float = 0.05
    idempotency_retention_days: int = IDEMPOTENCY_RETENTION_DAYS

    confirmation_public_key: str | None = None
    backend_url: str | None = None
    backend_api_key: str | None = None

    @property
    def idempotency_retention(self) -> timedelta:
        return timedelta(days=self.idempotency_retention_days)

    def validate(self) -> None:
        """Raise ValueError on out-of-range settings."""
        if self.starting_balance < 0:
            raise ValueError("starting_balance must be non-negative")
        if self.free_monthly_credits < 0:
            raise ValueError("free_monthly_credits must be non-negative")
        if not 0 <= self.free_rollover_percent <= 100:
            raise ValueError("free_rollover_percent must be between 0 and 100")
        for name, caps in (("daily_caps", self.daily_caps), ("monthly_caps", self.monthly_caps)):
            for group, cap in caps.items():
                if cap < 0:
                    raise ValueError(f"{name}[{group!r}] must be non-negative")
        if self.grace_duration_hours <= 0:
            raise ValueError("grace_duration_hours must be positive")
        if self.grace_action_budget < 0:
            raise ValueError("grace_action_budget must be non-negative")
        if self.min_balance_buffer_floor < 0 or self.min_balance_buffer_percent < 0:
            raise ValueError("minimum-balance buffer settings must be non-negative")
        if any(t <= 0 for t in self.thresholds):
            raise ValueError("thresholds must be positive")
        if len(set(self.thresholds)) != len(self.thresholds):
            raise ValueError("thresholds must be unique")
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        if self.idempotency_retention_days < 32:
            raise ValueError("idempotency_retention_days must cover a billing cycle (>= 32)")
        if self.high_cost_threshold <= 0:
            raise ValueError("high_cost_threshold must be positive")
        if self.backend_url and not self.backend_api_key:
            raise ValueError("backend_api_key is required when backend_url is set")
