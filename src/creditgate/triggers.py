"""Progressive low-balance warnings.

An edge detector, not a level check: a threshold fires when the balance
crosses it downward and is then silent until the balance rises back above
it. A tenant idling just below 500 gets one warning, not one per action.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from creditgate.account import TenantCreditAccount

logger = logging.getLogger(__name__)

_LEVEL_NAMES: dict[int, str] = {
    2000: "first_warning",
    1000: "second_warning",
    500: "yellow_badge",
    100: "warning_modal",
}


@dataclass(frozen=True)
class TriggerFired:
    threshold: int
    balance_after: int

    @property
    def level(self) -> str:
        return _LEVEL_NAMES.get(self.threshold, f"below_{self.threshold}")

    def to_dict(self) -> dict[str, object]:
        return {
            "threshold": self.threshold,
            "level": self.level,
            "balance_after": self.balance_after,
        }


class TriggerEngine:
    """Fires each configured threshold at most once per period."""

    def __init__(self, thresholds: Iterable[int]) -> None:
        values = list(thresholds)
        if any(t <= 0 for t in values):
            raise ValueError("thresholds must be positive")
        if len(set(values)) != len(values):
            raise ValueError("thresholds must be unique")
        self._thresholds = tuple(sorted(values, reverse=True))

    @property
    def thresholds(self) -> tuple[int, ...]:
        return self._thresholds

    def check_triggers(
        self, account: TenantCreditAccount, balance_before: int, balance_after: int,
    ) -> list[TriggerFired]:
        """Return thresholds crossed downward that have not fired this period.

        Fired thresholds are recorded on the account, highest first.
        """
        fired: list[TriggerFired] = []
        for threshold in self._thresholds:
            if not balance_before > threshold >= balance_after:
                continue
            if threshold in account.fired_triggers:
                continue
            account.fired_triggers.add(threshold)
            fired.append(TriggerFired(threshold=threshold, balance_after=balance_after))

        if fired:
            logger.info(
                "Balance warnings for %s: %s (balance %d).",
                account.tenant_id, [f.threshold for f in fired], balance_after,
            )
        return fired

    def clear_recovered(self, account: TenantCreditAccount) -> list[int]:
        """Re-arm thresholds the balance has risen back above."""
        cleared = sorted(
            (t for t in account.fired_triggers if account.balance > t), reverse=True,
        )
        for threshold in cleared:
            account.fired_triggers.discard(threshold)
        return cleared
