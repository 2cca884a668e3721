"""Per-tenant credit account with a bounded idempotency window.

Pure data model, no I/O. Every mutation here is synchronous, so when it
runs under the per-tenant lock held by ``AccountCache.locked()`` the
check-and-write is a single atomic step: no caller ever sees a balance
below zero or a half-applied debit.

The full transaction history lives in the backend's append-only log.
The account row carries only the entries still inside the idempotency
window (``recent``) and the entries not yet appended to the log
(``outbox``).
"""

from __future__ import annotations

import calendar
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from creditgate.constants import GraceState, Tier, TransactionKind
from creditgate.errors import AccountDataError

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 2


def billing_cycle_start(day: date, anchor_day: int) -> date:
    """Return the start of the billing cycle containing ``day``.

    The cycle renews on ``anchor_day`` each month, clamped to the last day
    of shorter months (an anchor of 31 renews on Feb 28/29).
    """
    anchor = min(anchor_day, calendar.monthrange(day.year, day.month)[1])
    if day.day >= anchor:
        return day.replace(day=anchor)
    if day.month == 1:
        year, month = day.year - 1, 12
    else:
        year, month = day.year, day.month - 1
    return date(year, month, min(anchor_day, calendar.monthrange(year, month)[1]))


# ---------------------------------------------------------------------------
# CreditTransaction
# ---------------------------------------------------------------------------


@dataclass
class CreditTransaction:
    """Append-only ledger entry. One per (tenant_id, idempotency_key)."""

    id: str
    tenant_id: str
    action_key: str | None
    delta: int
    balance_after: int
    idempotency_key: str
    created_at: str
    kind: TransactionKind = TransactionKind.USAGE
    reason: str | None = None
    triggers: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "action_key": self.action_key,
            "delta": self.delta,
            "balance_after": self.balance_after,
            "idempotency_key": self.idempotency_key,
            "created_at": self.created_at,
            "kind": self.kind.value,
            "reason": self.reason,
            "triggers": list(self.triggers),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CreditTransaction:
        return cls(
            id=str(data["id"]),
            tenant_id=str(data["tenant_id"]),
            action_key=data.get("action_key"),
            delta=int(data["delta"]),
            balance_after=int(data["balance_after"]),
            idempotency_key=str(data["idempotency_key"]),
            created_at=str(data.get("created_at", "")),
            kind=TransactionKind(data.get("kind", TransactionKind.USAGE.value)),
            reason=data.get("reason"),
            triggers=[int(t) for t in data.get("triggers", [])],
        )


# ---------------------------------------------------------------------------
# GraceStatus
# ---------------------------------------------------------------------------


@dataclass
class GraceStatus:
    state: GraceState = GraceState.ACTIVE
    started_at: str | None = None  # ISO datetime, set on entering GRACE
    actions_used: int = 0

    def reset(self) -> None:
        self.state = GraceState.ACTIVE
        self.started_at = None
        self.actions_used = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "started_at": self.started_at,
            "actions_used": self.actions_used,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GraceStatus:
        return cls(
            state=GraceState(data.get("state", GraceState.ACTIVE.value)),
            started_at=data.get("started_at"),
            actions_used=int(data.get("actions_used", 0)),
        )


# ---------------------------------------------------------------------------
# TenantCreditAccount
# ---------------------------------------------------------------------------


@dataclass
class TenantCreditAccount:
    """Balance, counters and grace state for one tenant.

    ``balance`` splits into ``free_balance`` (starting and monthly free
    allocations, which expire at the next refresh) and purchased credits,
    which never expire. Debits spend free credits first.

    ``apply_debit()`` returns None on insufficient balance (not exceptional).
    ``from_json()`` raises AccountDataError on corrupt data; a fresh
    account would silently rewrite someone's balance.
    """

    tenant_id: str
    balance: int = 0
    free_balance: int = 0
    tier: Tier = Tier.FREE
    timezone: str = "UTC"
    billing_anchor_day: int = 1
    active: bool = True
    daily_counters: dict[str, int] = field(default_factory=dict)
    monthly_counters: dict[str, int] = field(default_factory=dict)
    daily_period: str | None = None  # tenant-local ISO date
    monthly_period: str | None = None  # ISO date the billing cycle started
    credits_used_today: int = 0
    credits_used_this_month: int = 0
    total_credited: int = 0
    total_consumed: int = 0
    grace: GraceStatus = field(default_factory=GraceStatus)
    fired_triggers: set[int] = field(default_factory=set)
    version: int = 0
    created_at: str = ""
    recent: dict[str, CreditTransaction] = field(default_factory=dict)
    outbox: list[CreditTransaction] = field(default_factory=list)

    @property
    def purchased_balance(self) -> int:
        return self.balance - self.free_balance

    # -- idempotency window ------------------------------------------------------

    def find_transaction(self, idempotency_key: str) -> CreditTransaction | None:
        return self.recent.get(idempotency_key)

    def _append(
        self,
        *,
        kind: TransactionKind,
        delta: int,
        idempotency_key: str,
        now: datetime,
        action_key: str | None = None,
        reason: str | None = None,
    ) -> CreditTransaction:
        if idempotency_key in self.recent:
            raise ValueError(
                f"Idempotency key {idempotency_key!r} already used for {self.tenant_id}"
            )
        txn = CreditTransaction(
            id=uuid.uuid4().hex,
            tenant_id=self.tenant_id,
            action_key=action_key,
            delta=delta,
            balance_after=self.balance,
            idempotency_key=idempotency_key,
            created_at=now.isoformat(),
            kind=kind,
            reason=reason,
        )
        self.recent[idempotency_key] = txn
        self.outbox.append(txn)
        return txn

    def prune_recent(self, now: datetime, retention: timedelta) -> int:
        """Forget window entries older than ``retention``. Returns the count dropped.

        Entries still waiting in the outbox are kept.
        """
        cutoff = now - retention
        pending = {t.idempotency_key for t in self.outbox}
        stale = [
            key for key, txn in self.recent.items()
            if key not in pending
            and txn.created_at
            and datetime.fromisoformat(txn.created_at) < cutoff
        ]
        for key in stale:
            del self.recent[key]
        return len(stale)

    # -- mutations ------------------------------------------------------------

    def apply_debit(
        self, action_key: str, cost: int, idempotency_key: str, now: datetime,
    ) -> CreditTransaction | None:
        """Subtract ``cost`` where balance >= cost. Returns None if insufficient."""
        if cost < 0:
            raise ValueError(f"cost must be non-negative, got {cost}")
        if self.balance < cost:
            return None

        self.balance -= cost
        self.free_balance -= min(self.free_balance, cost)
        self.total_consumed += cost
        self.credits_used_today += cost
        self.credits_used_this_month += cost
        return self._append(
            kind=TransactionKind.USAGE,
            delta=-cost,
            idempotency_key=idempotency_key,
            now=now,
            action_key=action_key,
        )

    def apply_credit(
        self,
        amount: int,
        idempotency_key: str,
        now: datetime,
        *,
        kind: TransactionKind = TransactionKind.PURCHASE,
        reason: str | None = None,
    ) -> CreditTransaction:
        """Add ``amount`` credits. Initial grants count as free credits."""
        if amount <= 0:
            raise ValueError(f"credit amount must be positive, got {amount}")
        self.balance += amount
        if kind is TransactionKind.INITIAL_GRANT:
            self.free_balance += amount
        self.total_credited += amount
        return self._append(
            kind=kind,
            delta=amount,
            idempotency_key=idempotency_key,
            now=now,
            reason=reason,
        )

    def apply_adjustment(
        self, amount: int, idempotency_key: str, now: datetime, reason: str,
    ) -> CreditTransaction:
        """Signed admin adjustment, clamped so the balance never goes below zero.

        The recorded delta is the change actually applied. Positive
        adjustments never expire.
        """
        new_balance = max(0, self.balance + amount)
        delta = new_balance - self.balance
        self.balance = new_balance
        self.free_balance = min(self.free_balance, self.balance)
        if delta > 0:
            self.total_credited += delta
        else:
            self.total_consumed -= delta
        return self._append(
            kind=TransactionKind.ADJUSTMENT,
            delta=delta,
            idempotency_key=idempotency_key,
            now=now,
            reason=reason,
        )

    def apply_allocation(
        self, new_free_balance: int, idempotency_key: str, now: datetime, reason: str,
    ) -> CreditTransaction:
        """Replace the free credits with ``new_free_balance`` (monthly refresh).

        Purchased credits are untouched. Expired free credits count as
        consumed, so ``balance == total_credited - total_consumed`` holds.
        """
        if new_free_balance < 0:
            raise ValueError(f"new_free_balance must be non-negative, got {new_free_balance}")
        delta = new_free_balance - self.free_balance
        self.free_balance = new_free_balance
        self.balance += delta
        if delta > 0:
            self.total_credited += delta
        else:
            self.total_consumed -= delta
        return self._append(
            kind=TransactionKind.ALLOCATION,
            delta=delta,
            idempotency_key=idempotency_key,
            now=now,
            reason=reason,
        )

    def record_usage(
        self,
        action_key: str,
        idempotency_key: str,
        now: datetime,
        *,
        kind: TransactionKind = TransactionKind.USAGE,
    ) -> CreditTransaction:
        """Record an allowed action that spent nothing (free, unmetered or on grace)."""
        return self._append(
            kind=kind,
            delta=0,
            idempotency_key=idempotency_key,
            now=now,
            action_key=action_key,
        )


    def count_usage(self, counter_key: str) -> None:
        """Increment the daily and monthly counters for ``counter_key``."""
        self.daily_counters[counter_key] = self.daily_counters.get(counter_key, 0) + 1
        self.monthly_counters[counter_key] = self.monthly_counters.get(counter_key, 0) + 1

    # -- periods ----------------------------------------------------------------

    def _zone(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(
                "Unknown timezone %r for tenant %s; using UTC.",
                self.timezone, self.tenant_id,
            )
            return ZoneInfo("UTC")

    def local_date(self, now: datetime) -> date:
        return now.astimezone(self._zone()).date()

    def roll_periods(self, now: datetime) -> bool:
        """Reset counters whose tenant-local period has ended. Returns True if any did.

        Daily counters reset at local midnight; monthly counters on the
        billing-cycle anniversary. Idempotent for a given ``now``.
        """
        today = self.local_date(now)
        changed = False

        day_key = today.isoformat()
        if self.daily_period != day_key:
            if self.daily_period is not None:
                self.daily_counters.clear()
                self.credits_used_today = 0
            self.daily_period = day_key
            changed = True

        cycle_key = billing_cycle_start(today, self.billing_anchor_day).isoformat()
        if self.monthly_period != cycle_key:
            if self.monthly_period is not None:
                self.monthly_counters.clear()
                self.credits_used_this_month = 0
            self.monthly_period = cycle_key
            changed = True

        return changed

    # -- serialization --------------------------------------------------------

    def to_json(self) -> str:
        """Serialize to JSON string with schema version."""
        return json.dumps({
            "v": _SCHEMA_VERSION,
            "tenant_id": self.tenant_id,
            "balance": self.balance,
            "free_balance": self.free_balance,
            "tier": self.tier.value,
            "timezone": self.timezone,
            "billing_anchor_day": self.billing_anchor_day,
            "active": self.active,
            "daily_counters": self.daily_counters,
            "monthly_counters": self.monthly_counters,
            "daily_period": self.daily_period,
            "monthly_period": self.monthly_period,
            "credits_used_today": self.credits_used_today,
            "credits_used_this_month": self.credits_used_this_month,
            "total_credited": self.total_credited,
            "total_consumed": self.total_consumed,
            "grace": self.grace.to_dict(),
            "fired_triggers": sorted(self.fired_triggers, reverse=True),
            "version": self.version,
            "created_at": self.created_at,
            "recent": [t.to_dict() for t in self.recent.values()],
            "outbox": [t.id for t in self.outbox],
        }, indent=2)

    @classmethod
    def from_json(cls, data: str) -> TenantCreditAccount:
        """Deserialize from JSON. Raises AccountDataError on corrupt data."""
        try:
            obj = json.loads(data)
        except (json.JSONDecodeError, TypeError) as e:
            raise AccountDataError(f"Account data is not valid JSON: {e}") from e

        if not isinstance(obj, dict) or "tenant_id" not in obj:
            raise AccountDataError("Account data is not an account object.")

        version = obj.get("v", _SCHEMA_VERSION)
        if version > _SCHEMA_VERSION:
            raise AccountDataError(
                f"Account schema v{version} is newer than supported v{_SCHEMA_VERSION}."
            )

        try:
            if version < 2:
                # v1 kept the whole log inline; none of it has reached the backend log.
                recent = [CreditTransaction.from_dict(t) for t in obj.get("transactions", [])]
                outbox = list(recent)
            else:
                recent = [CreditTransaction.from_dict(t) for t in obj.get("recent", [])]
                pending = set(obj.get("outbox", []))
                outbox = [t for t in recent if t.id in pending]
            return cls(
                tenant_id=str(obj["tenant_id"]),
                balance=int(obj.get("balance", 0)),
                free_balance=int(obj.get("free_balance", 0)),
                tier=Tier(obj.get("tier", Tier.FREE.value)),
                timezone=str(obj.get("timezone", "UTC")),
                billing_anchor_day=int(obj.get("billing_anchor_day", 1)),
                active=bool(obj.get("active", True)),
                daily_counters={k: int(v) for k, v in obj.get("daily_counters", {}).items()},
                monthly_counters={k: int(v) for k, v in obj.get("monthly_counters", {}).items()},
                daily_period=obj.get("daily_period"),
                monthly_period=obj.get("monthly_period"),
                credits_used_today=int(obj.get("credits_used_today", 0)),
                credits_used_this_month=int(obj.get("credits_used_this_month", 0)),
                total_credited=int(obj.get("total_credited", 0)),
                total_consumed=int(obj.get("total_consumed", 0)),
                grace=GraceStatus.from_dict(obj.get("grace", {})),
                fired_triggers={int(t) for t in obj.get("fired_triggers", [])},
                version=int(obj.get("version", 0)),
                created_at=str(obj.get("created_at", "")),
                recent={t.idempotency_key: t for t in recent},
                outbox=outbox,
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise AccountDataError(f"Account data is malformed: {e}") from e
