"""Tests for the threshold trigger engine (downward edge detection)."""

import pytest

from creditgate.account import TenantCreditAccount
from creditgate.triggers import TriggerEngine


def _engine() -> TriggerEngine:
    return TriggerEngine((2000, 1000, 500, 100))


class TestCheckTriggers:
    def test_fires_on_downward_cross(self) -> None:
        account = TenantCreditAccount(tenant_id="t1")
        fired = _engine().check_triggers(account, 600, 450)
        assert [f.threshold for f in fired] == [500]
        assert fired[0].level == "yellow_badge"
        assert fired[0].balance_after == 450
        assert account.fired_triggers == {500}

    def test_landing_exactly_on_threshold_fires(self) -> None:
        account = TenantCreditAccount(tenant_id="t1")
        fired = _engine().check_triggers(account, 150, 100)
        assert [f.threshold for f in fired] == [100]

    def test_starting_on_threshold_does_not_fire(self) -> None:
        account = TenantCreditAccount(tenant_id="t1")
        assert _engine().check_triggers(account, 500, 450) == []

    def test_multiple_thresholds_in_one_step(self) -> None:
        account = TenantCreditAccount(tenant_id="t1")
        fired = _engine().check_triggers(account, 2500, 50)
        assert [f.threshold for f in fired] == [2000, 1000, 500, 100]

    def test_does_not_refire_while_below(self) -> None:
        account = TenantCreditAccount(tenant_id="t1")
        engine = _engine()
        engine.check_triggers(account, 600, 450)
        assert engine.check_triggers(account, 450, 300) == []

    def test_upward_move_never_fires(self) -> None:
        account = TenantCreditAccount(tenant_id="t1")
        assert _engine().check_triggers(account, 50, 2500) == []

    def test_custom_threshold_level_name(self) -> None:
        account = TenantCreditAccount(tenant_id="t1")
        fired = TriggerEngine([250]).check_triggers(account, 300, 200)
        assert fired[0].level == "below_250"


class TestClearRecovered:
    def test_rearms_thresholds_below_balance(self) -> None:
        account = TenantCreditAccount(tenant_id="t1", balance=1200)
        account.fired_triggers.update({2000, 1000, 500, 100})
        cleared = _engine().clear_recovered(account)
        assert cleared == [1000, 500, 100]
        assert account.fired_triggers == {2000}

    def test_refires_after_recovery(self) -> None:
        account = TenantCreditAccount(tenant_id="t1")
        engine = _engine()
        engine.check_triggers(account, 600, 450)
        account.balance = 950
        engine.clear_recovered(account)
        assert [f.threshold for f in engine.check_triggers(account, 950, 400)] == [500]


class TestValidation:
    def test_rejects_non_positive(self) -> None:
        with pytest.raises(ValueError):
            TriggerEngine([100, 0])

    def test_rejects_duplicates(self) -> None:
        with pytest.raises(ValueError):
            TriggerEngine([100, 100])

    def test_sorted_descending(self) -> None:
        assert TriggerEngine([100, 2000, 500]).thresholds == (2000, 500, 100)
