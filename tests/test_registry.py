"""Tests for the action cost registry: resolution, aliases, validation."""

import pytest

from creditgate.constants import ActionCategory
from creditgate.errors import RegistryError, UnknownActionError
from creditgate.registry import ActionCostDefinition, ActionCostRegistry, default_registry


def _defn(key: str, cost: int, category: ActionCategory = ActionCategory.ORDERS, **kw):
    return ActionCostDefinition(key=key, display_name=key.title(), cost=cost, category=category, **kw)


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


class TestResolve:
    def test_resolves_canonical_key(self) -> None:
        reg = ActionCostRegistry([_defn("order_create", 50)])
        assert reg.resolve("order_create").cost == 50

    def test_unknown_key_raises(self) -> None:
        reg = ActionCostRegistry([_defn("order_create", 50)])
        with pytest.raises(UnknownActionError) as exc_info:
            reg.resolve("order_teleport")
        assert exc_info.value.action_key == "order_teleport"

    def test_unknown_key_is_never_free(self) -> None:
        reg = ActionCostRegistry([])
        with pytest.raises(UnknownActionError):
            reg.is_free("anything")

    def test_alias_resolves_to_canonical_definition(self) -> None:
        reg = ActionCostRegistry([_defn("order_create", 50)], {"create_order": "order_create"})
        assert reg.resolve("create_order") is reg.resolve("order_create")
        assert reg.canonical_key("create_order") == "order_create"

    def test_category_lookup(self) -> None:
        reg = ActionCostRegistry([_defn("sms", 25, ActionCategory.CRM)])
        assert reg.category("sms") is ActionCategory.CRM

    def test_contains_covers_aliases(self) -> None:
        reg = ActionCostRegistry([_defn("a", 1)], {"b": "a"})
        assert "a" in reg
        assert "b" in reg
        assert "c" not in reg
        assert 5 not in reg


class TestFreeActions:
    def test_zero_cost_is_free(self) -> None:
        reg = ActionCostRegistry([_defn("view", 0), _defn("create", 10)])
        assert reg.is_free("view")
        assert not reg.is_free("create")

    def test_free_actions_derived_from_costs(self) -> None:
        reg = ActionCostRegistry([_defn("z_view", 0), _defn("create", 10), _defn("a_view", 0)])
        assert reg.free_actions() == ["a_view", "z_view"]

    def test_counter_key_defaults_to_category(self) -> None:
        assert _defn("x", 1, ActionCategory.CRM).counter_key == "crm"
        assert _defn("x", 1, quota_group="sms").counter_key == "sms"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidation:
    def test_duplicate_key_rejected(self) -> None:
        with pytest.raises(RegistryError, match="Duplicate"):
            ActionCostRegistry([_defn("a", 1), _defn("a", 2)])

    def test_negative_cost_rejected(self) -> None:
        with pytest.raises(RegistryError, match="negative"):
            ActionCostRegistry([_defn("a", -1)])

    def test_alias_to_unknown_rejected(self) -> None:
        with pytest.raises(RegistryError, match="unknown"):
            ActionCostRegistry([_defn("a", 1)], {"b": "missing"})

    def test_alias_shadowing_canonical_rejected(self) -> None:
        with pytest.raises(RegistryError, match="shadows"):
            ActionCostRegistry([_defn("a", 1), _defn("b", 2)], {"b": "a"})


# ---------------------------------------------------------------------------
# Bundled seed table
# ---------------------------------------------------------------------------


class TestDefaultRegistry:
    def test_loads(self) -> None:
        reg = default_registry()
        assert len(reg) > 100

    def test_known_prices(self) -> None:
        reg = default_registry()
        assert reg.resolve("order_create_manual").cost == 50
        assert reg.resolve("menu_create").cost == 100
        assert reg.resolve("send_sms").cost == 25
        assert reg.resolve("dashboard_view").cost == 0

    def test_legacy_alias_shares_price(self) -> None:
        reg = default_registry()
        assert reg.resolve("create_order").key == "order_create_manual"
        assert reg.resolve("generate_invoice").cost == reg.resolve("invoice_create").cost

    def test_every_alias_targets_a_definition(self) -> None:
        reg = default_registry()
        for alias, target in reg.aliases().items():
            assert reg.resolve(alias).key == target

    def test_flags(self) -> None:
        reg = default_registry()
        assert reg.resolve("send_bulk_sms").blocked_on_free_tier
        assert reg.resolve("data_warehouse_export").requires_full_balance
        assert reg.resolve("menu_create").counter_key == "menu_creations"
        assert reg.resolve("menu_view").counter_key == "menus"
