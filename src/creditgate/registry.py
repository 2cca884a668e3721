"""Action cost registry: one source of truth for what every action costs.

Unknown keys are a hard error. A registry miss is never read as "free".
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from creditgate.constants import ActionCategory
from creditgate.errors import RegistryError, UnknownActionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActionCostDefinition:
    """Immutable pricing entry for a single canonical action."""

    key: str
    display_name: str
    cost: int
    category: ActionCategory
    blocked_on_free_tier: bool = False
    requires_full_balance: bool = False
    quota_group: str | None = None

    @property
    def is_free(self) -> bool:
        return self.cost == 0

    @property
    def counter_key(self) -> str:
        """Key of the free-tier counter this action increments."""
        return self.quota_group or self.category.value

    def to_dict(self) -> dict[str, object]:
        return {
            "key": self.key,
            "display_name": self.display_name,
            "cost": self.cost,
            "category": self.category.value,
            "is_free": self.is_free,
            "blocked_on_free_tier": self.blocked_on_free_tier,
            "requires_full_balance": self.requires_full_balance,
        }


class ActionCostRegistry:
    """Resolves action keys (canonical or legacy alias) to cost definitions."""

    def __init__(
        self,
        definitions: Iterable[ActionCostDefinition],
        aliases: Mapping[str, str] | None = None,
    ) -> None:
        self._definitions: dict[str, ActionCostDefinition] = {}
        for definition in definitions:
            if definition.key in self._definitions:
                raise RegistryError(f"Duplicate action key: {definition.key!r}")
            if definition.cost < 0:
                raise RegistryError(
                    f"Action {definition.key!r} has negative cost {definition.cost}"
                )
            self._definitions[definition.key] = definition

        self._aliases: dict[str, str] = {}
        for alias, target in (aliases or {}).items():
            if alias in self._definitions:
                raise RegistryError(f"Alias {alias!r} shadows a canonical action")
            if target not in self._definitions:
                raise RegistryError(
                    f"Alias {alias!r} points to unknown action {target!r}"
                )
            self._aliases[alias] = target

    # -- lookups ---------------------------------------------------------------

    def canonical_key(self, action_key: str) -> str:
        """Return the canonical key for ``action_key`` (itself if not an alias)."""
        key = self._aliases.get(action_key, action_key)
        if key not in self._definitions:
            raise UnknownActionError(action_key)
        return key

    def resolve(self, action_key: str) -> ActionCostDefinition:
        """Return the definition for ``action_key``. Raises UnknownActionError."""
        return self._definitions[self.canonical_key(action_key)]

    def is_free(self, action_key: str) -> bool:
        return self.resolve(action_key).is_free

    def category(self, action_key: str) -> ActionCategory:
        return self.resolve(action_key).category

    def free_actions(self) -> list[str]:
        """Canonical keys of every zero-cost action."""
        return sorted(k for k, d in self._definitions.items() if d.is_free)

    def by_category(self, category: ActionCategory | str) -> list[ActionCostDefinition]:
        cat = ActionCategory(category)
        return [d for d in self._definitions.values() if d.category is cat]

    def aliases(self) -> dict[str, str]:
        return dict(self._aliases)

    def keys(self) -> list[str]:
        return list(self._definitions)

    def __contains__(self, action_key: object) -> bool:
        if not isinstance(action_key, str):
            return False
        return action_key in self._definitions or action_key in self._aliases

    def __len__(self) -> int:
        return len(self._definitions)


def default_registry() -> ActionCostRegistry:
    """Build the registry from the bundled seed cost table."""
    from creditgate.cost_table import (
        ACTION_COSTS,
        BLOCKED_ON_FREE_TIER,
        LEGACY_ALIASES,
        QUOTA_GROUPS,
        REQUIRES_FULL_BALANCE,
    )

    definitions = [
        ActionCostDefinition(
            key=key,
            display_name=name,
            cost=cost,
            category=ActionCategory(category),
            blocked_on_free_tier=key in BLOCKED_ON_FREE_TIER,
            requires_full_balance=key in REQUIRES_FULL_BALANCE,
            quota_group=QUOTA_GROUPS.get(key),
        )
        for key, name, cost, category in ACTION_COSTS
    ]
    registry = ActionCostRegistry(definitions, LEGACY_ALIASES)
    logger.debug(
        "Loaded %d action costs (%d aliases).", len(registry), len(LEGACY_ALIASES)
    )
    return registry
