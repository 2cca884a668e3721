"""Exception hierarchy for creditgate.

Only defects and transient faults are exceptions. Denials, insufficient
credits and idempotent replays are ordinary results.
"""

from __future__ import annotations


class CreditGateError(Exception):
    """Base exception for creditgate."""


class UnknownActionError(CreditGateError):
    """An action key has no registry entry (fail-closed)."""

    def __init__(self, action_key: str) -> None:
        super().__init__(f"Unknown action key: {action_key!r}")
        self.action_key = action_key


class RegistryError(CreditGateError):
    """The cost table or alias table is inconsistent."""


class AccountDataError(CreditGateError):
    """Persisted account data could not be decoded."""


class ConcurrentModificationError(CreditGateError):
    """The stored account changed underneath us. Transient; retried internally."""

    def __init__(self, tenant_id: str, expected_version: int | None = None) -> None:
        super().__init__(
            f"Account for tenant {tenant_id!r} was modified concurrently "
            f"(expected version {expected_version})."
        )
        self.tenant_id = tenant_id
        self.expected_version = expected_version


class ConfirmationError(CreditGateError):
    """A signed purchase confirmation failed validation."""
