"""Abstract persistence interface for tenant credit accounts.

Defines the AccountBackend Protocol that AccountCache depends on.
Concrete implementations live in ``creditgate.backends``.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class AccountBackend(Protocol):
    """Async persistence backend for account rows and the transaction log.

    ``store_account`` is a compare-and-swap on the account's version:
    ``expected_version`` is the version the caller loaded (0 for a new
    row). A mismatch raises ConcurrentModificationError and writes nothing.

    ``append_transactions`` adds rows to the append-only log. It is
    idempotent on ``(tenant_id, idempotency_key)``: a row whose key is
    already logged is skipped, never duplicated or overwritten.
    """

    async def store_account(
        self, tenant_id: str, account_json: str, expected_version: int
    ) -> None: ...

    async def fetch_account(self, tenant_id: str) -> str | None: ...

    async def snapshot_account(
        self, tenant_id: str, account_json: str, timestamp: str
    ) -> str | None: ...

    async def append_transactions(
        self, tenant_id: str, rows: list[dict[str, Any]]
    ) -> None: ...

    async def fetch_transaction(
        self, tenant_id: str, idempotency_key: str
    ) -> dict[str, Any] | None: ...
