"""Dict-backed AccountBackend for tests and local development."""

from __future__ import annotations

import asyncio
import json
from typing import Any

from creditgate.errors import ConcurrentModificationError


class InMemoryBackend:
    """Version-checked in-process account store with a transaction log.

    Implements the creditgate ``AccountBackend`` protocol. The stored
    version is read from the JSON document itself, the same column the
    hosted backend filters on.
    """

    def __init__(self) -> None:
        self._rows: dict[str, str] = {}
        self._snapshots: dict[str, list[tuple[str, str]]] = {}
        self._log: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _version_of(account_json: str) -> int:
        return int(json.loads(account_json).get("version", 0))

    async def store_account(
        self, tenant_id: str, account_json: str, expected_version: int
    ) -> None:
        async with self._lock:
            current = self._rows.get(tenant_id)
            current_version = 0 if current is None else self._version_of(current)
            if current_version != expected_version:
                raise ConcurrentModificationError(tenant_id, expected_version)
            self._rows[tenant_id] = account_json

    async def fetch_account(self, tenant_id: str) -> str | None:
        return self._rows.get(tenant_id)

    async def snapshot_account(
        self, tenant_id: str, account_json: str, timestamp: str
    ) -> str | None:
        self._snapshots.setdefault(tenant_id, []).append((timestamp, account_json))
        return f"{tenant_id}@{timestamp}"

    async def append_transactions(
        self, tenant_id: str, rows: list[dict[str, Any]]
    ) -> None:
        log = self._log.setdefault(tenant_id, {})
        for row in rows:
            log.setdefault(row["idempotency_key"], dict(row))

    async def fetch_transaction(
        self, tenant_id: str, idempotency_key: str
    ) -> dict[str, Any] | None:
        row = self._log.get(tenant_id, {}).get(idempotency_key)
        return None if row is None else dict(row)

    def transactions(self, tenant_id: str) -> list[dict[str, Any]]:
        """Logged rows for ``tenant_id`` in append order."""
        return [dict(row) for row in self._log.get(tenant_id, {}).values()]

    def snapshots(self, tenant_id: str) -> list[tuple[str, str]]:
        return list(self._snapshots.get(tenant_id, []))

    def tenant_ids(self) -> list[str]:
        return list(self._rows)
