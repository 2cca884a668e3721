"""AccountBackend over a hosted relational store's REST interface (PostgREST).

Rows live in ``tenant_credit_accounts(tenant_id pk, version int, document jsonb)``.
Writes are conditional on the version column, so two writers for the same
tenant cannot both succeed; a lost race surfaces as
ConcurrentModificationError. Snapshots go to ``tenant_credit_snapshots``.
The transaction log is ``tenant_credit_transactions``, unique on
``(tenant_id, idempotency_key)``.
"""

from __future__ import annotations

import json
from typing import Any

import httpx

from creditgate.errors import ConcurrentModificationError, CreditGateError


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class BackendError(CreditGateError):
    """Base exception for backend REST operations."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BackendAuthError(BackendError):
    """401/403: authentication or authorization failure."""


class BackendNotFoundError(BackendError):
    """404: table or route not found."""


class BackendConflictError(BackendError):
    """409: unique or check constraint violation."""


class BackendValidationError(BackendError):
    """400/422: request rejected by the server."""


class BackendServerError(BackendError):
    """5xx: server-side error (retryable)."""


class BackendConnectionError(BackendError):
    """Network/DNS failure (retryable)."""


class BackendTimeoutError(BackendError):
    """Request timeout (retryable)."""


_STATUS_MAP: dict[int, type[BackendError]] = {
    400: BackendValidationError,
    401: BackendAuthError,
    403: BackendAuthError,
    404: BackendNotFoundError,
    409: BackendConflictError,
    422: BackendValidationError,
}

ACCOUNTS_TABLE = "tenant_credit_accounts"
SNAPSHOTS_TABLE = "tenant_credit_snapshots"
TRANSACTIONS_TABLE = "tenant_credit_transactions"


# ---------------------------------------------------------------------------
# Backend
# ---------------------------------------------------------------------------


class PostgrestBackend:
    """Async PostgREST client implementing the ``AccountBackend`` protocol.

    Constructor accepts explicit params, no env-var loading. Sends the
    key both as ``apikey`` and as a bearer token, as hosted PostgREST
    gateways expect.
    """

    def __init__(self, base_url: str, api_key: str, schema: str = "public") -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/rest/v1",
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Accept-Profile": schema,
                "Content-Profile": schema,
            },
            timeout=httpx.Timeout(connect=5.0, read=10.0, write=10.0, pool=5.0),
        )

    # -- internal request dispatcher -----------------------------------------

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: dict[str, str] | None = None,
        json_data: Any = None,
        prefer: str | None = None,
    ) -> Any:
        """Send a request and map errors to the backend exception hierarchy."""
        headers = {"Prefer": prefer} if prefer else None
        try:
            response = await self._client.request(
                method, endpoint, params=params, json=json_data, headers=headers,
            )
        except httpx.ConnectError as exc:
            raise BackendConnectionError(str(exc)) from exc
        except httpx.TimeoutException as exc:
            raise BackendTimeoutError(str(exc)) from exc

        if response.status_code >= 400:
            body = response.text
            exc_cls = _STATUS_MAP.get(response.status_code)
            if exc_cls is not None:
                raise exc_cls(body, status_code=response.status_code)
            if response.status_code >= 500:
                raise BackendServerError(body, status_code=response.status_code)
            raise BackendError(body, status_code=response.status_code)

        if not response.content:
            return None
        return response.json()

    # -- AccountBackend -------------------------------------------------------

    async def fetch_account(self, tenant_id: str) -> str | None:
        """GET the account document for ``tenant_id``; None if no row."""
        rows = await self._request(
            "GET",
            f"/{ACCOUNTS_TABLE}",
            params={"tenant_id": f"eq.{tenant_id}", "select": "document"},
        )
        if not rows:
            return None
        return json.dumps(rows[0]["document"])

    async def store_account(
        self, tenant_id: str, account_json: str, expected_version: int
    ) -> None:
        """Insert (expected_version 0) or conditionally update the account row."""
        document = json.loads(account_json)
        row = {
            "tenant_id": tenant_id,
            "version": document.get("version", expected_version + 1),
            "document": document,
        }

        if expected_version == 0:
            try:
                await self._request(
                    "POST", f"/{ACCOUNTS_TABLE}", json_data=row, prefer="return=minimal",
                )
            except BackendConflictError as exc:
                raise ConcurrentModificationError(tenant_id, expected_version) from exc
            return

        updated = await self._request(
            "PATCH",
            f"/{ACCOUNTS_TABLE}",
            params={"tenant_id": f"eq.{tenant_id}", "version": f"eq.{expected_version}"},
            json_data={"version": row["version"], "document": document},
            prefer="return=representation",
        )
        if not updated:
            raise ConcurrentModificationError(tenant_id, expected_version)

    async def snapshot_account(
        self, tenant_id: str, account_json: str, timestamp: str
    ) -> str | None:
        """Append a point-in-time copy of the account. Returns the snapshot id."""
        rows = await self._request(
            "POST",
            f"/{SNAPSHOTS_TABLE}",
            json_data={
                "tenant_id": tenant_id,
                "taken_at": timestamp,
                "document": json.loads(account_json),
            },
            prefer="return=representation",
        )
        if not rows:
            return None
        return str(rows[0].get("id", ""))

    async def append_transactions(
        self, tenant_id: str, rows: list[dict[str, Any]]
    ) -> None:
        """Bulk-insert log rows, skipping keys already logged."""
        if not rows:
            return
        await self._request(
            "POST",
            f"/{TRANSACTIONS_TABLE}",
            params={"on_conflict": "tenant_id,idempotency_key"},
            json_data=[{**row, "tenant_id": tenant_id} for row in rows],
            prefer="resolution=ignore-duplicates,return=minimal",
        )

    async def fetch_transaction(
        self, tenant_id: str, idempotency_key: str
    ) -> dict[str, Any] | None:
        rows = await self._request(
            "GET",
            f"/{TRANSACTIONS_TABLE}",
            params={
                "tenant_id": f"eq.{tenant_id}",
                "idempotency_key": f"eq.{idempotency_key}",
                "limit": "1",
            },
        )
        if not rows:
            return None
        return rows[0]

    # -- lifecycle ------------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> PostgrestBackend:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
