"""In-memory LRU cache of tenant accounts with per-tenant locking.

The cache is the hot path for every metering operation. ``locked()``
serializes all reads and writes for one tenant (never across tenants);
the backend is updated immediately on money paths and by a write-behind
loop for everything else.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, TypeVar

from creditgate.account import CreditTransaction, TenantCreditAccount
from creditgate.errors import ConcurrentModificationError

if TYPE_CHECKING:
    from creditgate.backend import AccountBackend

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _CacheEntry:
    """Internal cache entry wrapping an account with dirty tracking."""

    account: TenantCreditAccount
    dirty: bool = False


class AccountCache:
    """LRU cache for TenantCreditAccount objects with write-behind flush.

    - ``locked()`` holds the tenant's lock and yields the cached account
      (or None when the tenant has no stored account yet).
    - Mutations should be followed by ``mark_dirty(tenant_id)``.
    - A version conflict on flush drops the entry and re-raises
      ConcurrentModificationError so the caller can reload and retry.
    - On LRU eviction, dirty entries are flushed first.
    """

    def __init__(
        self,
        backend: AccountBackend,
        maxsize: int = 256,
        flush_interval_secs: int = 60,
        flush_retries: int = 1,
        flush_retry_delay: float = 2.0,
    ) -> None:
        self._backend = backend
        self._maxsize = maxsize
        self._flush_interval = flush_interval_secs
        self._flush_retries = flush_retries
        self._flush_retry_delay = flush_retry_delay
        self._entries: OrderedDict[str, _CacheEntry] = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = {}
        self._flush_task: asyncio.Task[None] | None = None
        self._last_flush_at: str | None = None
        self._total_flushes: int = 0
        self._total_conflicts: int = 0

    def _get_lock(self, tenant_id: str) -> asyncio.Lock:
        """Get or create a per-tenant lock."""
        if tenant_id not in self._locks:
            self._locks[tenant_id] = asyncio.Lock()
        return self._locks[tenant_id]

    @asynccontextmanager
    async def locked(self, tenant_id: str) -> AsyncIterator[TenantCreditAccount | None]:
        """Hold the tenant's lock for a full read-modify-write."""
        lock = self._get_lock(tenant_id)
        async with lock:
            yield await self._load(tenant_id)

    async def get(self, tenant_id: str) -> TenantCreditAccount | None:
        """Return the cached account, loading from the backend on miss."""
        async with self.locked(tenant_id) as account:
            return account

    async def _load(self, tenant_id: str) -> TenantCreditAccount | None:
        """Load into the cache. Caller holds the tenant lock."""
        entry = self._entries.get(tenant_id)
        if entry is not None:
            self._entries.move_to_end(tenant_id)
            return entry.account

        account_json = await self._backend.fetch_account(tenant_id)
        if account_json is None:
            return None
        account = TenantCreditAccount.from_json(account_json)
        await self._insert(tenant_id, _CacheEntry(account=account))
        return account

    async def put(self, account: TenantCreditAccount) -> None:
        """Add a newly provisioned account. Caller holds the tenant lock."""
        await self._insert(account.tenant_id, _CacheEntry(account=account, dirty=True))

    async def _insert(self, tenant_id: str, entry: _CacheEntry) -> None:
        while len(self._entries) >= self._maxsize:
            if not await self._evict_lru():
                break
        self._entries[tenant_id] = entry
        self._entries.move_to_end(tenant_id)

    def mark_dirty(self, tenant_id: str) -> None:
        """Mark a cached entry as dirty (needs flush to backend)."""
        entry = self._entries.get(tenant_id)
        if entry:
            entry.dirty = True

    def invalidate(self, tenant_id: str) -> None:
        """Drop a cached entry without flushing it."""
        self._entries.pop(tenant_id, None)

    def cached_tenants(self) -> list[str]:
        return list(self._entries)

    async def reload(self, tenant_id: str) -> bool:
        """Swap a clean cached account for the stored one if another writer moved it.

        Returns True when the cached copy was replaced. Dirty entries and
        tenants not in the cache are left alone.
        """
        async with self._get_lock(tenant_id):
            entry = self._entries.get(tenant_id)
            if entry is None or entry.dirty:
                return False
            account_json = await self._backend.fetch_account(tenant_id)
            if account_json is None:
                return False
            stored = TenantCreditAccount.from_json(account_json)
            if stored.version == entry.account.version:
                return False
            logger.info(
                "Cached account for %s was stale (v%d, stored v%d); reloaded.",
                tenant_id, entry.account.version, stored.version,
            )
            entry.account = stored
            return True

    async def logged_transaction(
        self, tenant_id: str, idempotency_key: str,
    ) -> CreditTransaction | None:
        """Look ``idempotency_key`` up in the backend's transaction log."""
        row = await self._backend.fetch_transaction(tenant_id, idempotency_key)
        return None if row is None else CreditTransaction.from_dict(row)

    async def flush_tenant(self, tenant_id: str) -> bool:
        """Immediately flush a single tenant's entry to the backend.

        Use for money paths (debit, credit, purchase) where data MUST be
        durable before returning success. Returns False on backend failure
        (logged, entry stays dirty). Raises ConcurrentModificationError on a
        version conflict after dropping the stale entry.
        """
        entry = self._entries.get(tenant_id)
        if not entry or not entry.dirty:
            return True
        return await self._flush_entry(tenant_id, entry)

    async def _evict_lru(self) -> bool:
        """Evict the least-recently-used unlocked entry, flushing if dirty."""
        for tenant_id, entry in list(self._entries.items()):
            lock = self._locks.get(tenant_id)
            if lock is not None and lock.locked():
                continue
            if entry.dirty:
                try:
                    await self._flush_entry(tenant_id, entry)
                except ConcurrentModificationError:
                    return True  # already dropped
            self._entries.pop(tenant_id, None)
            self._locks.pop(tenant_id, None)
            return True
        return False

    async def _flush_entry(self, tenant_id: str, entry: _CacheEntry) -> bool:
        """Flush a single entry with retry. Returns True on success."""
        account = entry.account
        expected = account.version
        max_attempts = 1 + self._flush_retries
        for attempt in range(max_attempts):
            account.version = expected + 1
            try:
                await self._backend.store_account(tenant_id, account.to_json(), expected)
            except ConcurrentModificationError:
                account.version = expected
                self._total_conflicts += 1
                self._entries.pop(tenant_id, None)
                logger.info("Version conflict flushing %s; dropped cached copy.", tenant_id)
                raise
            except Exception:
                account.version = expected
                if attempt < max_attempts - 1:
                    logger.warning(
                        "Flush attempt %d/%d failed for %s, retrying in %.1fs...",
                        attempt + 1, max_attempts, tenant_id, self._flush_retry_delay,
                    )
                    await asyncio.sleep(self._flush_retry_delay)
                else:
                    logger.warning(
                        "Failed to flush account for %s after %d attempt(s).",
                        tenant_id, max_attempts,
                    )
            else:
                entry.dirty = False
                self._last_flush_at = datetime.now(timezone.utc).isoformat()
                self._total_flushes += 1
                await self._append_outbox(tenant_id, entry)
                return True
        return False

    async def _append_outbox(self, tenant_id: str, entry: _CacheEntry) -> None:
        """Move the account's unlogged transactions to the backend log.

        Runs after the account row is stored, so a crash in between leaves
        the entries in the stored outbox and the next flush re-appends them.
        """
        pending = list(entry.account.outbox)
        if not pending:
            return
        try:
            await self._backend.append_transactions(tenant_id, [t.to_dict() for t in pending])
        except Exception:
            entry.dirty = True
            logger.warning(
                "Failed to append %d transaction(s) for %s; will retry on next flush.",
                len(pending), tenant_id,
            )
            return
        del entry.account.outbox[:len(pending)]

    async def transact(
        self,
        tenant_id: str,
        fn: Callable[[TenantCreditAccount], tuple[T, bool]],
        *,
        create: Callable[[], TenantCreditAccount],
        attempts: int = 3,
        base_delay: float = 0.05,
    ) -> T:
        """Run ``fn`` on the tenant's account under its lock and persist.

        ``fn`` returns ``(result, changed)``; changed accounts are flushed
        before the lock is released. A version conflict drops the cached
        copy and the whole step is retried on a freshly loaded account,
        backing off exponentially. ``create`` builds the account for a
        tenant the backend has never seen.
        """
        for attempt in range(attempts):
            try:
                async with self.locked(tenant_id) as account:
                    created = account is None
                    if account is None:
                        account = create()
                        await self.put(account)
                    result, changed = fn(account)
                    if changed or created:
                        self.mark_dirty(tenant_id)
                        if not await self.flush_tenant(tenant_id):
                            logger.error(
                                "CRITICAL: account change for %s not persisted; "
                                "will retry in background flush.",
                                tenant_id,
                            )
                    return result
            except ConcurrentModificationError:
                if attempt == attempts - 1:
                    raise
                delay = base_delay * (2 ** attempt)
                logger.info(
                    "Concurrent update of %s (attempt %d/%d); retrying in %.2fs.",
                    tenant_id, attempt + 1, attempts, delay,
                )
                await asyncio.sleep(delay)
        raise ConcurrentModificationError(tenant_id)

    async def flush_dirty(self) -> int:
        """Flush all dirty, unlocked entries. Returns count of flushed entries."""
        flushed = 0
        for tenant_id in list(self._entries):
            async with self._get_lock(tenant_id):
                entry = self._entries.get(tenant_id)
                if entry is None or not entry.dirty:
                    continue
                try:
                    if await self._flush_entry(tenant_id, entry):
                        flushed += 1
                except ConcurrentModificationError:
                    logger.warning(
                        "Discarded unflushed changes for %s after a version conflict.",
                        tenant_id,
                    )
        return flushed

    async def snapshot_all(self, timestamp: str) -> int:
        """Snapshot all cached accounts. Returns count of snapshots created."""
        snapped = 0
        for tenant_id, entry in list(self._entries.items()):
            try:
                result = await self._backend.snapshot_account(
                    tenant_id, entry.account.to_json(), timestamp
                )
                if result is not None:
                    snapped += 1
            except Exception:
                logger.warning("Failed to snapshot account for %s.", tenant_id)
        return snapped

    async def start_background_flush(self) -> None:
        """Start the periodic background flush task."""
        if self._flush_task is not None:
            return
        self._flush_task = asyncio.create_task(self._background_flush_loop())

    async def _background_flush_loop(self) -> None:
        """Periodically flush dirty entries until cancelled."""
        logger.info("Background flush loop started (interval=%ds).", self._flush_interval)
        cycles = 0
        try:
            while True:
                await asyncio.sleep(self._flush_interval)
                count = await self.flush_dirty()
                cycles += 1
                if count > 0:
                    logger.info(
                        "Background flush: wrote %d account(s) "
                        "(cycle %d, total flushes: %d).",
                        count, cycles, self._total_flushes,
                    )
        except asyncio.CancelledError:
            pass

    async def stop(self) -> None:
        """Cancel background flush and flush all remaining dirty entries."""
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        await self.flush_dirty()

    @property
    def size(self) -> int:
        """Number of entries currently in cache."""
        return len(self._entries)

    @property
    def dirty_count(self) -> int:
        """Number of dirty (unflushed) entries in cache."""
        return sum(1 for e in self._entries.values() if e.dirty)

    def health(self) -> dict[str, object]:
        """Return cache health metrics for monitoring."""
        return {
            "cache_size": self.size,
            "dirty_entries": self.dirty_count,
            "last_flush_at": self._last_flush_at,
            "total_flushes": self._total_flushes,
            "total_conflicts": self._total_conflicts,
            "background_flush_running": self._flush_task is not None
                                        and not self._flush_task.done(),
        }
