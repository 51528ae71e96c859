"""Short-TTL cache in front of a ``LicenseStore``.

Entries are keyed by (tenant_id, module_key) in a ``cachetools.TTLCache``.
Every write that passes through the decorator evicts the tenant's entries, and
administrative code calls ``invalidate`` explicitly after each mutation.
"""

from __future__ import annotations

import time
from collections import defaultdict
from collections.abc import Callable

from cachetools import TTLCache

from src.core.constants import DEFAULT_CACHE_MAXSIZE, DEFAULT_CACHE_TTL
from src.core.interfaces import LicenseMutation, LicenseStore
from src.core.logging import get_logger
from src.licensing.models import License

log = get_logger(__name__)

_MISSING = object()


class CachedLicenseStore(LicenseStore):
    """Caching decorator. Lookups by tenant only (``get``) are never cached.

    A per-tenant generation counter is bumped on every invalidation; a read
    that started before an invalidation does not repopulate the cache.
    """

    def __init__(
        self,
        inner: LicenseStore,
        ttl_seconds: float = DEFAULT_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
        maxsize: int = DEFAULT_CACHE_MAXSIZE,
    ) -> None:
        self._inner = inner
        self._ttl = ttl_seconds
        self._entries: TTLCache[tuple[str, str], License | None] = TTLCache(
            maxsize=maxsize, ttl=ttl_seconds, timer=clock
        )
        self._generations: defaultdict[str, int] = defaultdict(int)
        self._hits = 0
        self._misses = 0
        self._stale_skips = 0

    @property
    def inner(self) -> LicenseStore:
        return self._inner

    async def get_for_module(self, tenant_id: str, module_key: str) -> License | None:
        key = (tenant_id, module_key)
        cached = self._entries.get(key, _MISSING)
        if cached is not _MISSING:
            self._hits += 1
            return cached.copy() if cached is not None else None  # type: ignore[union-attr]

        self._misses += 1
        generation = self._generations[tenant_id]
        lic = await self._inner.get_for_module(tenant_id, module_key)
        if self._ttl <= 0:
            return lic
        if self._generations[tenant_id] != generation:
            self._stale_skips += 1
            log.debug("license_cache_stale_read_skipped", tenant_id=tenant_id, module_key=module_key)
            return lic
        self._entries[key] = lic.copy() if lic is not None else None
        return lic

    async def get(self, tenant_id: str) -> License | None:
        return await self._inner.get(tenant_id)

    async def upsert(self, tenant_id: str, mutation: LicenseMutation) -> License:
        try:
            return await self._inner.upsert(tenant_id, mutation)
        finally:
            self.invalidate(tenant_id)

    async def find_expiring(self, within_days: int) -> list[License]:
        return await self._inner.find_expiring(within_days)

    async def find_by_module(self, module_key: str, enabled_only: bool = True) -> list[License]:
        return await self._inner.find_by_module(module_key, enabled_only)

    async def delete(self, tenant_id: str) -> bool:
        try:
            return await self._inner.delete(tenant_id)
        finally:
            self.invalidate(tenant_id)

    def invalidate(self, tenant_id: str, module_key: str | None = None) -> int:
        """Evict one (tenant, module) entry, or every entry for the tenant."""
        self._generations[tenant_id] += 1
        if module_key is not None:
            keys = [(tenant_id, module_key)] if (tenant_id, module_key) in self._entries else []
        else:
            keys = [k for k in list(self._entries.keys()) if k[0] == tenant_id]
        for k in keys:
            self._entries.pop(k, None)
        log.debug("license_cache_invalidated", tenant_id=tenant_id, module_key=module_key, removed=len(keys))
        return len(keys)

    def clear(self) -> None:
        for tenant_id in list(self._generations):
            self._generations[tenant_id] += 1
        self._entries.clear()

    def stats(self) -> dict[str, float | int]:
        self._entries.expire()
        return {
            "total_entries": len(self._entries),
            "maxsize": int(self._entries.maxsize),
            "hits": self._hits,
            "misses": self._misses,
            "stale_skips": self._stale_skips,
            "ttl_seconds": self._ttl,
        }
