"""
Namespaced key/value cache with per-record TTL.

``CacheBackend`` is the contract the rest of the service codes against;
``InMemoryCacheBackend`` is the single-process implementation used by
default. Counters (rate limiting), user profiles and request history live in
their own namespaces of the same backend so expiry and eviction behave the
same everywhere.
"""

from __future__ import annotations

import asyncio
import copy
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from tastegraph.config.logger import app_logger
from tastegraph.models.domain import PROVENANCE_REAL, CacheRecord


class CacheBackend(Protocol):
    """Async namespaced cache contract. Consistency is best-effort."""

    async def get(self, namespace: str, key: str) -> Optional[Any]:
        ...

    async def get_record(self, namespace: str, key: str) -> Optional[CacheRecord]:
        ...

    async def set(
        self,
        namespace: str,
        key: str,
        value: Any,
        ttl_seconds: Optional[float] = None,
        quality: str = PROVENANCE_REAL,
    ) -> None:
        ...

    async def delete(self, namespace: str, key: str) -> bool:
        ...

    async def clear_namespace(self, namespace: str) -> int:
        ...

    async def incr(self, namespace: str, key: str, amount: int = 1, ttl_seconds: Optional[float] = None) -> int:
        ...

    async def keys(self, namespace: str) -> List[str]:
        ...

    async def health_check(self) -> bool:
        ...

    def stats(self) -> Dict[str, Any]:
        ...


class InMemoryCacheBackend:
    """Bounded in-memory backend.

    Records are evicted oldest-first once ``max_entries`` is reached.
    Expired records are dropped lazily on read and by ``sweep``, which the
    application runs periodically via ``start_sweeper``.
    """

    def __init__(
        self,
        max_entries: int = 1000,
        sweep_interval: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.max_entries = max_entries
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._store: "OrderedDict[Tuple[str, str], CacheRecord]" = OrderedDict()
        self._sweeper: Optional[asyncio.Task] = None
        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._evictions = 0

    def _live_record(self, namespace: str, key: str) -> Optional[CacheRecord]:
        record = self._store.get((namespace, key))
        if record is None:
            return None
        if record.is_expired(self._clock()):
            del self._store[(namespace, key)]
            return None
        return record

    async def get(self, namespace: str, key: str) -> Optional[Any]:
        record = await self.get_record(namespace, key)
        return record.payload if record else None

    async def get_record(self, namespace: str, key: str) -> Optional[CacheRecord]:
        record = self._live_record(namespace, key)
        if record is None:
            self._misses += 1
            return None
        self._hits += 1
        return CacheRecord(
            namespace=record.namespace,
            key=record.key,
            payload=copy.deepcopy(record.payload),
            quality=record.quality,
            expires_at=record.expires_at,
        )

    async def set(
        self,
        namespace: str,
        key: str,
        value: Any,
        ttl_seconds: Optional[float] = None,
        quality: str = PROVENANCE_REAL,
    ) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        store_key = (namespace, key)
        if store_key in self._store:
            del self._store[store_key]
        self._store[store_key] = CacheRecord(
            namespace=namespace,
            key=key,
            payload=copy.deepcopy(value),
            quality=quality,
            expires_at=expires_at,
        )
        self._sets += 1
        self._evict_overflow()

    async def delete(self, namespace: str, key: str) -> bool:
        return self._store.pop((namespace, key), None) is not None

    async def clear_namespace(self, namespace: str) -> int:
        doomed = [store_key for store_key in self._store if store_key[0] == namespace]
        for store_key in doomed:
            del self._store[store_key]
        app_logger.info(f"[Cache] Cleared {len(doomed)} records from namespace {namespace}")
        return len(doomed)

    async def incr(self, namespace: str, key: str, amount: int = 1, ttl_seconds: Optional[float] = None) -> int:
        """Increment an integer counter. The TTL only applies when the counter is created."""
        record = self._live_record(namespace, key)
        if record is None:
            await self.set(namespace, key, amount, ttl_seconds=ttl_seconds)
            return amount
        record.payload = int(record.payload) + amount
        return record.payload

    async def keys(self, namespace: str) -> List[str]:
        now = self._clock()
        return [
            record.key
            for (ns, _), record in list(self._store.items())
            if ns == namespace and not record.is_expired(now)
        ]

    def _evict_overflow(self) -> None:
        while len(self._store) > self.max_entries:
            self._store.popitem(last=False)
            self._evictions += 1

    async def sweep(self) -> int:
        """Drop every expired record. Returns how many were removed."""
        now = self._clock()
        expired = [store_key for store_key, record in self._store.items() if record.is_expired(now)]
        for store_key in expired:
            del self._store[store_key]
        if expired:
            app_logger.debug(f"[Cache] Swept {len(expired)} expired records")
        return len(expired)

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception as exc:
                app_logger.error(f"[Cache] Sweep failed: {exc}")

    def start_sweeper(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_forever())

    async def stop_sweeper(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

    async def health_check(self) -> bool:
        probe = f"probe-{self._clock()}"
        await self.set("health", probe, True, ttl_seconds=5)
        ok = await self.get("health", probe) is True
        await self.delete("health", probe)
        return ok

    def stats(self) -> Dict[str, Any]:
        namespaces: Dict[str, int] = {}
        for namespace, _ in self._store:
            namespaces[namespace] = namespaces.get(namespace, 0) + 1
        lookups = self._hits + self._misses
        return {
            "backend": "memory",
            "size": len(self._store),
            "max_entries": self.max_entries,
            "hits": self._hits,
            "misses": self._misses,
            "sets": self._sets,
            "evictions": self._evictions,
            "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
            "namespaces": namespaces,
        }
