"""
Quality-aware caching in front of the graph client.

Real data is kept for a day, fallback data for a few minutes. A cached
fallback payload is treated as a soft miss: the client is called again and
the stale payload is only served if that call fails too. Cache failures are
logged and bypassed, they never fail a request.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
from typing import Any, Dict, Iterable, List, Optional, Sequence

from tastegraph.config.logger import app_logger
from tastegraph.config.settings import Settings
from tastegraph.models.domain import (
    PROVENANCE_FALLBACK,
    PROVENANCE_REAL,
    CacheRecord,
    Candidate,
    CulturalTag,
    Entity,
    ProcessingMetrics,
    is_reserved_id,
)
from tastegraph.services.cache_backend import CacheBackend
from tastegraph.services.graph_client import GraphClient


NS_SEARCH = "graph:entity_search"
NS_INSIGHTS = "graph:insights"
NS_RECOMMENDATIONS = "graph:recommendations"
NS_EXPLANATIONS = "explanations"
NS_RATE_LIMIT = "rate_limit"
NS_USER_PROFILES = "user:profiles"
NS_HISTORY = "history"

NAMESPACES = (
    NS_SEARCH,
    NS_INSIGHTS,
    NS_RECOMMENDATIONS,
    NS_EXPLANATIONS,
    NS_RATE_LIMIT,
    NS_USER_PROFILES,
    NS_HISTORY,
)


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def search_key(name: str, domain_type: str) -> str:
    """Case-insensitive key for an entity search."""
    return _digest(f"{name.lower().strip()}:{domain_type.lower().strip()}")


def insights_key(entity_id: str, domain_type: str) -> str:
    return f"{entity_id}:{domain_type}"


def recommendations_key(tag_ids: Iterable[str], domains: Iterable[str]) -> str:
    """Order-independent key over the tag ids and target domains."""
    payload = json.dumps({"tags": sorted(set(tag_ids)), "domains": sorted(set(domains))}, separators=(",", ":"))
    return _digest(payload)


def explanation_key(input_name: str, recommended_name: str) -> str:
    return _digest(f"{input_name.lower().strip()}:{recommended_name.lower().strip()}")


class QualityAwareCache:
    """Cached facade over ``GraphClient`` with provenance-dependent TTLs."""

    def __init__(
        self,
        client: GraphClient,
        backend: CacheBackend,
        real_ttl: float = 24 * 60 * 60,
        fallback_ttl: float = 5 * 60,
        insights_ttl: float = 24 * 60 * 60,
    ):
        self.client = client
        self.backend = backend
        self.real_ttl = real_ttl
        self.fallback_ttl = fallback_ttl
        self.insights_ttl = insights_ttl

    @classmethod
    def from_settings(cls, settings: Settings, client: GraphClient, backend: CacheBackend) -> "QualityAwareCache":
        return cls(
            client,
            backend,
            real_ttl=settings.CACHE_REAL_TTL_SECONDS,
            fallback_ttl=settings.CACHE_FALLBACK_TTL_SECONDS,
            insights_ttl=settings.CACHE_INSIGHTS_TTL_SECONDS,
        )

    def ttl_for(self, quality: str) -> float:
        return self.fallback_ttl if quality == PROVENANCE_FALLBACK else self.real_ttl

    # ============================================
    # Backend access (errors never propagate)
    # ============================================

    async def _read(self, namespace: str, key: str, metrics: Optional[ProcessingMetrics]) -> Optional[CacheRecord]:
        try:
            record = await self.backend.get_record(namespace, key)
        except Exception as exc:
            app_logger.error(f"[Cache] Read failed for {namespace}: {exc}")
            record = None
        if metrics is not None:
            if record is not None and record.quality == PROVENANCE_REAL:
                metrics.cache_hits += 1
            else:
                metrics.cache_misses += 1
        return record

    async def _write(self, namespace: str, key: str, value: Any, quality: str, ttl: Optional[float] = None) -> None:
        ttl = ttl if ttl is not None else self.ttl_for(quality)
        try:
            await self.backend.set(namespace, key, value, ttl_seconds=ttl, quality=quality)
            app_logger.debug(f"[Cache] Stored {quality} payload in {namespace} for {ttl:.0f}s")
        except Exception as exc:
            app_logger.error(f"[Cache] Write failed for {namespace}: {exc}")

    @staticmethod
    def _count_call(metrics: Optional[ProcessingMetrics]) -> None:
        if metrics is not None:
            metrics.upstream_calls += 1

    # ============================================
    # Cached operations
    # ============================================

    async def search(self, name: str, domain_type: str, metrics: Optional[ProcessingMetrics] = None) -> List[Entity]:
        key = search_key(name, domain_type)
        record = await self._read(NS_SEARCH, key, metrics)
        stale: Optional[List[Entity]] = None
        if record is not None:
            entities = [Entity.from_dict(e) for e in record.payload]
            if record.quality == PROVENANCE_REAL:
                app_logger.info(f"[Cache] Hit for entity search: {name} ({domain_type})")
                return entities
            app_logger.info(f"[Cache] Cached fallback entity for {name} ({domain_type}), retrying upstream")
            stale = entities

        self._count_call(metrics)
        try:
            entities = await self.client.search(name, domain_type)
        except Exception:
            if stale:
                app_logger.warning(f"[Cache] Upstream search failed, serving cached fallback for {name}")
                return stale
            raise

        quality = PROVENANCE_REAL if any(not e.is_placeholder for e in entities) else PROVENANCE_FALLBACK
        await self._write(NS_SEARCH, key, [e.to_dict() for e in entities], quality)
        return entities

    async def insights(
        self,
        entity_id: str,
        domain_type: str,
        metrics: Optional[ProcessingMetrics] = None,
    ) -> List[CulturalTag]:
        if is_reserved_id(entity_id):
            app_logger.info(f"[Cache] Skipping insights for invalid entity ID: {entity_id}")
            return []

        key = insights_key(entity_id, domain_type)
        record = await self._read(NS_INSIGHTS, key, metrics)
        if record is not None:
            app_logger.info(f"[Cache] Hit for insights: {entity_id}")
            return [CulturalTag.from_dict(t) for t in record.payload]

        self._count_call(metrics)
        tags = await self.client.insights(entity_id, domain_type)
        if tags:
            await self._write(NS_INSIGHTS, key, [t.to_dict() for t in tags], PROVENANCE_REAL, ttl=self.insights_ttl)
        return tags

    async def cross_domain_recommendations(
        self,
        tags: Sequence[CulturalTag],
        domains: Sequence[str],
        limit: int = 5,
        metrics: Optional[ProcessingMetrics] = None,
        deadline: Optional[float] = None,
    ) -> List[Candidate]:
        key = recommendations_key([t.tag_id for t in tags], domains)
        record = await self._read(NS_RECOMMENDATIONS, key, metrics)
        stale: Optional[List[Candidate]] = None
        if record is not None:
            candidates = [Candidate.from_dict(c) for c in record.payload]
            if record.quality == PROVENANCE_REAL:
                app_logger.info("[Cache] Hit for cross-domain recommendations (real data)")
                return candidates
            app_logger.info("[Cache] Found cached fallback recommendations, retrying upstream")
            stale = candidates

        self._count_call(metrics)
        try:
            candidates = await self.client.cross_domain_recommendations(tags, domains, limit, deadline=deadline)
        except Exception as exc:
            if stale:
                app_logger.warning(f"[Cache] Upstream failed ({exc}), serving cached fallback recommendations")
                return stale
            app_logger.warning(f"[Cache] Upstream failed ({exc}), generating fallback recommendations")
            tag_ids = [t.tag_id for t in tags]
            candidates = [
                c
                for domain in domains
                for c in self.client.fallback_candidates(domain, limit, tag_ids, reason="graph service unavailable")
            ]

        quality = PROVENANCE_REAL
        if not candidates or any(c.is_fallback for c in candidates):
            quality = PROVENANCE_FALLBACK
        await self._write(NS_RECOMMENDATIONS, key, [c.to_dict() for c in candidates], quality)
        return candidates

    async def get_entity_recommendations(
        self,
        entity_id: str,
        entity_type: str,
        domains: Sequence[str],
        limit: int = 10,
        metrics: Optional[ProcessingMetrics] = None,
        deadline: Optional[float] = None,
    ) -> List[Candidate]:
        if is_reserved_id(entity_id) or not domains:
            return []
        self._count_call(metrics)
        return await self.client.get_entity_recommendations(entity_id, entity_type, domains, limit, deadline=deadline)

    # ============================================
    # Administration
    # ============================================

    async def invalidate_entity(self, entity_id: str) -> int:
        """Drop cached insights for an entity, whatever domain type they were stored under."""
        app_logger.info(f"[Cache] Invalidating cache for entity: {entity_id}")
        removed = 0
        for key in await self.backend.keys(NS_INSIGHTS):
            if key.split(":", 1)[0] == entity_id and await self.backend.delete(NS_INSIGHTS, key):
                removed += 1
        return removed

    async def invalidate_recommendations(self) -> int:
        app_logger.info("[Cache] Invalidating all recommendation caches")
        return await self.backend.clear_namespace(NS_RECOMMENDATIONS)

    async def invalidate_search(self) -> int:
        app_logger.info("[Cache] Invalidating all search caches")
        return await self.backend.clear_namespace(NS_SEARCH)

    async def clear_namespace(self, namespace: str) -> int:
        return await self.backend.clear_namespace(namespace)

    async def clear_all(self) -> Dict[str, int]:
        return {namespace: await self.backend.clear_namespace(namespace) for namespace in NAMESPACES}

    async def warmup(self, entities: Sequence[Dict[str, str]]) -> Dict[str, int]:
        """Pre-load search results (and insights where an id is known) for popular entities."""
        app_logger.info(f"[Cache] Warming up cache with {len(entities)} popular entities")

        async def warm(entity: Dict[str, str]) -> bool:
            name, domain_type = entity.get("name", ""), entity.get("type", "")
            try:
                entity_id = entity.get("id")
                if not entity_id:
                    found = await self.search(name, domain_type)
                    entity_id = next((e.id for e in found if not e.is_placeholder), None)
                else:
                    await self.search(name, domain_type)
                if entity_id:
                    await self.insights(entity_id, domain_type)
                app_logger.debug(f"[Cache] Warmed up cache for: {name}")
                return True
            except Exception as exc:
                app_logger.warning(f"[Cache] Failed to warm up cache for {name}: {exc}")
                return False

        outcomes = await asyncio.gather(*(warm(e) for e in entities))
        warmed = sum(1 for ok in outcomes if ok)
        app_logger.info(f"[Cache] Cache warmup completed ({warmed}/{len(entities)})")
        return {"requested": len(entities), "warmed": warmed}

    def stats(self) -> Dict[str, Any]:
        return self.backend.stats()
