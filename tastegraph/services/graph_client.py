"""
Resilient HTTP client for the cultural graph service.

Covers the three upstream operations the recommendation flow needs:
- search: resolve a name to graph entities
- insights: cultural tags for a resolved entity
- cross-domain recommendations: candidates in other domains for a set of tags

Resilience rules:
- 5xx and 429 are retried with exponential backoff (see ``retry.RetryPolicy``)
- other 4xx and timeouts are not retried
- 403 surfaces as ``AccessRestrictedError`` and the domain is remembered as restricted
- each domain walks a tag-reduction ladder (8 -> 5 -> 3 -> 1 tags) before giving up
- a domain that yields nothing after the ladder gets low-confidence fallback candidates
"""

from __future__ import annotations

import asyncio
import hashlib
import re
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import httpx

from tastegraph.config.logger import app_logger, log_performance
from tastegraph.config.settings import Settings
from tastegraph.models.domain import (
    PROVENANCE_FALLBACK,
    PROVENANCE_REAL,
    Candidate,
    CulturalTag,
    Entity,
    clamp,
    is_reserved_id,
)
from tastegraph.services.retry import RetryPolicy
from tastegraph.utils.errors import AccessRestrictedError, UpstreamClientError, UpstreamTimeoutError


SEARCH_TYPES: Dict[str, str] = {
    "movie": "movie",
    "book": "book",
    "artist": "artist",
    "song": "song",
    "tv_show": "tv_show",
    "podcast": "podcast",
    "game": "video_game",
    "restaurant": "place",
    "brand": "brand",
}

INSIGHT_TYPES: Dict[str, str] = {
    "movie": "urn:entity:movie",
    "book": "urn:entity:book",
    "artist": "urn:entity:artist",
    "song": "urn:entity:artist",  # songs are served under artist
    "tv_show": "urn:entity:tv_show",
    "podcast": "urn:entity:podcast",
    "game": "urn:entity:video_game",
    "restaurant": "urn:entity:place",
    "brand": "urn:entity:brand",
}

TAG_TYPES = "urn:tag:genre:media,urn:tag:keyword:media"

# Fallback reason for domains cut short by the request deadline rather than their own budget.
BUDGET_EXHAUSTED = "request budget exhausted"

# Curated placeholders used when a domain returns nothing usable.
FALLBACK_CANDIDATE_NAMES: Dict[str, List[str]] = {
    "movie": ["Spirited Away", "Arrival", "Before Sunrise"],
    "book": ["Norwegian Wood", "The Left Hand of Darkness", "Station Eleven"],
    "song": ["Teardrop", "Pink Moon", "Hyperballad"],
    "artist": ["Portishead", "Björk", "Nick Drake"],
    "tv_show": ["Twin Peaks", "Severance", "Atlanta"],
    "podcast": ["Radiolab", "Song Exploder", "99% Invisible"],
}


def map_search_type(domain_type: str) -> str:
    return SEARCH_TYPES.get(domain_type, domain_type)


def map_insights_type(domain_type: str) -> str:
    return INSIGHT_TYPES.get(domain_type, "urn:entity:movie")


def _slug(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")


def _first_number(data: Dict[str, Any], keys: Sequence[str]) -> Optional[float]:
    for key in keys:
        value = data.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value:
            return float(value)
    return None


def _extract_entities(payload: Any) -> List[Dict[str, Any]]:
    """Pull the entity list out of the shapes the graph service is known to return."""
    if not isinstance(payload, dict):
        return []
    results = payload.get("results")
    if isinstance(results, list):
        return [e for e in results if isinstance(e, dict)]
    if isinstance(results, dict):
        entities = results.get("entities")
        if isinstance(entities, list):
            return [e for e in entities if isinstance(e, dict)]
    for key in ("entities", "recommendations"):
        value = payload.get(key)
        if isinstance(value, list):
            return [e for e in value if isinstance(e, dict)]
    return []


def _extract_tags(payload: Any) -> List[Dict[str, Any]]:
    if not isinstance(payload, dict):
        return []
    results = payload.get("results")
    if isinstance(results, dict) and isinstance(results.get("tags"), list):
        return [t for t in results["tags"] if isinstance(t, dict)]
    if isinstance(payload.get("tags"), list):
        return [t for t in payload["tags"] if isinstance(t, dict)]
    return []


def normalize_candidate(raw: Dict[str, Any], domain: str, tag_ids: Sequence[str]) -> Optional[Candidate]:
    """Turn one upstream entity into a Candidate, or None when it lacks an id or a name."""
    entity_id = raw.get("entity_id") or raw.get("id")
    name = raw.get("name")
    if not entity_id or not name:
        return None

    score = _first_number(raw, ("popularity", "score", "affinity"))
    if score is None and isinstance(raw.get("query"), dict):
        score = _first_number(raw["query"], ("affinity", "score"))
    confidence = clamp(score if score is not None else 0.5)

    metadata: Dict[str, Any] = {
        "provenance": PROVENANCE_REAL,
        "source": "graph",
        "source_tags": list(tag_ids),
        "original_domain": domain,
    }
    if raw.get("popularity") is not None:
        metadata["popularity"] = raw.get("popularity")
    if isinstance(raw.get("properties"), dict):
        metadata["properties"] = raw["properties"]
    if isinstance(raw.get("metadata"), dict):
        for key, value in raw["metadata"].items():
            metadata.setdefault(key, value)

    return Candidate(
        id=str(entity_id),
        name=str(name),
        domain_type=domain,
        confidence=confidence,
        metadata=metadata,
    )


def normalize_tag(raw: Dict[str, Any]) -> Optional[CulturalTag]:
    tag_id = raw.get("tag_id") or raw.get("id")
    name = raw.get("name")
    if not tag_id or not name:
        return None
    affinity = None
    if isinstance(raw.get("query"), dict):
        affinity = _first_number(raw["query"], ("affinity",))
    if affinity is None:
        affinity = _first_number(raw, ("affinity",))
    types = raw.get("types") or []
    if isinstance(types, str):
        types = [types]
    return CulturalTag(
        tag_id=str(tag_id),
        name=str(name),
        applicable_types=set(types),
        subtype=raw.get("subtype") or "general",
        affinity=clamp(affinity if affinity is not None else 0.5),
    )


def ladder_sizes(ladder: Iterable[int], available: int) -> List[int]:
    """Distinct tag counts to try, largest first, never more than what is available.

    >>> ladder_sizes([8, 5, 3, 1], 4)
    [4, 3, 1]
    """
    if available <= 0:
        return []
    sizes = {min(size, available) for size in ladder if size > 0}
    return sorted(sizes, reverse=True)


class GraphClient:
    """Typed async client for the cultural graph API with retry and fallback handling."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 15.0,
        retry_policy: Optional[RetryPolicy] = None,
        domain_retry_policy: Optional[RetryPolicy] = None,
        tag_ladder: Sequence[int] = (8, 5, 3, 1),
        domain_budget: float = 8.0,
        domain_max_limit: int = 10,
        slow_domain_timeouts: Optional[Dict[str, float]] = None,
        slow_domain_max_limit: int = 5,
        restricted_domains: Iterable[str] = ("game",),
        domain_concurrency: int = 4,
        request_delay: float = 0.1,
        fallback_confidence: Tuple[float, float] = (0.3, 0.5),
        fallback_per_domain: int = 3,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.domain_retry_policy = domain_retry_policy or RetryPolicy(max_retries=1)
        self.tag_ladder = list(tag_ladder)
        self.domain_budget = domain_budget
        self.domain_max_limit = domain_max_limit
        self.slow_domain_timeouts = dict(slow_domain_timeouts or {})
        self.slow_domain_max_limit = slow_domain_max_limit
        self.restricted_domains: Set[str] = set(restricted_domains)
        self.domain_concurrency = max(1, domain_concurrency)
        self.request_delay = request_delay
        self.fallback_confidence = fallback_confidence
        self.fallback_per_domain = fallback_per_domain
        self._sleep = sleep
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url,
            headers={
                "X-API-Key": api_key,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=timeout,
        )

    @classmethod
    def from_settings(cls, settings: Settings, http_client: Optional[httpx.AsyncClient] = None) -> "GraphClient":
        return cls(
            base_url=settings.GRAPH_API_URL,
            api_key=settings.GRAPH_API_KEY,
            timeout=settings.GRAPH_TIMEOUT_SECONDS,
            retry_policy=RetryPolicy(
                max_retries=settings.GRAPH_MAX_RETRIES,
                initial_delay=settings.GRAPH_INITIAL_DELAY_SECONDS,
                multiplier=settings.GRAPH_BACKOFF_MULTIPLIER,
                max_delay=settings.GRAPH_MAX_DELAY_SECONDS,
            ),
            domain_retry_policy=RetryPolicy(
                max_retries=settings.DOMAIN_RETRY_MAX_RETRIES,
                initial_delay=settings.GRAPH_INITIAL_DELAY_SECONDS,
                multiplier=settings.GRAPH_BACKOFF_MULTIPLIER,
                max_delay=settings.GRAPH_MAX_DELAY_SECONDS,
            ),
            tag_ladder=settings.TAG_REDUCTION_LADDER,
            domain_budget=settings.DOMAIN_BUDGET_SECONDS,
            domain_max_limit=settings.DOMAIN_MAX_LIMIT,
            slow_domain_timeouts=settings.SLOW_DOMAIN_TIMEOUTS,
            slow_domain_max_limit=settings.SLOW_DOMAIN_MAX_LIMIT,
            restricted_domains=settings.RESTRICTED_DOMAINS,
            domain_concurrency=settings.DOMAIN_CONCURRENCY,
            request_delay=settings.DOMAIN_REQUEST_DELAY_SECONDS,
            fallback_confidence=(settings.FALLBACK_CONFIDENCE_MIN, settings.FALLBACK_CONFIDENCE_MAX),
            fallback_per_domain=settings.FALLBACK_CANDIDATES_PER_DOMAIN,
            http_client=http_client,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ============================================
    # Transport
    # ============================================

    async def _request(
        self,
        operation: str,
        path: str,
        params: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Any:
        """Single GET against the graph service, with errors mapped onto the taxonomy."""
        app_logger.debug(f"[GraphClient] GET {path} for {operation}")
        try:
            response = await self._client.get(path, params=params, timeout=timeout or self.timeout)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            app_logger.error(f"[GraphClient] Timeout for {operation}, not retrying")
            raise UpstreamTimeoutError(operation, timeout or self.timeout) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status == 403:
                raise AccessRestrictedError(
                    operation,
                    details={"suggestion": "Try different domains or check API access level"},
                ) from exc
            raise UpstreamClientError(
                f"Graph API error in {operation}: {status} {exc.response.reason_phrase}",
                status,
                operation,
                _safe_body(exc.response),
            ) from exc
        except httpx.RequestError as exc:
            raise UpstreamClientError(
                f"Network error in {operation}: {exc}",
                503,
                operation,
                {"original_error": str(exc)},
            ) from exc

        app_logger.debug(f"[GraphClient] Response received: {response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamClientError(
                f"Graph API returned invalid JSON in {operation}",
                502,
                operation,
            ) from exc

    async def _with_retry(
        self,
        operation: str,
        call: Callable[[], Awaitable[Any]],
        policy: Optional[RetryPolicy] = None,
    ) -> Any:
        state = (policy or self.retry_policy).start()
        while True:
            try:
                return await call()
            except UpstreamTimeoutError:
                raise
            except UpstreamClientError as exc:
                if not exc.is_retryable:
                    if exc.is_client_error:
                        app_logger.error(f"[GraphClient] Client error {exc.status_code} for {operation}, not retrying")
                    raise
                if not state.record_failure(retryable=True, error=exc):
                    app_logger.error(f"[GraphClient] All retry attempts failed for {operation}")
                    raise
                app_logger.warning(
                    f"[GraphClient] Attempt {state.attempt} failed for {operation} ({exc.status_code}), "
                    f"retrying in {state.delay:.2f}s"
                )
                await self._sleep(state.delay)

    # ============================================
    # Search
    # ============================================

    async def search(self, name: str, domain_type: str) -> List[Entity]:
        """Resolve a name to graph entities.

        An empty list means the graph does not know the name. When the
        service cannot be reached at all, a single placeholder entity with a
        reserved id is returned instead so the caller can cache it briefly.
        """
        operation = f"search({name}, {domain_type})"
        try:
            payload = await self._with_retry(
                operation,
                lambda: self._request(
                    operation,
                    "/search",
                    {"q": name, "types": map_search_type(domain_type), "limit": 10},
                ),
            )
            return self._entities_from_payload(payload, domain_type)
        except UpstreamClientError as exc:
            app_logger.warning(f"[GraphClient] Search endpoint failed for {name} ({domain_type}): {exc}; trying insights API")

        try:
            payload = await self._request(
                f"insights-search({name}, {domain_type})",
                "/v2/insights",
                {"filter.type": map_insights_type(domain_type), "query": name, "limit": 10},
            )
            entities = self._entities_from_payload(payload, domain_type)
            if entities:
                app_logger.info(f"[GraphClient] Found {len(entities)} entities via insights API")
                return entities
        except UpstreamClientError as exc:
            app_logger.warning(f"[GraphClient] Insights search also failed for {name} ({domain_type}): {exc}")

        app_logger.warning(f"[GraphClient] Using placeholder entity for {name} ({domain_type})")
        return [self.placeholder_entity(name, domain_type)]

    @staticmethod
    def placeholder_entity(name: str, domain_type: str) -> Entity:
        digest = hashlib.sha256(f"{name.lower().strip()}:{domain_type}".encode("utf-8")).hexdigest()[:12]
        return Entity(
            id=f"fallback-entity-{digest}",
            name=name,
            domain_type=domain_type,
            metadata={"provenance": PROVENANCE_FALLBACK, "original_name": name},
        )

    @staticmethod
    def _entities_from_payload(payload: Any, domain_type: str) -> List[Entity]:
        entities: List[Entity] = []
        for raw in _extract_entities(payload):
            entity_id = raw.get("entity_id") or raw.get("id")
            name = raw.get("name")
            if not entity_id or not name:
                continue
            metadata = dict(raw.get("properties") or raw.get("metadata") or {})
            metadata["provenance"] = PROVENANCE_REAL
            entities.append(Entity(id=str(entity_id), name=str(name), domain_type=domain_type, metadata=metadata))
        return entities

    # ============================================
    # Insights
    # ============================================

    async def insights(self, entity_id: str, domain_type: str) -> List[CulturalTag]:
        """Cultural tags for a resolved entity. Reserved ids short-circuit to an empty list."""
        if is_reserved_id(entity_id):
            app_logger.warning(f"[GraphClient] Skipping insights for invalid entity ID: {entity_id}")
            return []

        operation = f"insights({entity_id}, {domain_type})"
        payload = await self._with_retry(
            operation,
            lambda: self._request(
                operation,
                "/v2/insights",
                {
                    "filter.type": "urn:tag",
                    "filter.tag.types": TAG_TYPES,
                    "filter.parents.types": map_insights_type(domain_type),
                    "signal.interests.entities": entity_id,
                },
            ),
        )
        tags = [tag for tag in (normalize_tag(raw) for raw in _extract_tags(payload)) if tag is not None]
        app_logger.info(f"[GraphClient] Got {len(tags)} tags for entity {entity_id}")
        return tags

    # ============================================
    # Cross-domain recommendations
    # ============================================

    def is_slow_domain(self, domain: str) -> bool:
        return domain in self.slow_domain_timeouts

    def order_domains(self, domains: Iterable[str]) -> Tuple[List[str], List[str]]:
        """Split requested domains into (cheap, slow), dropping duplicates and restricted ones."""
        seen: Set[str] = set()
        cheap: List[str] = []
        slow: List[str] = []
        for domain in domains:
            if domain in seen:
                continue
            seen.add(domain)
            if domain in self.restricted_domains:
                app_logger.info(f"[GraphClient] Skipping restricted domain: {domain}")
                continue
            (slow if self.is_slow_domain(domain) else cheap).append(domain)
        return cheap, slow

    async def cross_domain_recommendations(
        self,
        tags: Sequence[CulturalTag],
        domains: Sequence[str],
        limit: int = 5,
        deadline: Optional[float] = None,
    ) -> List[Candidate]:
        """Candidates for every requested domain.

        Cheap domains run concurrently (bounded, with a staggered start);
        slow domains run afterwards, one at a time. Never raises for a single
        domain: restricted domains contribute nothing, failing domains
        contribute fallback candidates.

        ``deadline`` is a ``time.monotonic()`` instant shared by the whole
        request. Each domain gets at most what is left of it, and domains
        reached after it has passed get fallback candidates without a call.
        """
        started = time.perf_counter()
        cheap, slow = self.order_domains(domains)
        app_logger.info(
            f"[GraphClient] Getting recommendations for {len(cheap) + len(slow)} domains "
            f"(cheap: {', '.join(cheap) or '-'}; slow: {', '.join(slow) or '-'})"
        )

        semaphore = asyncio.Semaphore(self.domain_concurrency)

        async def run(domain: str, index: int) -> List[Candidate]:
            if index and self.request_delay:
                await self._sleep(self.request_delay * index)
            async with semaphore:
                return await self._domain_or_skip(tags, domain, limit, deadline)

        batches = await asyncio.gather(*(run(domain, i) for i, domain in enumerate(cheap)))
        results: List[Candidate] = [candidate for batch in batches for candidate in batch]

        for domain in slow:
            if results and self.request_delay and self.remaining_budget(deadline) > 0:
                await self._sleep(self.request_delay)
            results.extend(await self._domain_or_skip(tags, domain, limit, deadline))

        log_performance(
            "graph.cross_domain_recommendations",
            time.perf_counter() - started,
            domains=len(cheap) + len(slow),
            candidates=len(results),
        )
        return results

    def remaining_budget(self, deadline: Optional[float] = None) -> float:
        """Seconds a single domain may spend: its own budget, capped by the request deadline."""
        if deadline is None:
            return self.domain_budget
        return min(self.domain_budget, deadline - time.monotonic())

    async def _domain_or_skip(
        self,
        tags: Sequence[CulturalTag],
        domain: str,
        limit: int,
        deadline: Optional[float] = None,
    ) -> List[Candidate]:
        try:
            return await self.domain_recommendations(tags, domain, limit, deadline)
        except AccessRestrictedError:
            self.restricted_domains.add(domain)
            app_logger.warning(f"[GraphClient] Domain {domain} is access-restricted, skipping it from now on")
            return []
        except Exception as exc:
            app_logger.error(f"[GraphClient] Unexpected failure for domain {domain}: {exc}")
            return self.fallback_candidates(domain, limit, [t.tag_id for t in tags], reason="unexpected error")

    async def domain_recommendations(
        self,
        tags: Sequence[CulturalTag],
        domain: str,
        limit: int = 5,
        deadline: Optional[float] = None,
    ) -> List[Candidate]:
        """Candidates for a single domain, walking the tag-reduction ladder.

        Raises AccessRestrictedError on 403. Any other failure ends in
        fallback candidates.
        """
        ranked = sorted(tags, key=lambda t: t.affinity, reverse=True)
        tag_ids = [t.tag_id for t in ranked]
        fallback_tags = tag_ids[: self.tag_ladder[0] if self.tag_ladder else 3]

        budget = self.remaining_budget(deadline)
        if budget <= 0:
            app_logger.warning(f"[GraphClient] Request budget spent before {domain} could start, using fallbacks")
            return self.fallback_candidates(domain, limit, fallback_tags, reason=BUDGET_EXHAUSTED)

        try:
            candidates = await asyncio.wait_for(self._walk_ladder(tag_ids, domain, limit), timeout=budget)
        except AccessRestrictedError as exc:
            exc.domain = domain
            raise
        except asyncio.TimeoutError:
            app_logger.warning(f"[GraphClient] Domain {domain} exceeded its {budget:.1f}s budget")
            if budget < self.domain_budget:
                return self.fallback_candidates(domain, limit, fallback_tags, reason=BUDGET_EXHAUSTED)
            candidates = []

        if candidates:
            return candidates

        app_logger.warning(f"[GraphClient] No valid entities returned for {domain}, creating fallback recommendations")
        return self.fallback_candidates(domain, limit, fallback_tags)

    async def _walk_ladder(self, tag_ids: List[str], domain: str, limit: int) -> List[Candidate]:
        slow = self.is_slow_domain(domain)
        timeout = self.slow_domain_timeouts.get(domain, self.timeout)
        effective_limit = min(limit, self.slow_domain_max_limit if slow else self.domain_max_limit)

        for size in ladder_sizes(self.tag_ladder, len(tag_ids)):
            used = tag_ids[:size]
            operation = f"recommendations({domain}, {size} tags)"
            try:
                payload = await self._with_retry(
                    operation,
                    lambda: self._request(
                        operation,
                        "/v2/insights",
                        {
                            "filter.type": map_insights_type(domain),
                            "signal.interests.tags": ",".join(used),
                            "limit": effective_limit,
                        },
                        timeout=timeout,
                    ),
                    policy=self.domain_retry_policy,
                )
            except AccessRestrictedError:
                raise
            except UpstreamClientError as exc:
                app_logger.warning(f"[GraphClient] {operation} failed ({exc.status_code}), reducing tags")
                continue

            candidates = [
                c for c in (normalize_candidate(raw, domain, used) for raw in _extract_entities(payload)) if c is not None
            ]
            if candidates:
                app_logger.info(f"[GraphClient] Got {len(candidates)} recommendations for {domain} with {size} tags")
                return candidates[:effective_limit]
            app_logger.warning(f"[GraphClient] {operation} returned no usable entities, reducing tags")
        return []

    def fallback_candidates(
        self,
        domain: str,
        limit: int,
        tag_ids: Sequence[str],
        reason: str = "graph returned no valid entities",
    ) -> List[Candidate]:
        """Manufactured low-confidence candidates so a domain is never empty-handed."""
        count = max(0, min(limit, self.fallback_per_domain))
        curated = FALLBACK_CANDIDATE_NAMES.get(domain)
        names = curated[:count] if curated else [f"Popular {domain} recommendation {i + 1}" for i in range(count)]

        low, high = self.fallback_confidence
        step = (high - low) / (len(names) - 1) if len(names) > 1 else 0.0
        candidates = []
        for i, name in enumerate(names):
            candidates.append(
                Candidate(
                    id=f"fallback-{domain}-{i}-{_slug(name)}",
                    name=name,
                    domain_type=domain,
                    confidence=round(high - step * i, 4),
                    metadata={
                        "provenance": PROVENANCE_FALLBACK,
                        "source": "fallback",
                        "source_tags": list(tag_ids),
                        "original_domain": domain,
                        "curated": bool(curated),
                        "reason": reason,
                    },
                )
            )
        return candidates

    # ============================================
    # Entity-seeded recommendations
    # ============================================

    async def get_entity_recommendations(
        self,
        entity_id: str,
        entity_type: str,
        domains: Sequence[str],
        limit: int = 10,
        deadline: Optional[float] = None,
    ) -> List[Candidate]:
        """Candidates seeded by a single entity instead of tags. Failing domains are skipped."""
        if is_reserved_id(entity_id):
            return []

        results: List[Candidate] = []
        for domain in domains:
            if domain in self.restricted_domains:
                continue
            budget = self.remaining_budget(deadline)
            if budget <= 0:
                app_logger.warning(f"[GraphClient] Request budget spent, skipping entity recommendations for {domain}")
                break
            operation = f"entity_recommendations({entity_id}, {entity_type} -> {domain})"
            max_limit = self.slow_domain_max_limit if self.is_slow_domain(domain) else self.domain_max_limit
            try:
                payload = await asyncio.wait_for(
                    self._with_retry(
                        operation,
                        lambda: self._request(
                            operation,
                            "/v2/insights",
                            {
                                "filter.type": map_insights_type(domain),
                                "signal.interests.entities": entity_id,
                                "limit": min(limit, max_limit),
                            },
                            timeout=self.slow_domain_timeouts.get(domain, self.timeout),
                        ),
                        policy=self.domain_retry_policy,
                    ),
                    timeout=budget,
                )
            except AccessRestrictedError:
                self.restricted_domains.add(domain)
                app_logger.warning(f"[GraphClient] Domain {domain} is access-restricted, skipping it from now on")
                continue
            except UpstreamClientError as exc:
                app_logger.warning(f"[GraphClient] Failed to get entity recommendations for domain {domain}: {exc}")
                continue
            except asyncio.TimeoutError:
                app_logger.warning(f"[GraphClient] Entity recommendations for {domain} exceeded {budget:.1f}s")
                continue

            for raw in _extract_entities(payload):
                candidate = normalize_candidate(raw, domain, [])
                if candidate is not None:
                    candidate.metadata["seed_entity"] = entity_id
                    results.append(candidate)
        return results

    # ============================================
    # Health
    # ============================================

    async def ping(self) -> bool:
        """Cheap reachability probe used by the health endpoints."""
        try:
            await self._request("ping", "/search", {"q": "test", "types": "movie", "limit": 1}, timeout=3.0)
            return True
        except UpstreamClientError as exc:
            app_logger.warning(f"[GraphClient] Health probe failed: {exc}")
            return False


def _safe_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:500]
