"""
Recommendation orchestration.

One request walks these states:

    RECEIVED -> RATE_CHECK -> PROFILE_EXTRACTION -> CANDIDATE_GENERATION
             -> AGGREGATION -> (EXPLANATION) -> RESPONDED

with DEGRADED entered from CANDIDATE_GENERATION when the graph service (and
the cache in front of it) produce nothing real, or when the candidate budget
runs out before every domain answered. Only the domains without real
candidates are degraded. REJECTED is the terminal state when the rate
limiter vetoes.

Only malformed input and rate-limit rejections surface as errors. Entity and
domain failures are logged and skipped.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from tastegraph.config.logger import app_logger, log_performance
from tastegraph.config.settings import Settings
from tastegraph.models.domain import (
    PROVENANCE_REAL,
    Candidate,
    CulturalTag,
    CulturalTheme,
    DomainType,
    Entity,
    ProcessingMetrics,
    RateLimitResult,
    Recommendation,
    RecommendationsByDomain,
    TasteProfile,
    is_reserved_id,
    merge_themes,
)
from tastegraph.services.cached_graph import QualityAwareCache
from tastegraph.services.degradation import DegradationChain, DegradedResult
from tastegraph.services.explanations import ExplanationRequest, ExplanationService, NamedItem
from tastegraph.services.graph_client import BUDGET_EXHAUSTED
from tastegraph.services.history_store import HistoryStore
from tastegraph.services.rate_limiter import RateLimiter
from tastegraph.utils.errors import RateLimitExceeded, ValidationError


DEFAULT_DOMAINS = ["movie", "book", "song", "artist", "restaurant", "brand", "tv_show", "podcast"]


class RequestState(str, Enum):
    RECEIVED = "received"
    RATE_CHECK = "rate_check"
    PROFILE_EXTRACTION = "profile_extraction"
    CANDIDATE_GENERATION = "candidate_generation"
    DEGRADED = "degraded"
    AGGREGATION = "aggregation"
    EXPLANATION = "explanation"
    RESPONDED = "responded"
    REJECTED = "rejected"


@dataclass
class RecommendationRequest:
    entities: List[Entity]
    domains: Optional[List[str]] = None
    limit: Optional[int] = None
    include_explanations: bool = True
    user_id: Optional[str] = None
    endpoint: str = "recommendations"


@dataclass
class RecommendationResponse:
    success: bool
    input: List[Entity]
    recommendations: RecommendationsByDomain
    processing_time: int
    cached: bool
    metrics: ProcessingMetrics = field(default_factory=ProcessingMetrics)
    degraded: Optional[str] = None
    rate_limit: Optional[RateLimitResult] = None
    states: List[RequestState] = field(default_factory=list)


@dataclass
class RequestContext:
    request: RecommendationRequest
    metrics: ProcessingMetrics = field(default_factory=ProcessingMetrics)
    states: List[RequestState] = field(default_factory=lambda: [RequestState.RECEIVED])
    entity_tags: Dict[int, List[CulturalTag]] = field(default_factory=dict)

    @property
    def state(self) -> RequestState:
        return self.states[-1]

    def transition(self, state: RequestState) -> None:
        app_logger.debug(f"[Orchestrator] {self.state.value} -> {state.value}")
        self.states.append(state)


def shared_themes(input_tags: Sequence[CulturalTag], candidate: Candidate) -> List[CulturalTheme]:
    """Input tags that also seeded the candidate, strongest first."""
    source = set(candidate.source_tags)
    themes: Dict[str, CulturalTheme] = {}
    for tag in input_tags:
        if tag.tag_id not in source:
            continue
        existing = themes.get(tag.tag_id)
        if existing is None or tag.affinity > existing.affinity:
            themes[tag.tag_id] = CulturalTheme.from_tag(tag)
    return sorted(themes.values(), key=lambda t: t.affinity, reverse=True)


def _has_real(candidates: Sequence[Candidate]) -> bool:
    return any(not c.is_fallback for c in candidates)


def _budget_ran_out(grouped: Dict[str, List[Candidate]], deadline: float) -> bool:
    if time.monotonic() >= deadline:
        return True
    return any(c.metadata.get("reason") == BUDGET_EXHAUSTED for recs in grouped.values() for c in recs)


def aggregate(
    candidates: Sequence[Recommendation],
    limit: int,
    threshold: float,
) -> List[Recommendation]:
    """Dedupe by lowercase name within a domain, drop low confidence, sort, truncate."""
    best: Dict[str, Recommendation] = {}
    for rec in candidates:
        key = f"{rec.name.lower()}{rec.domain_type}"
        current = best.get(key)
        if current is None or rec.confidence > current.confidence:
            best[key] = rec
    kept = [rec for rec in best.values() if rec.confidence >= threshold]
    kept.sort(key=lambda r: r.confidence, reverse=True)
    return kept[:limit]


class RecommendationOrchestrator:
    def __init__(
        self,
        graph: QualityAwareCache,
        degradation: DegradationChain,
        explainer: Optional[ExplanationService] = None,
        rate_limiter: Optional[RateLimiter] = None,
        history: Optional[HistoryStore] = None,
        default_limit: int = 5,
        max_limit: int = 20,
        max_entities: int = 5,
        confidence_threshold: float = 0.3,
        max_cross_domain_results: int = 50,
        max_profile_tags: int = 8,
        entity_concurrency: int = 3,
        candidate_budget: float = 20.0,
        default_domains: Sequence[str] = DEFAULT_DOMAINS,
    ):
        self.graph = graph
        self.degradation = degradation
        self.explainer = explainer
        self.rate_limiter = rate_limiter
        self.history = history
        self.default_limit = default_limit
        self.max_limit = max_limit
        self.max_entities = max_entities
        self.confidence_threshold = confidence_threshold
        self.max_cross_domain_results = max_cross_domain_results
        self.max_profile_tags = max_profile_tags
        self.entity_concurrency = max(1, entity_concurrency)
        self.candidate_budget = candidate_budget
        self.default_domains = list(default_domains)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        graph: QualityAwareCache,
        degradation: DegradationChain,
        explainer: Optional[ExplanationService] = None,
        rate_limiter: Optional[RateLimiter] = None,
        history: Optional[HistoryStore] = None,
    ) -> "RecommendationOrchestrator":
        return cls(
            graph,
            degradation,
            explainer=explainer,
            rate_limiter=rate_limiter,
            history=history,
            default_limit=settings.DEFAULT_RECOMMENDATION_LIMIT,
            max_limit=settings.MAX_RECOMMENDATION_LIMIT,
            max_entities=settings.MAX_INPUT_ENTITIES,
            confidence_threshold=settings.CONFIDENCE_THRESHOLD,
            max_cross_domain_results=settings.MAX_CROSS_DOMAIN_RESULTS,
            max_profile_tags=settings.MAX_PROFILE_TAGS,
            entity_concurrency=settings.ENTITY_CONCURRENCY,
            candidate_budget=settings.CANDIDATE_BUDGET_SECONDS,
        )

    # ============================================
    # Validation
    # ============================================

    def validate(self, request: RecommendationRequest) -> None:
        errors: List[Dict[str, str]] = []
        known = set(DomainType.values())

        if not request.entities:
            errors.append({"field": "entities", "message": "At least one entity is required"})
        elif len(request.entities) > self.max_entities:
            errors.append({"field": "entities", "message": f"At most {self.max_entities} entities are allowed"})

        for index, entity in enumerate(request.entities or []):
            if not entity.name or not entity.name.strip():
                errors.append({"field": f"entities[{index}].name", "message": "Entity name must not be empty"})
            if entity.domain_type not in known:
                errors.append({"field": f"entities[{index}].type", "message": f"Unknown entity type '{entity.domain_type}'"})

        if request.limit is not None and not (1 <= request.limit <= self.max_limit):
            errors.append({"field": "limit", "message": f"limit must be between 1 and {self.max_limit}"})

        for domain in request.domains or []:
            if domain not in known:
                errors.append({"field": "domains", "message": f"Unknown domain '{domain}'"})

        if errors:
            raise ValidationError("Invalid recommendation request", errors)

    # ============================================
    # Entry point
    # ============================================

    async def recommend(self, request: RecommendationRequest) -> RecommendationResponse:
        started = time.perf_counter()
        ctx = RequestContext(request)

        self.validate(request)
        limit = request.limit or self.default_limit
        domains = list(dict.fromkeys(request.domains or self.default_domains))

        rate_limit = await self._admit(ctx)

        ctx.transition(RequestState.PROFILE_EXTRACTION)
        profile = await self.extract_profile(ctx)
        app_logger.info(
            f"[Orchestrator] Resolved {len(profile.resolved_entities)}/{len(request.entities)} entities, "
            f"{len(profile.themes)} themes"
        )

        ctx.transition(RequestState.CANDIDATE_GENERATION)
        by_domain, degraded = await self.generate_candidates(ctx, profile, domains, limit)

        ctx.transition(RequestState.AGGREGATION)
        recommendations: RecommendationsByDomain = {}
        for domain in domains:
            ranked = aggregate(by_domain.get(domain, []), limit, self.confidence_threshold)
            if ranked:
                recommendations[domain] = ranked

        if request.include_explanations and self.explainer is not None and recommendations:
            ctx.transition(RequestState.EXPLANATION)
            await self.explain(ctx, profile, recommendations)

        ctx.transition(RequestState.RESPONDED)
        metrics = ctx.metrics
        metrics.recommendations_generated = sum(len(recs) for recs in recommendations.values())
        metrics.total_processing_time = time.perf_counter() - started

        if degraded is None and request.user_id and self.history is not None:
            real = {
                domain: [rec for rec in recs if rec.provenance == PROVENANCE_REAL]
                for domain, recs in recommendations.items()
            }
            await self.history.record(request.user_id, [e.name for e in request.entities], real)

        log_performance(
            "orchestrator.recommend",
            metrics.total_processing_time,
            recommendations=metrics.recommendations_generated,
            upstream_calls=metrics.upstream_calls,
            degraded=degraded.strategy if degraded else None,
        )
        app_logger.info(
            f"[Orchestrator] Generated {metrics.recommendations_generated} recommendations "
            f"in {metrics.total_processing_time:.3f}s"
        )
        return RecommendationResponse(
            success=True,
            input=profile.input_entities,
            recommendations=recommendations,
            processing_time=round(metrics.total_processing_time * 1000),
            cached=metrics.mostly_cached or degraded is not None,
            metrics=metrics,
            degraded=degraded.strategy if degraded else None,
            rate_limit=rate_limit,
            states=list(ctx.states),
        )

    async def _admit(self, ctx: RequestContext) -> Optional[RateLimitResult]:
        ctx.transition(RequestState.RATE_CHECK)
        request = ctx.request
        if self.rate_limiter is None or not request.user_id:
            return None

        result = await self.rate_limiter.check_limit(request.user_id, request.endpoint)
        if not result.allowed:
            ctx.transition(RequestState.REJECTED)
            raise RateLimitExceeded(
                limit=result.limit,
                remaining=result.remaining,
                reset_time=result.reset_time,
                retry_after=result.retry_after or 1,
                tier=result.tier,
            )
        await self.rate_limiter.record_request(request.user_id, request.endpoint)
        result.remaining = max(0, result.remaining - 1)
        return result

    # ============================================
    # Profile extraction
    # ============================================

    async def extract_profile(self, ctx: RequestContext) -> TasteProfile:
        semaphore = asyncio.Semaphore(self.entity_concurrency)
        entities = [Entity.from_dict(e.to_dict()) for e in ctx.request.entities]

        async def process(index: int, entity: Entity) -> List[CulturalTheme]:
            async with semaphore:
                return await self._process_entity(ctx, index, entity)

        theme_lists = await asyncio.gather(*(process(i, e) for i, e in enumerate(entities)))
        themes = merge_themes(theme for themes in theme_lists for theme in themes)
        return TasteProfile(input_entities=entities, themes=themes)

    async def _process_entity(self, ctx: RequestContext, index: int, entity: Entity) -> List[CulturalTheme]:
        metrics = ctx.metrics
        try:
            if not entity.id or is_reserved_id(entity.id):
                found = await self.graph.search(entity.name, entity.domain_type, metrics=metrics)
                resolved = next((e for e in found if not e.is_placeholder), None)
                if resolved is None:
                    app_logger.warning(f"[Orchestrator] Entity not found: {entity.name} ({entity.domain_type})")
                    entity.id = None
                    return []
                entity.id = resolved.id

            metrics.entities_processed += 1
            tags = await self.graph.insights(entity.id, entity.domain_type, metrics=metrics)
            ctx.entity_tags[index] = tags
            app_logger.info(f"[Orchestrator] Extracted {len(tags)} themes from {entity.name}")
            return [CulturalTheme.from_tag(tag, entity.domain_type) for tag in tags]
        except Exception as exc:
            app_logger.error(f"[Orchestrator] Error analyzing entity {entity.name}: {exc}")
            return []

    # ============================================
    # Candidate generation
    # ============================================

    async def generate_candidates(
        self,
        ctx: RequestContext,
        profile: TasteProfile,
        domains: List[str],
        limit: int,
    ) -> Tuple[Dict[str, List[Recommendation]], Optional[DegradedResult]]:
        resolved = profile.resolved_entities
        if not resolved:
            app_logger.warning("[Orchestrator] No entities resolved, returning empty recommendations")
            return {}, None

        deadline = time.monotonic() + self.candidate_budget
        grouped: Dict[str, List[Candidate]] = {}
        failure: Optional[str] = None
        try:
            await self._collect_candidates(ctx, profile, domains, limit, deadline, grouped)
        except Exception as exc:
            failure = f"candidate generation failed: {exc}"

        missing = [d for d in domains if not _has_real(grouped.get(d, []))]
        if failure is None and len(missing) == len(domains):
            failure = "no real candidates from the graph service"
        elif failure is None and missing and _budget_ran_out(grouped, deadline):
            failure = f"candidate budget of {self.candidate_budget:.1f}s spent before {', '.join(missing)} answered"

        by_domain = {
            domain: [Recommendation.from_candidate(c) for c in candidates] for domain, candidates in grouped.items()
        }
        if failure is None:
            return by_domain, None

        app_logger.warning(f"[Orchestrator] Degrading {', '.join(missing)}: {failure}")
        ctx.transition(RequestState.DEGRADED)
        degraded = await self.degradation.recommend(
            [e.name for e in ctx.request.entities],
            missing,
            limit,
            user_id=ctx.request.user_id,
        )
        by_domain.update({domain: recs for domain, recs in degraded.recommendations.items() if recs})
        return by_domain, degraded

    async def _collect_candidates(
        self,
        ctx: RequestContext,
        profile: TasteProfile,
        domains: List[str],
        limit: int,
        deadline: float,
        grouped: Dict[str, List[Candidate]],
    ) -> None:
        """Fill ``grouped`` per domain. Partial results stay in place if a later step fails."""
        tags = profile.top_tags(self.max_profile_tags)
        if tags:
            candidates = await self.graph.cross_domain_recommendations(
                tags,
                domains,
                self.max_cross_domain_results,
                metrics=ctx.metrics,
                deadline=deadline,
            )
            for candidate in candidates:
                grouped.setdefault(candidate.domain_type, []).append(candidate)
        else:
            app_logger.warning("[Orchestrator] No cultural themes found, trying entity-seeded recommendations")

        missing = [d for d in domains if not _has_real(grouped.get(d, []))]
        if missing and time.monotonic() >= deadline:
            app_logger.warning(f"[Orchestrator] No budget left to top up {', '.join(missing)}")
            return
        if missing:
            app_logger.info(f"[Orchestrator] No real results for {', '.join(missing)}, trying entity recommendations")
            for entity in profile.resolved_entities:
                try:
                    extra = await self.graph.get_entity_recommendations(
                        entity.id, entity.domain_type, missing, limit, metrics=ctx.metrics, deadline=deadline
                    )
                except Exception as exc:
                    app_logger.error(f"[Orchestrator] Error getting entity recommendations for {entity.name}: {exc}")
                    continue
                for candidate in extra:
                    if candidate.domain_type not in missing:
                        continue
                    existing = grouped.get(candidate.domain_type, [])
                    grouped[candidate.domain_type] = [c for c in existing if not c.is_fallback] + [candidate]
                missing = [d for d in missing if not _has_real(grouped.get(d, []))]
                if not missing or time.monotonic() >= deadline:
                    break

    # ============================================
    # Explanations
    # ============================================

    async def explain(
        self,
        ctx: RequestContext,
        profile: TasteProfile,
        recommendations: RecommendationsByDomain,
    ) -> None:
        sources = [
            (profile.input_entities[index], ctx.entity_tags.get(index, []))
            for index in range(len(profile.input_entities))
            if profile.input_entities[index].id
        ] or [(entity, []) for entity in profile.input_entities]

        pending: List[Recommendation] = []
        requests: List[ExplanationRequest] = []
        for recs in recommendations.values():
            for rec in recs:
                if rec.explanation:
                    continue
                candidate = Candidate(rec.id, rec.name, rec.domain_type, rec.confidence, rec.metadata)
                best_entity, best_themes = sources[0][0], shared_themes(sources[0][1], candidate)
                for entity, tags in sources[1:]:
                    themes = shared_themes(tags, candidate)
                    if len(themes) > len(best_themes):
                        best_entity, best_themes = entity, themes
                pending.append(rec)
                requests.append(
                    ExplanationRequest(
                        input_entity=NamedItem(best_entity.name, best_entity.domain_type),
                        recommended_entity=NamedItem(rec.name, rec.domain_type),
                        shared_themes=best_themes,
                        affinity_score=rec.confidence,
                    )
                )

        if not requests:
            return
        results = await self.explainer.explain_batch(requests)
        ctx.metrics.explanation_calls += sum(1 for r in results if not r.fallback and not r.cached)
        for rec, result in zip(pending, results):
            rec.explanation = result.explanation
            rec.metadata["explanation_confidence"] = result.confidence
