from dataclasses import dataclass
from typing import Callable, Optional
import time

import httpx

from tastegraph.config.logger import app_logger
from tastegraph.config.settings import Settings
from tastegraph.services.cache_backend import InMemoryCacheBackend
from tastegraph.services.cached_graph import QualityAwareCache
from tastegraph.services.degradation import DegradationChain, check_external_service_health
from tastegraph.services.explanations import ExplanationService
from tastegraph.services.graph_client import GraphClient
from tastegraph.services.history_store import HistoryStore
from tastegraph.services.orchestrator import RecommendationOrchestrator
from tastegraph.services.rate_limiter import RateLimiter
from tastegraph.services.user_profiles import UserProfileStore


@dataclass
class ServiceContainer:
    """Every long-lived service, built once at startup and shared by all requests."""

    settings: Settings
    backend: InMemoryCacheBackend
    graph_client: GraphClient
    graph: QualityAwareCache
    profiles: UserProfileStore
    rate_limiter: RateLimiter
    history: HistoryStore
    degradation: DegradationChain
    explainer: ExplanationService
    orchestrator: RecommendationOrchestrator

    async def service_health(self):
        return await check_external_service_health(self.graph_client, self.explainer)

    async def aclose(self) -> None:
        await self.backend.stop_sweeper()
        await self.graph_client.aclose()
        await self.explainer.aclose()


def build_container(
    settings: Settings,
    http_client: Optional[httpx.AsyncClient] = None,
    explanation_client: Optional[object] = None,
    clock: Callable[[], float] = time.time,
) -> ServiceContainer:
    """Wire the service graph. Test doubles for the HTTP and OpenAI clients can be passed in."""
    backend = InMemoryCacheBackend(
        max_entries=settings.CACHE_MAX_ENTRIES,
        sweep_interval=settings.CACHE_SWEEP_INTERVAL_SECONDS,
        clock=clock,
    )
    graph_client = GraphClient.from_settings(settings, http_client=http_client)
    graph = QualityAwareCache.from_settings(settings, graph_client, backend)
    profiles = UserProfileStore(backend, known_tiers=settings.RATE_LIMIT_TIERS.keys())
    rate_limiter = RateLimiter.from_settings(settings, backend, profiles, clock=clock)
    history = HistoryStore(
        backend,
        per_user_limit=settings.HISTORY_USER_LOOKBACK,
        retention_seconds=settings.POPULARITY_LOOKBACK_DAYS * 24 * 60 * 60,
        clock=clock,
    )
    degradation = DegradationChain.from_settings(settings, history)

    explainer = ExplanationService.from_settings(settings, cache=backend)
    if explanation_client is not None:
        explainer.client = explanation_client

    orchestrator = RecommendationOrchestrator.from_settings(
        settings,
        graph,
        degradation,
        explainer=explainer,
        rate_limiter=rate_limiter,
        history=history,
    )

    if not settings.graph_configured:
        app_logger.warning("GRAPH_API_KEY is not configured, recommendations will rely on fallbacks")

    return ServiceContainer(
        settings=settings,
        backend=backend,
        graph_client=graph_client,
        graph=graph,
        profiles=profiles,
        rate_limiter=rate_limiter,
        history=history,
        degradation=degradation,
        explainer=explainer,
        orchestrator=orchestrator,
    )
