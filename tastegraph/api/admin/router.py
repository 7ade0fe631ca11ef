"""Administrative routes: cache management, rate-limit inspection and tiers.

Every route requires a bearer token whose email is listed in ADMIN_EMAILS.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, status

from tastegraph.api.admin.schemas import (
    CacheClearResult,
    ServiceHealthResponse,
    TierUpdateRequest,
    UserTierResponse,
    WarmupRequest,
)
from tastegraph.api.dependencies import get_container
from tastegraph.config.logger import app_logger
from tastegraph.services.cached_graph import NAMESPACES, NS_RECOMMENDATIONS, NS_SEARCH
from tastegraph.services.container import ServiceContainer
from tastegraph.utils.auth import Caller, RequireAdmin
from tastegraph.utils.responses import SuccessResponse, success_response

router = APIRouter(prefix="/v1/admin", tags=["admin"])


@router.get("/cache/stats", response_model=SuccessResponse[Dict[str, Any]])
async def cache_stats(
    admin: Caller = RequireAdmin,
    container: ServiceContainer = Depends(get_container),
):
    """Hit/miss counters, size and per-namespace record counts."""
    return success_response(data=container.graph.stats(), message="Cache statistics retrieved")


@router.delete("/cache/recommendations", response_model=SuccessResponse[CacheClearResult])
async def invalidate_recommendations(
    admin: Caller = RequireAdmin,
    container: ServiceContainer = Depends(get_container),
):
    """Drop every cached cross-domain recommendation set."""
    removed = await container.graph.invalidate_recommendations()
    return success_response(
        data=CacheClearResult(namespace=NS_RECOMMENDATIONS, removed=removed),
        message="Recommendation cache invalidated",
    )


@router.delete("/cache/search", response_model=SuccessResponse[CacheClearResult])
async def invalidate_search(
    admin: Caller = RequireAdmin,
    container: ServiceContainer = Depends(get_container),
):
    removed = await container.graph.invalidate_search()
    return success_response(data=CacheClearResult(namespace=NS_SEARCH, removed=removed), message="Search cache invalidated")


@router.delete("/cache/{namespace}", response_model=SuccessResponse[CacheClearResult])
async def clear_cache(
    namespace: str,
    admin: Caller = RequireAdmin,
    container: ServiceContainer = Depends(get_container),
):
    """Clear one namespace, or every namespace with ``all``."""
    if namespace == "all":
        details = await container.graph.clear_all()
        app_logger.info(f"Admin {admin.email} cleared all cache namespaces")
        return success_response(
            data=CacheClearResult(namespace=namespace, removed=sum(details.values()), details=details),
            message="All cache namespaces cleared",
        )

    if namespace not in NAMESPACES:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown cache namespace '{namespace}'. Known: {', '.join(NAMESPACES)}",
        )
    removed = await container.graph.clear_namespace(namespace)
    app_logger.info(f"Admin {admin.email} cleared cache namespace {namespace} ({removed} records)")
    return success_response(data=CacheClearResult(namespace=namespace, removed=removed), message="Cache namespace cleared")


@router.delete("/cache/entities/{entity_id}", response_model=SuccessResponse[CacheClearResult])
async def invalidate_entity(
    entity_id: str,
    admin: Caller = RequireAdmin,
    container: ServiceContainer = Depends(get_container),
):
    removed = await container.graph.invalidate_entity(entity_id)
    return success_response(data=CacheClearResult(namespace="graph:insights", removed=removed), message="Entity cache invalidated")


@router.post("/cache/warmup", response_model=SuccessResponse[Dict[str, int]])
async def warmup_cache(
    body: WarmupRequest,
    admin: Caller = RequireAdmin,
    container: ServiceContainer = Depends(get_container),
):
    """Pre-load search results and insights for popular entities."""
    outcome = await container.graph.warmup([e.model_dump() for e in body.entities])
    return success_response(data=outcome, message="Cache warmup completed")


@router.get("/usage/{user_id}", response_model=SuccessResponse[Dict[str, Any]])
async def usage_stats(
    user_id: str,
    admin: Caller = RequireAdmin,
    container: ServiceContainer = Depends(get_container),
):
    """Current minute/hour/day and burst usage for a user."""
    stats = await container.rate_limiter.get_usage_stats(user_id, "recommendations")
    return success_response(data=stats, message="Usage statistics retrieved")


@router.delete("/rate-limits/{user_id}", response_model=SuccessResponse[Dict[str, int]])
async def reset_rate_limits(
    user_id: str,
    admin: Caller = RequireAdmin,
    container: ServiceContainer = Depends(get_container),
):
    removed = await container.rate_limiter.reset_user_limits(user_id)
    app_logger.info(f"Admin {admin.email} reset rate limits for {user_id}")
    return success_response(data={"removed": removed}, message="Rate limits reset")


@router.put("/users/{user_id}/tier", response_model=SuccessResponse[UserTierResponse])
async def update_tier(
    user_id: str,
    body: TierUpdateRequest,
    admin: Caller = RequireAdmin,
    container: ServiceContainer = Depends(get_container),
):
    profile = await container.profiles.set_tier(user_id, body.tier)
    return success_response(
        data=UserTierResponse(user_id=profile.user_id, tier=profile.tier, email=profile.email),
        message="User tier updated",
    )


@router.get("/health/services", response_model=SuccessResponse[ServiceHealthResponse])
async def services_health(
    admin: Caller = RequireAdmin,
    container: ServiceContainer = Depends(get_container),
):
    """Reachability of the graph service, explanation service and cache."""
    external = await container.service_health()
    cache_ok = await container.backend.health_check()
    return success_response(
        data=ServiceHealthResponse(cache=cache_ok, **external),
        message="Service health retrieved",
    )
