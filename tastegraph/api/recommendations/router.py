"""Cross-domain recommendation API routes."""

from fastapi import APIRouter, Depends, Response

from tastegraph.api.dependencies import get_container
from tastegraph.api.recommendations.schemas import (
    RecommendationRequestModel,
    RecommendationResponseModel,
)
from tastegraph.config.logger import app_logger
from tastegraph.models.domain import DomainType
from tastegraph.services.container import ServiceContainer
from tastegraph.utils.auth import Caller, GetCaller
from tastegraph.utils.responses import ErrorResponse

router = APIRouter(prefix="/v1/recommendations", tags=["recommendations"])


@router.post(
    "",
    response_model=RecommendationResponseModel,
    responses={400: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
)
async def create_recommendations(
    body: RecommendationRequestModel,
    response: Response,
    caller: Caller = GetCaller,
    container: ServiceContainer = Depends(get_container),
):
    """Generate ranked, explained recommendations in other domains from a few liked entities.

    Anonymous callers are allowed; an authenticated caller is charged against
    their own tier's rate limits.
    """
    request = body.to_domain(caller.user_id)
    # Malformed requests must not touch the profile store.
    container.orchestrator.validate(request)
    if caller.authenticated:
        await container.profiles.get_or_create(caller.user_id, caller.email)

    app_logger.info(
        f"Recommendation request from {caller.user_id}: "
        f"{', '.join(f'{e.name} ({e.type})' for e in body.entities) or 'no entities'}"
    )
    result = await container.orchestrator.recommend(request)

    if result.rate_limit is not None:
        response.headers["X-RateLimit-Limit"] = str(result.rate_limit.limit)
        response.headers["X-RateLimit-Remaining"] = str(result.rate_limit.remaining)
        response.headers["X-RateLimit-Reset"] = str(int(result.rate_limit.reset_time))

    return RecommendationResponseModel.from_result(result)


@router.get("")
async def describe_recommendations():
    """Usage notes and an example request for the recommendation endpoint."""
    return {
        "endpoint": "/v1/recommendations",
        "method": "POST",
        "description": "Generate cross-domain recommendations from a handful of entities you like",
        "supported_types": DomainType.values(),
        "limits": {"entities": "1-5", "limit": "1-20 (default 5)"},
        "example_request": {
            "entities": [
                {"name": "Radiohead", "type": "artist"},
                {"name": "Blade Runner", "type": "movie"},
            ],
            "domains": ["book", "restaurant", "tv_show"],
            "limit": 3,
            "includeExplanations": True,
        },
    }
