"""Recommendation request and response schemas.

Both snake_case and camelCase field names are accepted on input. Field
constraints (entity count, known types, limit range) are enforced by the
orchestrator so that every malformed request gets the same 400 response.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from tastegraph.models.domain import Entity, Recommendation
from tastegraph.services.orchestrator import RecommendationRequest, RecommendationResponse
from tastegraph.utils.responses import ResponseMetadata


class EntityInput(BaseModel):
    """An input entity as named by the caller."""

    name: str = Field(..., description="Entity name, e.g. 'Radiohead'")
    type: str = Field(..., description="Entity domain type, e.g. 'artist'")
    id: Optional[str] = Field(default=None, description="Graph entity id, if already known")


class RecommendationRequestModel(BaseModel):
    """Request schema for cross-domain recommendations."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "entities": [{"name": "Radiohead", "type": "artist"}],
                "domains": ["movie", "book"],
                "limit": 3,
                "includeExplanations": True,
            }
        },
    )

    entities: List[EntityInput] = Field(default_factory=list, description="1 to 5 input entities")
    domains: Optional[List[str]] = Field(default=None, description="Target domains; defaults to all supported")
    limit: Optional[int] = Field(default=None, description="Recommendations per domain (1-20, default 5)")
    include_explanations: bool = Field(
        default=True,
        alias="includeExplanations",
        description="Generate natural-language explanations",
    )

    def to_domain(self, user_id: Optional[str] = None) -> RecommendationRequest:
        return RecommendationRequest(
            entities=[Entity(name=e.name, domain_type=e.type, id=e.id) for e in self.entities],
            domains=self.domains,
            limit=self.limit,
            include_explanations=self.include_explanations,
            user_id=user_id,
        )


class EntityOutput(BaseModel):
    id: Optional[str] = None
    name: str
    type: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_entity(cls, entity: Entity) -> "EntityOutput":
        return cls(id=entity.id, name=entity.name, type=entity.domain_type, metadata=entity.metadata)


class RecommendationOutput(BaseModel):
    id: str
    name: str
    type: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    explanation: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_recommendation(cls, rec: Recommendation) -> "RecommendationOutput":
        return cls(
            id=rec.id,
            name=rec.name,
            type=rec.domain_type,
            confidence=rec.confidence,
            explanation=rec.explanation,
            metadata=rec.metadata,
        )


class RecommendationResponseModel(BaseModel):
    """Response schema for cross-domain recommendations."""

    success: bool = True
    input: List[EntityOutput]
    recommendations: Dict[str, List[RecommendationOutput]]
    processing_time: int = Field(..., description="Processing time in milliseconds")
    cached: bool = False
    degraded: Optional[str] = Field(default=None, description="Degradation strategy used, if any")
    metrics: Dict[str, Any] = Field(default_factory=dict)
    metadata: ResponseMetadata = Field(default_factory=ResponseMetadata)

    @classmethod
    def from_result(cls, result: RecommendationResponse) -> "RecommendationResponseModel":
        return cls(
            success=result.success,
            input=[EntityOutput.from_entity(e) for e in result.input],
            recommendations={
                domain: [RecommendationOutput.from_recommendation(r) for r in recs]
                for domain, recs in result.recommendations.items()
            },
            processing_time=result.processing_time,
            cached=result.cached,
            degraded=result.degraded,
            metrics=result.metrics.to_dict(),
        )
