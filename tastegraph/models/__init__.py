"""Models module - domain types used across the services."""

from tastegraph.models.domain import (
    PROVENANCE_FALLBACK,
    PROVENANCE_REAL,
    CacheRecord,
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

__all__ = [
    "PROVENANCE_FALLBACK",
    "PROVENANCE_REAL",
    "CacheRecord",
    "Candidate",
    "CulturalTag",
    "CulturalTheme",
    "DomainType",
    "Entity",
    "ProcessingMetrics",
    "RateLimitResult",
    "Recommendation",
    "RecommendationsByDomain",
    "TasteProfile",
    "is_reserved_id",
    "merge_themes",
]
