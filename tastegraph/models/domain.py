"""Request-scoped domain types shared by the client, cache and orchestrator.

Payloads that go through the cache are stored as plain dicts (``to_dict``)
and rebuilt with ``from_dict`` so a cached object can never be mutated by a
later request.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set


PROVENANCE_REAL = "real"
PROVENANCE_FALLBACK = "fallback"

# Ids the upstream graph never issues. Looking them up wastes a round trip.
RESERVED_ID_PREFIXES = ("fallback-", "rec-")


class DomainType(str, Enum):
    MOVIE = "movie"
    BOOK = "book"
    SONG = "song"
    ARTIST = "artist"
    RESTAURANT = "restaurant"
    BRAND = "brand"
    TV_SHOW = "tv_show"
    PODCAST = "podcast"
    GAME = "game"

    @classmethod
    def values(cls) -> List[str]:
        return [member.value for member in cls]


def is_reserved_id(entity_id: Optional[str]) -> bool:
    """True for empty ids and ids carrying a placeholder prefix."""
    if not entity_id:
        return True
    return entity_id.startswith(RESERVED_ID_PREFIXES)


@dataclass
class Entity:
    """A named thing in some domain. ``id`` is set once resolved against the graph."""

    name: str
    domain_type: str
    id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def provenance(self) -> str:
        return self.metadata.get("provenance", PROVENANCE_REAL)

    @property
    def is_placeholder(self) -> bool:
        return self.provenance == PROVENANCE_FALLBACK or (self.id is not None and is_reserved_id(self.id))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.domain_type,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Entity":
        return cls(
            id=data.get("id"),
            name=data.get("name", ""),
            domain_type=data.get("type") or data.get("domain_type", ""),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class CulturalTag:
    """Weighted descriptor the graph associates with an entity."""

    tag_id: str
    name: str
    applicable_types: Set[str] = field(default_factory=set)
    subtype: str = "general"
    affinity: float = 0.5

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tag_id": self.tag_id,
            "name": self.name,
            "types": sorted(self.applicable_types),
            "subtype": self.subtype,
            "affinity": self.affinity,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CulturalTag":
        return cls(
            tag_id=str(data.get("tag_id", "")),
            name=str(data.get("name", "")),
            applicable_types=set(data.get("types") or []),
            subtype=data.get("subtype") or "general",
            affinity=clamp(float(data.get("affinity", 0.5))),
        )


@dataclass
class CulturalTheme:
    """Deduplicated tag, keyed by case-insensitive name."""

    tag_id: str
    name: str
    affinity: float
    applicable_types: Set[str] = field(default_factory=set)
    category: str = "general"

    @property
    def key(self) -> str:
        return self.name.lower()

    def merge(self, other: "CulturalTheme") -> None:
        """Absorb a theme with the same name: keep the higher affinity, union the domains."""
        self.affinity = max(self.affinity, other.affinity)
        self.applicable_types = self.applicable_types | other.applicable_types

    @classmethod
    def from_tag(cls, tag: CulturalTag, entity_type: Optional[str] = None) -> "CulturalTheme":
        types = set(tag.applicable_types)
        if not types and entity_type:
            types = {entity_type}
        return cls(
            tag_id=tag.tag_id,
            name=tag.name,
            affinity=tag.affinity,
            applicable_types=types,
            category=tag.subtype or "general",
        )

    def to_tag(self) -> CulturalTag:
        return CulturalTag(
            tag_id=self.tag_id,
            name=self.name,
            applicable_types=set(self.applicable_types),
            subtype=self.category,
            affinity=self.affinity,
        )


def merge_themes(themes: Iterable[CulturalTheme]) -> List[CulturalTheme]:
    """Deduplicate themes by lowercase name and sort by affinity descending."""
    merged: Dict[str, CulturalTheme] = {}
    for theme in themes:
        existing = merged.get(theme.key)
        if existing is None:
            merged[theme.key] = CulturalTheme(
                tag_id=theme.tag_id,
                name=theme.name,
                affinity=theme.affinity,
                applicable_types=set(theme.applicable_types),
                category=theme.category,
            )
        else:
            existing.merge(theme)
    return sorted(merged.values(), key=lambda t: t.affinity, reverse=True)


@dataclass
class TasteProfile:
    input_entities: List[Entity]
    themes: List[CulturalTheme] = field(default_factory=list)

    @property
    def resolved_entities(self) -> List[Entity]:
        return [e for e in self.input_entities if e.id and not is_reserved_id(e.id)]

    def top_tags(self, limit: int) -> List[CulturalTag]:
        return [theme.to_tag() for theme in self.themes[:limit]]


@dataclass
class Candidate:
    """A cross-domain candidate as returned by the graph (or manufactured as fallback)."""

    id: str
    name: str
    domain_type: str
    confidence: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def provenance(self) -> str:
        return self.metadata.get("provenance", PROVENANCE_REAL)

    @property
    def is_fallback(self) -> bool:
        return self.provenance == PROVENANCE_FALLBACK or self.id.startswith("fallback-")

    @property
    def source_tags(self) -> List[str]:
        return list(self.metadata.get("source_tags") or [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.domain_type,
            "confidence": self.confidence,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Candidate":
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            domain_type=data.get("type") or data.get("domain_type", ""),
            confidence=clamp(float(data.get("confidence", 0.0))),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class Recommendation:
    id: str
    name: str
    domain_type: str
    confidence: float
    explanation: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def provenance(self) -> str:
        return self.metadata.get("provenance", PROVENANCE_REAL)

    @classmethod
    def from_candidate(cls, candidate: Candidate, explanation: str = "") -> "Recommendation":
        return cls(
            id=candidate.id,
            name=candidate.name,
            domain_type=candidate.domain_type,
            confidence=candidate.confidence,
            explanation=explanation,
            metadata=dict(candidate.metadata),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.domain_type,
            "confidence": self.confidence,
            "explanation": self.explanation,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Recommendation":
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            domain_type=data.get("type") or data.get("domain_type", ""),
            confidence=clamp(float(data.get("confidence", 0.0))),
            explanation=data.get("explanation") or "",
            metadata=dict(data.get("metadata") or {}),
        )


RecommendationsByDomain = Dict[str, List[Recommendation]]


@dataclass
class CacheRecord:
    namespace: str
    key: str
    payload: Any
    quality: str
    expires_at: Optional[float]

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) >= self.expires_at


@dataclass
class ProcessingMetrics:
    """Per-request counters, reported back on the response."""

    upstream_calls: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    explanation_calls: int = 0
    entities_processed: int = 0
    recommendations_generated: int = 0
    total_processing_time: float = 0.0

    @property
    def mostly_cached(self) -> bool:
        return self.cache_hits > self.cache_misses

    def to_dict(self) -> Dict[str, Any]:
        return {
            "upstream_calls": self.upstream_calls,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "explanation_calls": self.explanation_calls,
            "entities_processed": self.entities_processed,
            "recommendations_generated": self.recommendations_generated,
            "total_processing_time": round(self.total_processing_time, 4),
        }


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_time: float
    tier: str = "free"
    retry_after: Optional[int] = None


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))
