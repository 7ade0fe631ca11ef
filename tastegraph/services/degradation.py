"""
Last-resort recommendation sources for when the graph service is unavailable.

Strategies are tried in order and the first one that produces anything wins:

1. history    - the caller's own recent results, if they look relevant to the input
2. popularity - items that showed up most often in everyone's recent results
3. static     - a small hardcoded catalog, which cannot fail
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from tastegraph.config.logger import app_logger
from tastegraph.config.settings import Settings
from tastegraph.models.domain import PROVENANCE_FALLBACK, Recommendation, RecommendationsByDomain
from tastegraph.services.history_store import HistoryStore


STRATEGY_HISTORY = "history"
STRATEGY_POPULARITY = "popularity"
STRATEGY_STATIC = "static"

POPULAR_PREFIX = "Popular choice based on recent user preferences."


def _static(item_id: str, name: str, domain: str, confidence: float, explanation: str, **metadata: Any) -> Recommendation:
    return Recommendation(
        id=item_id,
        name=name,
        domain_type=domain,
        confidence=confidence,
        explanation=explanation,
        metadata={"provenance": PROVENANCE_FALLBACK, "source": "static_catalog", **metadata},
    )


STATIC_CATALOG: Dict[str, List[Recommendation]] = {
    "movie": [
        _static("fallback-movie-1", "The Shawshank Redemption", "movie", 0.7,
                "A highly acclaimed drama that appeals to diverse tastes.", year=1994, genre="Drama"),
        _static("fallback-movie-2", "Inception", "movie", 0.7,
                "A mind-bending thriller with broad appeal.", year=2010, genre="Sci-Fi"),
    ],
    "book": [
        _static("fallback-book-1", "The Alchemist", "book", 0.7,
                "A philosophical novel with universal themes.", author="Paulo Coelho"),
        _static("fallback-book-2", "1984", "book", 0.7,
                "A classic dystopian novel with enduring relevance.", author="George Orwell"),
    ],
    "song": [
        _static("fallback-song-1", "Bohemian Rhapsody", "song", 0.7,
                "An iconic rock opera with universal appeal.", artist="Queen"),
    ],
    "artist": [
        _static("fallback-artist-1", "The Beatles", "artist", 0.8,
                "Legendary band that influenced generations of musicians.", genre="Rock"),
    ],
    "restaurant": [
        _static("fallback-restaurant-1", "Local Italian Bistro", "restaurant", 0.6,
                "Authentic Italian cuisine with cozy atmosphere.", cuisine="Italian"),
    ],
    "tv_show": [
        _static("fallback-tv-1", "Breaking Bad", "tv_show", 0.8,
                "Critically acclaimed drama series.", genre="Drama"),
    ],
    "podcast": [
        _static("fallback-podcast-1", "This American Life", "podcast", 0.7,
                "Award-winning storytelling podcast.", category="Society & Culture"),
    ],
    "game": [
        _static("fallback-game-1", "The Legend of Zelda", "game", 0.8,
                "Open-world adventure game.", platform="Nintendo Switch"),
    ],
    "brand": [
        _static("fallback-brand-1", "Apple", "brand", 0.7,
                "Innovative technology brand.", category="Technology"),
    ],
}


def levenshtein_similarity(first: str, second: str) -> float:
    """Normalized edit-distance similarity in [0, 1]; 1.0 means identical."""
    if not first:
        return 1.0 if not second else 0.0
    if not second:
        return 0.0

    previous = list(range(len(first) + 1))
    for j, char_b in enumerate(second, start=1):
        current = [j] + [0] * len(first)
        for i, char_a in enumerate(first, start=1):
            cost = 0 if char_a == char_b else 1
            current[i] = min(previous[i] + 1, current[i - 1] + 1, previous[i - 1] + cost)
        previous = current

    longest = max(len(first), len(second))
    return (longest - previous[len(first)]) / longest


def relevance_score(input_names: Sequence[str], recommendations: RecommendationsByDomain) -> float:
    """Average per-item similarity between the input names and a historical result."""
    names = [n.lower().strip() for n in input_names if n.strip()]
    total = 0.0
    items = 0
    for recs in recommendations.values():
        for rec in recs:
            items += 1
            rec_name = rec.name.lower()
            for name in names:
                if name in rec_name or rec_name in name:
                    total += 0.8
                elif levenshtein_similarity(name, rec_name) > 0.6:
                    total += 0.4
    return total / items if items else 0.0


@dataclass
class DegradedResult:
    strategy: str
    recommendations: RecommendationsByDomain
    relevance: Optional[float] = None


class DegradationChain:
    def __init__(
        self,
        history: HistoryStore,
        relevance_threshold: float = 0.3,
        user_lookback: int = 10,
        popularity_lookback_days: int = 7,
        popularity_max_entries: int = 50,
    ):
        self.history = history
        self.relevance_threshold = relevance_threshold
        self.user_lookback = user_lookback
        self.popularity_lookback_days = popularity_lookback_days
        self.popularity_max_entries = popularity_max_entries

    @classmethod
    def from_settings(cls, settings: Settings, history: HistoryStore) -> "DegradationChain":
        return cls(
            history,
            relevance_threshold=settings.HISTORY_RELEVANCE_THRESHOLD,
            user_lookback=settings.HISTORY_USER_LOOKBACK,
            popularity_lookback_days=settings.POPULARITY_LOOKBACK_DAYS,
            popularity_max_entries=settings.POPULARITY_MAX_ENTRIES,
        )

    async def recommend(
        self,
        input_names: Sequence[str],
        domains: Sequence[str],
        limit: int,
        user_id: Optional[str] = None,
    ) -> DegradedResult:
        """Walk the strategies in order. Always returns; the static catalog is the floor."""
        if user_id:
            try:
                found = await self.from_history(input_names, domains, limit, user_id)
                if found is not None:
                    app_logger.info(f"[Degradation] Served history match (relevance {found.relevance:.2f}) for {user_id}")
                    return found
            except Exception as exc:
                app_logger.error(f"[Degradation] Error getting history recommendations: {exc}")

        try:
            popular = await self.from_popularity(domains, limit)
            if popular:
                app_logger.info(f"[Degradation] Served popular recommendations for {len(popular)} domains")
                return DegradedResult(STRATEGY_POPULARITY, popular)
        except Exception as exc:
            app_logger.error(f"[Degradation] Error getting popular recommendations: {exc}")

        app_logger.info("[Degradation] Using static fallback recommendations")
        return DegradedResult(STRATEGY_STATIC, self.from_static_catalog(domains, limit))

    async def from_history(
        self,
        input_names: Sequence[str],
        domains: Sequence[str],
        limit: int,
        user_id: str,
    ) -> Optional[DegradedResult]:
        entries = await self.history.recent_for_user(user_id, self.user_lookback)
        best: Tuple[float, Optional[RecommendationsByDomain]] = (0.0, None)
        for entry in entries:
            score = relevance_score(input_names, entry.recommendations)
            if score > best[0]:
                best = (score, entry.recommendations)

        score, recommendations = best
        if recommendations is None or score <= self.relevance_threshold:
            return None

        selected: RecommendationsByDomain = {}
        for domain, recs in recommendations.items():
            if domains and domain not in domains:
                continue
            selected[domain] = [self._tag(rec, STRATEGY_HISTORY) for rec in recs[:limit]]
        if not any(selected.values()):
            return None
        return DegradedResult(STRATEGY_HISTORY, selected, relevance=score)

    async def from_popularity(self, domains: Sequence[str], limit: int) -> RecommendationsByDomain:
        entries = await self.history.recent_global(
            self.popularity_lookback_days * 24 * 60 * 60,
            self.popularity_max_entries,
        )
        counts: Dict[str, Tuple[Recommendation, int]] = {}
        for entry in entries:
            for domain, recs in entry.recommendations.items():
                if domains and domain not in domains:
                    continue
                for rec in recs:
                    key = f"{domain}:{rec.name.lower()}"
                    item, count = counts.get(key, (rec, 0))
                    counts[key] = (item, count + 1)

        result: RecommendationsByDomain = {}
        for domain in domains or sorted({key.split(":", 1)[0] for key in counts}):
            ranked = sorted(
                ((item, count) for key, (item, count) in counts.items() if key.startswith(f"{domain}:")),
                key=lambda pair: pair[1],
                reverse=True,
            )[:limit]
            if ranked:
                result[domain] = [self._popular(item, count) for item, count in ranked]
        return result

    def from_static_catalog(self, domains: Sequence[str], limit: int) -> RecommendationsByDomain:
        result: RecommendationsByDomain = {}
        for domain in domains or list(STATIC_CATALOG):
            items = STATIC_CATALOG.get(domain)
            if items:
                result[domain] = [
                    Recommendation.from_dict({**rec.to_dict(), "metadata": {**rec.metadata, "degraded": STRATEGY_STATIC}})
                    for rec in items[:limit]
                ]
        return result

    @staticmethod
    def _tag(rec: Recommendation, strategy: str) -> Recommendation:
        copy = Recommendation.from_dict(rec.to_dict())
        copy.metadata["degraded"] = strategy
        return copy

    @staticmethod
    def _popular(rec: Recommendation, count: int) -> Recommendation:
        copy = DegradationChain._tag(rec, STRATEGY_POPULARITY)
        copy.explanation = f"{POPULAR_PREFIX} {rec.explanation}".strip()
        copy.metadata["popularity"] = True
        copy.metadata["occurrences"] = count
        return copy


async def check_external_service_health(graph_client: Any = None, explainer: Any = None) -> Dict[str, bool]:
    """Whether the graph and explanation services are configured and answering."""
    results = {"graph": False, "explanations": False, "overall": False}

    if graph_client is not None:
        try:
            results["graph"] = await graph_client.ping()
        except Exception as exc:
            app_logger.warning(f"[Degradation] Graph service check failed: {exc}")

    if explainer is not None:
        try:
            results["explanations"] = explainer.is_configured
        except Exception as exc:
            app_logger.warning(f"[Degradation] Explanation service check failed: {exc}")

    results["overall"] = results["graph"] and results["explanations"]
    return results
