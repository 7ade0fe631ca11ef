"""Tests for the quality-aware cache in front of the graph client."""

from typing import List

import pytest

from tastegraph.models.domain import PROVENANCE_FALLBACK, Candidate, CulturalTag, Entity, ProcessingMetrics
from tastegraph.services.cached_graph import (
    NS_INSIGHTS,
    NS_RECOMMENDATIONS,
    NS_SEARCH,
    QualityAwareCache,
    insights_key,
    recommendations_key,
    search_key,
)
from tastegraph.services.graph_client import GraphClient
from tastegraph.utils.errors import UpstreamClientError


class StubGraphClient:
    """Graph client double that counts calls and replays scripted results."""

    def __init__(self):
        self.search_results: List[object] = []
        self.insight_results: List[object] = []
        self.recommendation_results: List[object] = []
        self.calls = {"search": 0, "insights": 0, "recommendations": 0}

    @staticmethod
    def _next(results):
        outcome = results.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def search(self, name, domain_type):
        self.calls["search"] += 1
        return self._next(self.search_results)

    async def insights(self, entity_id, domain_type):
        self.calls["insights"] += 1
        return self._next(self.insight_results)

    async def cross_domain_recommendations(self, tags, domains, limit=5, deadline=None):
        self.calls["recommendations"] += 1
        return self._next(self.recommendation_results)

    def fallback_candidates(self, domain, limit, tag_ids, reason=""):
        return [Candidate(f"fallback-{domain}-0-x", "X", domain, 0.5, {"provenance": PROVENANCE_FALLBACK})]


class BrokenBackend:
    """Backend whose every read and write fails."""

    async def get_record(self, namespace, key):
        raise ConnectionError("cache down")

    async def set(self, namespace, key, value, ttl_seconds=None, quality="real"):
        raise ConnectionError("cache down")


UNAVAILABLE = UpstreamClientError("graph down", 503, "search")
TAGS = [CulturalTag("urn:tag:a", "Alternative", affinity=0.9)]


@pytest.fixture
def stub() -> StubGraphClient:
    return StubGraphClient()


@pytest.fixture
def cache(stub, backend) -> QualityAwareCache:
    return QualityAwareCache(stub, backend, real_ttl=86400, fallback_ttl=300, insights_ttl=86400)


class TestKeys:
    def test_search_key_ignores_case_and_whitespace(self):
        assert search_key("Radiohead", "artist") == search_key("  radiohead ", "ARTIST")

    def test_recommendations_key_ignores_order_and_duplicates(self):
        assert recommendations_key(["b", "a", "a"], ["movie", "book"]) == recommendations_key(["a", "b"], ["book", "movie"])
        assert recommendations_key(["a"], ["movie"]) != recommendations_key(["a"], ["book"])

    def test_insights_key_format(self):
        assert insights_key("E-1", "artist") == "E-1:artist"


class TestSearchCaching:
    @pytest.mark.anyio
    async def test_real_results_are_served_from_cache(self, cache, stub):
        stub.search_results = [[Entity("Radiohead", "artist", id="E-1")]]
        metrics = ProcessingMetrics()

        await cache.search("Radiohead", "artist", metrics=metrics)
        second = await cache.search("radiohead", "artist", metrics=metrics)

        assert [e.id for e in second] == ["E-1"]
        assert stub.calls["search"] == 1
        assert (metrics.cache_hits, metrics.cache_misses, metrics.upstream_calls) == (1, 1, 1)

    @pytest.mark.anyio
    async def test_fallback_results_are_kept_briefly_and_retried(self, cache, stub, backend, clock):
        """A cached placeholder is a soft miss: the client is asked again."""
        placeholder = GraphClient.placeholder_entity("Radiohead", "artist")
        stub.search_results = [[placeholder], [Entity("Radiohead", "artist", id="E-1")]]

        await cache.search("Radiohead", "artist")
        record = await backend.get_record(NS_SEARCH, search_key("Radiohead", "artist"))
        assert record.quality == PROVENANCE_FALLBACK
        assert record.expires_at - clock() == 300

        refreshed = await cache.search("Radiohead", "artist")
        assert [e.id for e in refreshed] == ["E-1"]
        assert stub.calls["search"] == 2

    @pytest.mark.anyio
    async def test_stale_fallback_served_when_upstream_fails(self, cache, stub):
        placeholder = GraphClient.placeholder_entity("Radiohead", "artist")
        stub.search_results = [[placeholder], UNAVAILABLE]

        await cache.search("Radiohead", "artist")
        served = await cache.search("Radiohead", "artist")

        assert [e.id for e in served] == [placeholder.id]

    @pytest.mark.anyio
    async def test_cache_failures_never_fail_the_call(self, stub):
        cache = QualityAwareCache(stub, BrokenBackend())
        stub.search_results = [[Entity("Radiohead", "artist", id="E-1")]]
        assert [e.id for e in await cache.search("Radiohead", "artist")] == ["E-1"]


class TestInsightsCaching:
    @pytest.mark.anyio
    async def test_reserved_ids_never_reach_the_client(self, cache, stub):
        assert await cache.insights("fallback-entity-abc", "artist") == []
        assert await cache.insights("rec-1", "artist") == []
        assert stub.calls["insights"] == 0

    @pytest.mark.anyio
    async def test_empty_insights_are_not_cached(self, cache, stub, backend):
        stub.insight_results = [[], [CulturalTag("urn:tag:a", "Alternative", affinity=0.9)]]
        assert await cache.insights("E-1", "artist") == []
        assert await backend.get(NS_INSIGHTS, "E-1:artist") is None
        tags = await cache.insights("E-1", "artist")
        assert [t.tag_id for t in tags] == ["urn:tag:a"]

    @pytest.mark.anyio
    async def test_invalidate_entity_drops_every_type(self, cache, backend):
        await backend.set(NS_INSIGHTS, "E-1:artist", [])
        await backend.set(NS_INSIGHTS, "E-1:movie", [])
        await backend.set(NS_INSIGHTS, "E-2:movie", [])
        assert await cache.invalidate_entity("E-1") == 2
        assert await backend.keys(NS_INSIGHTS) == ["E-2:movie"]


class TestRecommendationCaching:
    @pytest.mark.anyio
    async def test_upstream_failure_yields_fallback_candidates(self, cache, stub, backend):
        stub.recommendation_results = [UNAVAILABLE]
        candidates = await cache.cross_domain_recommendations(TAGS, ["movie", "book"], 5)

        assert {c.domain_type for c in candidates} == {"movie", "book"}
        assert all(c.is_fallback for c in candidates)
        record = await backend.get_record(NS_RECOMMENDATIONS, recommendations_key(["urn:tag:a"], ["movie", "book"]))
        assert record.quality == PROVENANCE_FALLBACK

    @pytest.mark.anyio
    async def test_empty_result_is_cached_as_fallback(self, cache, stub, backend):
        stub.recommendation_results = [[]]
        await cache.cross_domain_recommendations(TAGS, ["movie"], 5)
        record = await backend.get_record(NS_RECOMMENDATIONS, recommendations_key(["urn:tag:a"], ["movie"]))
        assert record.quality == PROVENANCE_FALLBACK

    @pytest.mark.anyio
    async def test_real_candidates_hit_regardless_of_domain_order(self, cache, stub):
        stub.recommendation_results = [[Candidate("M-1", "Heat", "movie", 0.8, {"provenance": "real"})]]
        await cache.cross_domain_recommendations(TAGS, ["movie", "book"], 5)
        again = await cache.cross_domain_recommendations(TAGS, ["book", "movie"], 5)
        assert [c.id for c in again] == ["M-1"]
        assert stub.calls["recommendations"] == 1


class TestWarmup:
    @pytest.mark.anyio
    async def test_warmup_counts_successes(self, cache, stub):
        stub.search_results = [[Entity("Radiohead", "artist", id="E-1")], UNAVAILABLE]
        stub.insight_results = [[CulturalTag("urn:tag:a", "Alternative", affinity=0.9)]]
        outcome = await cache.warmup([{"name": "Radiohead", "type": "artist"}, {"name": "Heat", "type": "movie"}])
        assert outcome == {"requested": 2, "warmed": 1}
