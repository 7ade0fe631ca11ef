"""Tests for the resilient graph service client."""

import asyncio
import time

import httpx
import pytest

from conftest import graph_entity, tag
from tastegraph.models.domain import CulturalTag
from tastegraph.services.graph_client import (
    BUDGET_EXHAUSTED,
    GraphClient,
    ladder_sizes,
    normalize_candidate,
    normalize_tag,
)
from tastegraph.services.retry import RetryPolicy
from tastegraph.utils.errors import UpstreamClientError, UpstreamTimeoutError


TAGS = [
    CulturalTag("urn:tag:a", "Alternative", affinity=0.9),
    CulturalTag("urn:tag:b", "Melancholy", affinity=0.8),
    CulturalTag("urn:tag:c", "Experimental", affinity=0.7),
]


@pytest.fixture
def client(http_client, no_sleep) -> GraphClient:
    return GraphClient(
        base_url="https://graph.test",
        api_key="test-graph-key",
        retry_policy=RetryPolicy(max_retries=3, initial_delay=1.0),
        domain_retry_policy=RetryPolicy(max_retries=1, initial_delay=1.0),
        request_delay=0.0,
        http_client=http_client,
        sleep=no_sleep,
    )


class TestNormalization:
    def test_ladder_never_exceeds_available_tags(self):
        assert ladder_sizes([8, 5, 3, 1], 10) == [8, 5, 3, 1]
        assert ladder_sizes([8, 5, 3, 1], 4) == [4, 3, 1]
        assert ladder_sizes([8, 5, 3, 1], 0) == []

    def test_candidate_needs_id_and_name(self):
        assert normalize_candidate({"name": "No id"}, "movie", []) is None
        assert normalize_candidate({"entity_id": "M-1"}, "movie", []) is None

    def test_candidate_confidence_is_clamped(self):
        candidate = normalize_candidate(graph_entity("M-1", "Heat", popularity=3.2), "movie", ["urn:tag:a"])
        assert candidate.confidence == 1.0
        assert candidate.source_tags == ["urn:tag:a"]
        assert candidate.provenance == "real"

    def test_candidate_without_score_gets_neutral_confidence(self):
        assert normalize_candidate(graph_entity("M-1", "Heat"), "movie", []).confidence == 0.5

    def test_tag_affinity_from_query_block(self):
        parsed = normalize_tag(tag("urn:tag:a", "Alternative", 0.83))
        assert parsed.affinity == 0.83
        assert parsed.tag_id == "urn:tag:a"


class TestTransport:
    """Retry and error mapping."""

    @pytest.mark.anyio
    async def test_server_errors_are_retried_with_backoff(self, client, graph_service, no_sleep):
        """Two 503s then a success: three calls, two backoff delays."""
        graph_service.entities["radiohead"] = [graph_entity("E-1", "Radiohead")]
        responses = iter([503, 503])

        def flaky(request):
            status = next(responses, None)
            return httpx.Response(status) if status else None

        graph_service.failures["search"] = flaky
        entities = await client.search("Radiohead", "artist")

        assert [e.id for e in entities] == ["E-1"]
        assert len(graph_service.calls_of("search")) == 3
        assert no_sleep.delays == [1.0, 2.0]

    @pytest.mark.anyio
    async def test_client_errors_are_not_retried(self, client, graph_service, no_sleep):
        graph_service.failures["insights"] = 404
        with pytest.raises(UpstreamClientError) as exc_info:
            await client.insights("E-1", "artist")
        assert exc_info.value.status_code == 404
        assert len(graph_service.calls_of("insights")) == 1
        assert no_sleep.delays == []

    @pytest.mark.anyio
    async def test_timeouts_are_not_retried(self, client, graph_service):
        graph_service.failures["insights"] = httpx.ReadTimeout
        with pytest.raises(UpstreamTimeoutError):
            await client.insights("E-1", "artist")
        assert len(graph_service.calls_of("insights")) == 1

    @pytest.mark.anyio
    async def test_reserved_ids_skip_insights(self, client, graph_service):
        assert await client.insights("fallback-entity-123", "artist") == []
        assert graph_service.calls == []


class TestSearch:
    @pytest.mark.anyio
    async def test_unknown_name_returns_empty_list(self, client):
        assert await client.search("Nobody Knows", "movie") == []

    @pytest.mark.anyio
    async def test_falls_back_to_insights_search(self, client, graph_service):
        graph_service.failures["search"] = 404
        graph_service.entities["arrival"] = [graph_entity("M-ARRIVAL", "Arrival")]
        entities = await client.search("Arrival", "movie")
        assert [e.id for e in entities] == ["M-ARRIVAL"]
        assert len(graph_service.calls_of("insights_search")) == 1

    @pytest.mark.anyio
    async def test_placeholder_when_everything_fails(self, client, graph_service):
        """A placeholder carries a reserved id and fallback provenance."""
        graph_service.failures["search"] = 404
        graph_service.failures["insights_search"] = 404
        entities = await client.search("Arrival", "movie")
        assert len(entities) == 1
        assert entities[0].id.startswith("fallback-entity-")
        assert entities[0].is_placeholder
        assert entities[0].id == GraphClient.placeholder_entity("arrival", "movie").id


class TestCrossDomain:
    """Per-domain isolation, tag ladder and fallback candidates."""

    @pytest.mark.anyio
    async def test_restricted_domain_is_skipped_and_remembered(self, client, graph_service):
        """A 403 drops the domain from the result and from future requests."""
        graph_service.candidates["urn:entity:movie"] = [graph_entity("M-1", "Heat", 0.8)]
        graph_service.failures["recommendations:urn:entity:book"] = 403

        results = await client.cross_domain_recommendations(TAGS, ["movie", "book"], 5)

        assert {c.domain_type for c in results} == {"movie"}
        assert "book" in client.restricted_domains
        calls_before = len(graph_service.calls)
        await client.cross_domain_recommendations(TAGS, ["book"], 5)
        assert len(graph_service.calls) == calls_before

    @pytest.mark.anyio
    async def test_ladder_steps_down_after_timeout(self, client, graph_service):
        """The full tag set times out; the single strongest tag succeeds."""
        graph_service.candidates["urn:entity:movie"] = [graph_entity("M-1", "Heat", 0.8)]

        def slow_for_many_tags(request):
            if "," in request.url.params["signal.interests.tags"]:
                raise httpx.ReadTimeout("too many tags", request=request)
            return None

        graph_service.failures["recommendations"] = slow_for_many_tags
        results = await client.domain_recommendations(TAGS, "movie", 5)

        assert [c.id for c in results] == ["M-1"]
        assert results[0].source_tags == ["urn:tag:a"]
        sizes = [len(p["signal.interests.tags"].split(",")) for p in graph_service.calls_of("recommendations")]
        assert sizes == [3, 1]

    @pytest.mark.anyio
    async def test_empty_domain_gets_fallback_candidates(self, client, graph_service):
        graph_service.failures["recommendations"] = 500
        results = await client.domain_recommendations(TAGS, "movie", 5)

        assert len(results) == 3
        assert all(c.is_fallback for c in results)
        assert all(c.id.startswith("fallback-movie-") for c in results)
        assert [c.confidence for c in results] == [0.5, 0.4, 0.3]

    def test_fallback_names_for_uncurated_domain(self, client):
        results = client.fallback_candidates("brand", 2, ["urn:tag:a"])
        assert [c.name for c in results] == ["Popular brand recommendation 1", "Popular brand recommendation 2"]

    def test_slow_and_restricted_domains_are_ordered(self, http_client):
        client = GraphClient(
            "https://graph.test",
            "key",
            slow_domain_timeouts={"restaurant": 6.0},
            restricted_domains=["game"],
            http_client=http_client,
        )
        assert client.order_domains(["restaurant", "movie", "game", "movie", "book"]) == (
            ["movie", "book"],
            ["restaurant"],
        )

    @pytest.mark.anyio
    async def test_entity_recommendations_skip_failing_domains(self, client, graph_service):
        graph_service.entity_candidates["urn:entity:book"] = [graph_entity("B-1", "Norwegian Wood", 0.7)]
        graph_service.failures["entity_recommendations:urn:entity:movie"] = 500

        results = await client.get_entity_recommendations("E-1", "artist", ["movie", "book"], 5)

        assert [c.id for c in results] == ["B-1"]
        assert results[0].metadata["seed_entity"] == "E-1"


class TestSlowDomains:
    """Slow domains run after the cheap ones with tighter timeouts and smaller result sets."""

    @pytest.fixture
    def slow_client(self, http_client, no_sleep) -> GraphClient:
        return GraphClient(
            base_url="https://graph.test",
            api_key="test-graph-key",
            timeout=15.0,
            domain_retry_policy=RetryPolicy(max_retries=1, initial_delay=1.0),
            slow_domain_timeouts={"restaurant": 6.0},
            slow_domain_max_limit=2,
            domain_max_limit=10,
            request_delay=0.0,
            http_client=http_client,
            sleep=no_sleep,
        )

    @pytest.mark.anyio
    async def test_slow_domain_gets_tighter_timeout_and_limit(self, slow_client, graph_service):
        graph_service.candidates["urn:entity:movie"] = [graph_entity("M-1", "Heat", 0.8)]
        graph_service.candidates["urn:entity:place"] = [
            graph_entity(f"R-{i}", f"Restaurant {i}", 0.9 - i * 0.1) for i in range(4)
        ]
        read_timeouts = {}

        def record_timeout(request):
            read_timeouts[request.url.params["filter.type"]] = request.extensions["timeout"]["read"]
            return None

        graph_service.failures["recommendations"] = record_timeout

        results = await slow_client.cross_domain_recommendations(TAGS, ["restaurant", "movie"], 5)

        calls = graph_service.calls_of("recommendations")
        assert [p["filter.type"] for p in calls] == ["urn:entity:movie", "urn:entity:place"]
        assert [p["limit"] for p in calls] == ["5", "2"]
        assert read_timeouts == {"urn:entity:movie": 15.0, "urn:entity:place": 6.0}
        assert [c.id for c in results if c.domain_type == "restaurant"] == ["R-0", "R-1"]

    @pytest.mark.anyio
    async def test_entity_recommendations_use_slow_domain_limit(self, slow_client, graph_service):
        await slow_client.get_entity_recommendations("E-1", "artist", ["restaurant"], 5)
        assert graph_service.calls_of("entity_recommendations")[0]["limit"] == "2"


class TestRequestDeadline:
    """A shared deadline caps every domain's budget."""

    @pytest.mark.anyio
    async def test_passed_deadline_skips_upstream(self, client, graph_service):
        results = await client.cross_domain_recommendations(TAGS, ["movie"], 5, deadline=time.monotonic() - 1)

        assert graph_service.calls == []
        assert all(c.is_fallback for c in results)
        assert {c.metadata["reason"] for c in results} == {BUDGET_EXHAUSTED}

    @pytest.mark.anyio
    async def test_deadline_cuts_a_hanging_domain_short(self, client, graph_service):
        """The domain budget is 8s, but only a fraction of a second is left in the request."""

        async def hang(request):
            await asyncio.sleep(5)
            return httpx.Response(200, json={"results": {"entities": []}})

        graph_service.failures["recommendations"] = hang
        started = time.monotonic()

        results = await client.domain_recommendations(TAGS, "movie", 5, deadline=started + 0.2)

        assert time.monotonic() - started < 2.0
        assert all(c.is_fallback for c in results)
        assert results[0].metadata["reason"] == BUDGET_EXHAUSTED

    @pytest.mark.anyio
    async def test_passed_deadline_skips_entity_recommendations(self, client, graph_service):
        results = await client.get_entity_recommendations(
            "E-1", "artist", ["movie", "book"], 5, deadline=time.monotonic() - 1
        )
        assert results == []
        assert graph_service.calls == []
