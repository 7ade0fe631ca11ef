"""Shared fixtures: a scripted graph service behind httpx.MockTransport, a fake clock and a no-op sleep."""

import os

os.environ["LOG_TO_FILE"] = "false"
os.environ["ENVIRONMENT"] = "test"
os.environ["OPENAI_API_KEY"] = ""
os.environ.setdefault("GRAPH_API_KEY", "test-graph-key")

from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest

from tastegraph.config.settings import Settings
from tastegraph.services.cache_backend import InMemoryCacheBackend


GRAPH_BASE_URL = "https://graph.test"


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Stand-in for asyncio.sleep that returns immediately and remembers the delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeGraphService:
    """Scripted cultural graph service.

    ``entities`` maps a lowercase name to its search hits, ``tags`` maps an
    entity id to its tag list and ``candidates`` maps an insights filter type
    (``urn:entity:movie``) to the entities returned for it. ``failures`` maps a
    request kind, or ``kind:filter.type``, to a status code or an exception
    class to raise instead of answering.
    """

    def __init__(self):
        self.entities: Dict[str, List[Dict[str, Any]]] = {}
        self.tags: Dict[str, List[Dict[str, Any]]] = {}
        self.candidates: Dict[str, List[Dict[str, Any]]] = {}
        self.entity_candidates: Dict[str, List[Dict[str, Any]]] = {}
        self.failures: Dict[str, Any] = {}
        self.calls: List[Tuple[str, Dict[str, str]]] = []

    @staticmethod
    def kind(request: httpx.Request) -> str:
        params = request.url.params
        if request.url.path == "/search":
            return "search"
        if "signal.interests.tags" in params:
            return "recommendations"
        if params.get("filter.type") == "urn:tag":
            return "insights"
        if "signal.interests.entities" in params:
            return "entity_recommendations"
        return "insights_search"

    def calls_of(self, kind: str) -> List[Dict[str, str]]:
        return [params for k, params in self.calls if k == kind]

    def _failure(self, kind: str, request: httpx.Request) -> Optional[Any]:
        scoped = f"{kind}:{request.url.params.get('filter.type', '')}"
        if scoped in self.failures:
            return self.failures[scoped]
        return self.failures.get(kind)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        kind = self.kind(request)
        params = dict(request.url.params)
        self.calls.append((kind, params))

        failure = self._failure(kind, request)
        if isinstance(failure, int):
            return httpx.Response(failure, json={"error": "scripted failure"})
        if isinstance(failure, type) and issubclass(failure, Exception):
            raise failure("scripted failure", request=request)
        if callable(failure):
            outcome = failure(request)
            if outcome is not None:
                return outcome

        if kind in ("search", "insights_search"):
            name = (params.get("q") or params.get("query") or "").lower()
            return httpx.Response(200, json={"results": self.entities.get(name, [])})
        if kind == "insights":
            entity_id = params["signal.interests.entities"]
            return httpx.Response(200, json={"results": {"tags": self.tags.get(entity_id, [])}})
        if kind == "entity_recommendations":
            found = self.entity_candidates.get(params["filter.type"], [])
            return httpx.Response(200, json={"results": {"entities": found}})
        found = self.candidates.get(params["filter.type"], [])
        return httpx.Response(200, json={"results": {"entities": found}})


def tag(tag_id: str, name: str, affinity: float) -> Dict[str, Any]:
    return {"tag_id": tag_id, "name": name, "subtype": "urn:tag:genre:media", "query": {"affinity": affinity}}


def graph_entity(entity_id: str, name: str, popularity: Optional[float] = None) -> Dict[str, Any]:
    raw: Dict[str, Any] = {"entity_id": entity_id, "name": name}
    if popularity is not None:
        raw["popularity"] = popularity
    return raw


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def no_sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def backend(clock) -> InMemoryCacheBackend:
    return InMemoryCacheBackend(max_entries=100, clock=clock)


@pytest.fixture
def graph_service() -> FakeGraphService:
    return FakeGraphService()


@pytest.fixture
def radiohead_service(graph_service) -> FakeGraphService:
    """Radiohead resolves to three tags and five movie candidates."""
    graph_service.entities["radiohead"] = [graph_entity("E-RADIOHEAD", "Radiohead")]
    graph_service.tags["E-RADIOHEAD"] = [
        tag("urn:tag:genre:alternative", "Alternative", 0.9),
        tag("urn:tag:keyword:melancholy", "Melancholy", 0.8),
        tag("urn:tag:keyword:experimental", "Experimental", 0.7),
    ]
    graph_service.candidates["urn:entity:movie"] = [
        graph_entity("M-1", "Eternal Sunshine of the Spotless Mind", 0.92),
        graph_entity("M-2", "Lost in Translation", 0.88),
        graph_entity("M-3", "Children of Men", 0.81),
        graph_entity("M-4", "Under the Skin", 0.74),
        graph_entity("M-5", "Blade Runner 2049", 0.69),
    ]
    return graph_service


@pytest.fixture
def http_client(graph_service) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(graph_service), base_url=GRAPH_BASE_URL)


@pytest.fixture
def test_settings() -> Settings:
    """Settings with every delay zeroed so retries and staggering do not slow the suite."""
    return Settings(
        ENVIRONMENT="test",
        GRAPH_API_URL=GRAPH_BASE_URL,
        GRAPH_API_KEY="test-graph-key",
        OPENAI_API_KEY="",
        GRAPH_INITIAL_DELAY_SECONDS=0.0,
        DOMAIN_REQUEST_DELAY_SECONDS=0.0,
        EXPLANATION_BATCH_DELAY_SECONDS=0.0,
        LOG_TO_FILE=False,
    )
