"""HTTP tests for the recommendation, admin and health endpoints."""

import os
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from tastegraph.config.settings import settings
from tastegraph.main import create_app
from tastegraph.services.container import build_container
from tastegraph.utils.local_tokens import create_access_token


ADMIN_EMAIL = "admin@example.com"


@pytest.fixture
def api_settings(test_settings):
    test_settings.RATE_LIMIT_TIERS = {
        "free": {"requests_per_minute": 2, "requests_per_hour": 100, "requests_per_day": 500, "burst_limit": 15},
        "premium": {"requests_per_minute": 50, "requests_per_hour": 1000, "requests_per_day": 10000, "burst_limit": 75},
    }
    return test_settings


@pytest.fixture
def client(api_settings, http_client, clock, radiohead_service, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_EMAILS", [ADMIN_EMAIL])
    app = create_app(lambda: build_container(api_settings, http_client=http_client, clock=clock))
    with TestClient(app) as test_client:
        yield test_client


def auth_header(user_id: str = "user-1", email: str = "user@example.com") -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id, email)}"}


RADIOHEAD = {"entities": [{"name": "Radiohead", "type": "artist"}], "domains": ["movie"], "limit": 3}


class TestHealthEndpoints:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "operational"

    def test_status_with_ci_variables(self, client):
        """GIT_SHA takes priority over GITHUB_SHA."""
        with patch.dict(os.environ, {"BUILD_NUMBER": "123", "GIT_SHA": "abc123", "GITHUB_SHA": "other"}):
            data = client.get("/status").json()
        assert data == {"status": "ok", "build": "123", "sha": "abc123", "env": "test"}

    def test_health_reports_cache_and_configuration(self, client):
        data = client.get("/health").json()
        assert data["status"] == "ok"
        assert data["cache"] == "available"
        assert data["graph_configured"] is True
        assert data["explanations_configured"] is False
        assert "game" in data["restricted_domains"]


class TestRecommendationEndpoint:
    def test_recommendations_for_anonymous_caller(self, client):
        response = client.post("/v1/recommendations", json=RADIOHEAD)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert [r["name"] for r in body["recommendations"]["movie"]] == [
            "Eternal Sunshine of the Spotless Mind",
            "Lost in Translation",
            "Children of Men",
        ]
        assert body["input"][0]["id"] == "E-RADIOHEAD"
        assert isinstance(body["processing_time"], int)
        assert "X-RateLimit-Limit" in response.headers

    def test_camel_case_explanation_flag(self, client):
        response = client.post("/v1/recommendations", json={**RADIOHEAD, "includeExplanations": False})
        assert response.status_code == 200
        assert all(r["explanation"] == "" for r in response.json()["recommendations"]["movie"])

    def test_empty_entities_is_bad_request(self, client, radiohead_service):
        response = client.post("/v1/recommendations", json={"entities": []})

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["errors"][0]["field"] == "entities"
        assert radiohead_service.calls == []

    def test_invalid_request_does_not_create_a_profile(self, client, radiohead_service):
        """Validation runs before the authenticated caller's profile is written."""
        response = client.post("/v1/recommendations", json={"entities": []}, headers=auth_header())

        assert response.status_code == 400
        assert client.app.state.container.backend.stats()["namespaces"] == {}
        assert radiohead_service.calls == []

    def test_malformed_body_is_bad_request(self, client):
        response = client.post("/v1/recommendations", json={"entities": [{"name": "Radiohead"}]})
        assert response.status_code == 400
        assert response.json()["errors"]

    def test_rate_limited_caller_gets_429(self, client):
        headers = auth_header()
        for _ in range(2):
            assert client.post("/v1/recommendations", json=RADIOHEAD, headers=headers).status_code == 200

        response = client.post("/v1/recommendations", json=RADIOHEAD, headers=headers)

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 1
        assert response.headers["X-RateLimit-Limit"] == "2"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.json()["retry_after"] == int(response.headers["Retry-After"])

    def test_invalid_token_is_unauthorized(self, client):
        response = client.post("/v1/recommendations", json=RADIOHEAD, headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_describe_endpoint(self, client):
        data = client.get("/v1/recommendations").json()
        assert data["method"] == "POST"
        assert "movie" in data["supported_types"]


class TestAdminEndpoints:
    def test_requires_authentication(self, client):
        assert client.get("/v1/admin/cache/stats").status_code == 401

    def test_requires_admin_email(self, client):
        assert client.get("/v1/admin/cache/stats", headers=auth_header()).status_code == 403

    def test_cache_stats(self, client):
        client.post("/v1/recommendations", json=RADIOHEAD)
        response = client.get("/v1/admin/cache/stats", headers=auth_header("admin", ADMIN_EMAIL))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["backend"] == "memory"
        assert data["namespaces"]["graph:recommendations"] == 1

    def test_clear_namespace(self, client):
        admin = auth_header("admin", ADMIN_EMAIL)
        client.post("/v1/recommendations", json=RADIOHEAD)

        response = client.delete("/v1/admin/cache/graph:recommendations", headers=admin)
        assert response.status_code == 200
        assert response.json()["data"]["removed"] == 1

        assert client.delete("/v1/admin/cache/nonsense", headers=admin).status_code == 404

    def test_tier_update_and_usage(self, client):
        admin = auth_header("admin", ADMIN_EMAIL)

        response = client.put("/v1/admin/users/user-9/tier", json={"tier": "premium"}, headers=admin)
        assert response.status_code == 200
        assert response.json()["data"]["tier"] == "premium"

        usage = client.get("/v1/admin/usage/user-9", headers=admin).json()["data"]
        assert usage["tier"] == "premium"
        assert usage["minute"]["limit"] == 50

    def test_unknown_tier_is_bad_request(self, client):
        response = client.put(
            "/v1/admin/users/user-9/tier",
            json={"tier": "platinum"},
            headers=auth_header("admin", ADMIN_EMAIL),
        )
        assert response.status_code == 400

    def test_invalidate_recommendations_and_search(self, client):
        admin = auth_header("admin", ADMIN_EMAIL)
        client.post("/v1/recommendations", json=RADIOHEAD)

        response = client.delete("/v1/admin/cache/recommendations", headers=admin)
        assert response.status_code == 200
        assert response.json()["data"] == {"namespace": "graph:recommendations", "removed": 1, "details": {}}

        response = client.delete("/v1/admin/cache/search", headers=admin)
        assert response.json()["data"]["removed"] == 1

        namespaces = client.get("/v1/admin/cache/stats", headers=admin).json()["data"]["namespaces"]
        assert "graph:recommendations" not in namespaces
        assert "graph:entity_search" not in namespaces
        assert namespaces["graph:insights"] == 1
