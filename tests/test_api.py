import httpx
import pytest
from fastapi.testclient import TestClient
from fakes import FakeGitHub, SleepRecorder, make_settings, transport

from marketplace_radar.main import create_app
from marketplace_radar.pipeline import create_pipeline


def make_client(handler, **overrides) -> TestClient:
    app = create_app(
        lambda: create_pipeline(
            make_settings(**overrides), transport=transport(handler), sleep=SleepRecorder()
        )
    )
    return TestClient(app)


@pytest.fixture
def client():
    with make_client(FakeGitHub()) as test_client:
        yield test_client


class TestHealth:
    """Liveness endpoint."""

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["authenticated"] is True
        assert "timestamp" in body


class TestCollections:
    """Marketplace and plugin listings."""

    def test_marketplaces(self, client):
        response = client.get("/marketplaces")
        assert response.status_code == 200
        body = response.json()
        assert sorted(m["id"] for m in body["data"]) == ["acme-market", "bob-tools"]
        assert body["metadata"]["total_items"] == 4
        assert body["metadata"]["failed_items"] == 2

    def test_verified_filter(self, client):
        body = client.get("/marketplaces", params={"verified": "true"}).json()
        assert [m["id"] for m in body["data"]] == ["acme-market"]

    def test_plugin_filters(self, client):
        by_category = client.get("/plugins", params={"category": "productivity"}).json()
        assert sorted(p["id"] for p in by_category["data"]) == [
            "acme-market-code-review",
            "bob-tools-bob-helper",
        ]
        by_marketplace = client.get("/plugins", params={"marketplace_id": "bob-tools"}).json()
        assert [p["id"] for p in by_marketplace["data"]] == ["bob-tools-bob-helper"]

    def test_search_failure_is_bad_gateway(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(422, json={"message": "Validation Failed"})

        with make_client(handler) as test_client:
            response = test_client.get("/marketplaces")
            plugins = test_client.get("/plugins")
        assert response.status_code == 502
        assert response.json()["detail"].startswith("GitHub API error")
        assert plugins.status_code == 502


class TestEcosystemStats:
    """Aggregated statistics."""

    def test_stats(self, client):
        response = client.get("/ecosystem-stats", params={"time_range": "all", "developer_limit": 1})
        assert response.status_code == 200
        body = response.json()
        assert body["time_range"] == "all"
        assert body["overview"]["total_plugins"] == 3
        assert body["overview"]["total_marketplaces"] == 2
        assert len(body["developers"]) == 1
        assert body["growth"][-1]["plugins"] == 3

    @pytest.mark.parametrize("params", [{"time_range": "2w"}, {"developer_limit": 0}])
    def test_invalid_parameters(self, client, params):
        assert client.get("/ecosystem-stats", params=params).status_code == 422


class TestRateLimit:
    """Quota report."""

    def test_rate_limit(self, client):
        response = client.get("/rate-limit")
        assert response.status_code == 200
        body = response.json()
        assert body["authenticated"] is True
        assert body["buckets"]["core"]["remaining"] == 4990
        assert body["requests"]["request_count"] == 1
        assert "remaining_requests" in body["limiter"]
