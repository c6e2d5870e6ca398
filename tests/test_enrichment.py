from datetime import datetime, timezone

import httpx
import pytest
from fakes import FakeClock, SleepRecorder, file_payload, make_settings, not_found, repo_payload, transport

from marketplace_radar.datasources.github_adapter import RateLimitedApiClient
from marketplace_radar.errors import NotFoundError
from marketplace_radar.services.cache import TTLCache
from marketplace_radar.services.enrichment import MetadataEnrichmentService

NOW = datetime(2024, 6, 3, tzinfo=timezone.utc)

COMMITS = [
    {"sha": "c3", "commit": {"message": "third", "author": {"name": "Ann", "date": "2024-05-29T00:00:00Z"}}},
    {"sha": "c2", "commit": {"message": "second", "author": {"name": "Ann", "date": "2024-05-22T00:00:00Z"}}},
    {"sha": "c1", "commit": {"message": "first", "author": {"name": "Bo", "date": "2024-05-15T00:00:00Z"}}},
]
CONTRIBUTORS = [{"login": "ann", "contributions": 75}, {"login": "bo", "contributions": 25}]


def github(calls, languages_status=200):
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        calls.append(path)
        if path == "/repos/acme/market":
            return httpx.Response(200, json=repo_payload("acme", "market", owner_type="Organization"))
        if path.endswith("/languages"):
            if languages_status != 200:
                return httpx.Response(languages_status, json={"message": "boom"})
            return httpx.Response(200, json={"Python": 900, "Shell": 100})
        if path.endswith("/contributors"):
            return httpx.Response(200, json=CONTRIBUTORS)
        if path.endswith("/commits"):
            return httpx.Response(200, json=COMMITS)
        if path.endswith("/contents/README.md"):
            return httpx.Response(200, json=file_payload("README.md", "# hi"))
        if path.endswith("/contents/tests"):
            return httpx.Response(200, json=[{"type": "file", "path": "tests/test_x.py"}])
        return not_found()

    return handler


def build_service(handler, **overrides):
    settings = make_settings(max_retries=0, **overrides)
    client = RateLimitedApiClient(settings, transport=transport(handler), sleep=SleepRecorder(), clock=FakeClock())
    return MetadataEnrichmentService(client, TTLCache(60, clock=FakeClock()), settings, now=lambda: NOW)


class TestEnrich:
    """Base metadata plus best-effort signals."""

    @pytest.mark.asyncio
    async def test_full_enrichment(self):
        calls = []
        service = build_service(github(calls), check_repository_features=True)
        result = await service.enrich("acme", "market")

        assert result.success
        meta = result.data
        assert meta.owner_type == "Organization"
        assert meta.license == "MIT"
        assert meta.languages == {"Python": 900, "Shell": 100}
        assert [c.login for c in meta.contributors] == ["ann", "bo"]
        assert meta.bus_factor == 75
        assert meta.last_commit_sha == "c3"
        assert meta.commit_frequency == 1.5
        assert meta.has_documentation is True
        assert meta.has_tests is True
        assert meta.has_ci is False
        # age 15, stars 10, forks 5, recency 15, description 5, license 10, topics 5
        assert meta.code_health_score == 65

    @pytest.mark.asyncio
    async def test_optional_failure_leaves_field_empty(self):
        calls = []
        service = build_service(github(calls, languages_status=500))
        result = await service.enrich("acme", "market")

        assert result.success
        assert result.data.languages is None
        assert result.data.contributors is not None
        assert result.data.has_documentation is None

    @pytest.mark.asyncio
    async def test_disabled_fetches_are_skipped(self):
        calls = []
        service = build_service(
            github(calls), fetch_languages=False, fetch_contributors=False, fetch_commits=False
        )
        result = await service.enrich("acme", "market")

        assert calls == ["/repos/acme/market"]
        assert result.data.commit_frequency is None
        assert result.data.bus_factor is None

    @pytest.mark.asyncio
    async def test_missing_repository_fails(self):
        service = build_service(lambda r: not_found())
        result = await service.enrich("acme", "gone")
        assert isinstance(result.error, NotFoundError)

    @pytest.mark.asyncio
    async def test_results_are_cached(self):
        calls = []
        service = build_service(github(calls))
        await service.enrich("acme", "market")
        first = len(calls)
        await service.enrich("acme", "market")
        assert len(calls) == first
        assert "acme/market:metadata" in service.cache_stats()["keys"]
        service.clear_cache()
        assert service.cache_stats()["size"] == 0

    @pytest.mark.asyncio
    async def test_enrich_many_records_failures(self):
        calls = []
        service = build_service(github(calls))
        result = await service.enrich_many([("acme", "market"), ("acme", "gone")])

        assert result.success
        assert [m.full_name for m in result.data.items] == ["acme/market"]
        assert result.data.failures[0].repo == "gone"
