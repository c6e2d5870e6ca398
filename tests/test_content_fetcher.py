import json
from datetime import datetime, timezone

import httpx
import pytest
from fakes import (
    FakeClock,
    SleepRecorder,
    file_payload,
    make_settings,
    marketplace_manifest,
    not_found,
    transport,
)

from marketplace_radar.datasources.github_adapter import RateLimitedApiClient
from marketplace_radar.errors import NotFoundError, ValidationError
from marketplace_radar.schemas import FetchedContent
from marketplace_radar.services.cache import TTLCache
from marketplace_radar.services.content_fetcher import ContentFetcher, plugin_manifest_path

MANIFEST = ".claude-plugin/marketplace.json"
DEEPLY_NESTED = "[" * 200_000 + "]" * 200_000


def build_fetcher(handler, **overrides):
    settings = make_settings(**overrides)
    sleep = SleepRecorder()
    client = RateLimitedApiClient(settings, transport=transport(handler), sleep=sleep, clock=FakeClock())
    return ContentFetcher(client, TTLCache(60, clock=FakeClock()), settings, sleep=sleep), sleep


def fetched(path: str, content: str) -> FetchedContent:
    return FetchedContent(
        owner="acme",
        repo="market",
        path=path,
        content=content,
        encoding="base64",
        size=len(content),
        sha="1",
        fetched_at=datetime.now(timezone.utc),
    )


class TestFetchContent:
    """Fetch, validate, decode and cache."""

    @pytest.mark.asyncio
    async def test_decodes_base64_and_caches(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=file_payload(MANIFEST, marketplace_manifest()))

        fetcher, _ = build_fetcher(handler)
        first = await fetcher.fetch_content("acme", "market", MANIFEST)
        second = await fetcher.fetch_content("acme", "market", MANIFEST)

        assert first.success
        assert '"acme-tools"' in first.data.content
        assert first.data.encoding == "base64"
        assert second.data == first.data
        assert len(calls) == 1
        assert fetcher.cache_stats()["keys"] == ["acme/market:.claude-plugin/marketplace.json:default"]

    @pytest.mark.asyncio
    async def test_ref_is_part_of_cache_key_and_request(self):
        refs = []

        def handler(request):
            refs.append(request.url.params.get("ref"))
            return httpx.Response(200, json=file_payload(MANIFEST, "{}"))

        fetcher, _ = build_fetcher(handler)
        await fetcher.fetch_content("acme", "market", MANIFEST, ref="v1")
        await fetcher.fetch_content("acme", "market", MANIFEST)
        assert refs == ["v1", None]

    @pytest.mark.asyncio
    async def test_oversized_file_is_rejected(self):
        fetcher, _ = build_fetcher(
            lambda r: httpx.Response(200, json=file_payload(MANIFEST, "{}", size=5000)),
            max_file_size=1000,
        )
        result = await fetcher.fetch_content("acme", "market", MANIFEST)
        assert isinstance(result.error, ValidationError)
        assert "exceeds maximum" in result.error_message

    @pytest.mark.asyncio
    async def test_directory_is_rejected(self):
        fetcher, _ = build_fetcher(lambda r: httpx.Response(200, json=[]))
        result = await fetcher.fetch_content("acme", "market", ".claude-plugin")
        assert isinstance(result.error, ValidationError)
        assert "Only files are supported" in result.error_message

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(500, json={"message": "boom"})
            return httpx.Response(200, json=file_payload(MANIFEST, "{}"))

        fetcher, sleep = build_fetcher(
            handler, max_retries=0, content_retry_attempts=2, content_retry_delay=1.5
        )
        result = await fetcher.fetch_content("acme", "market", MANIFEST)

        assert result.success
        assert len(calls) == 2
        assert sleep.delays == [1.5]

    @pytest.mark.asyncio
    async def test_not_found_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return not_found()

        fetcher, _ = build_fetcher(handler, content_retry_attempts=3)
        result = await fetcher.fetch_content("acme", "market", MANIFEST)
        assert isinstance(result.error, NotFoundError)
        assert len(calls) == 1


class TestParsing:
    """Format detection and schema reporting."""

    def test_json_manifest_gets_schema_validation(self):
        fetcher, _ = build_fetcher(lambda r: not_found())
        parsed = fetcher.auto_parse(fetched(MANIFEST, json.dumps(marketplace_manifest())), "marketplace")
        assert parsed.format == "json"
        assert parsed.is_valid
        assert parsed.data["name"] == "acme-tools"
        assert parsed.schema_validation.is_valid

    def test_schema_problems_are_reported_not_raised(self):
        fetcher, _ = build_fetcher(lambda r: not_found())
        parsed = fetcher.auto_parse(fetched(MANIFEST, '{"name": "x"}'), "marketplace")
        assert parsed.is_valid
        assert not parsed.schema_validation.is_valid
        assert "Required field 'plugins' is missing" in parsed.schema_validation.errors

    def test_schema_validation_can_be_disabled(self):
        fetcher, _ = build_fetcher(lambda r: not_found(), enable_schema_validation=False)
        parsed = fetcher.parse_json(fetched(MANIFEST, '{"name": "x"}'))
        assert parsed.schema_validation is None

    def test_broken_json(self):
        fetcher, _ = build_fetcher(lambda r: not_found())
        parsed = fetcher.parse_json(fetched(MANIFEST, "{nope"))
        assert not parsed.is_valid
        assert parsed.validation_errors[0].startswith("JSON parsing failed")

    def test_deep_nesting_is_a_parse_failure(self):
        fetcher, _ = build_fetcher(lambda r: not_found())
        parsed = fetcher.auto_parse(fetched(MANIFEST, DEEPLY_NESTED), "marketplace")
        assert not parsed.is_valid
        assert parsed.data is None
        assert parsed.validation_errors == ["JSON parsing failed: JSON nesting too deep"]

    @pytest.mark.parametrize(
        "path,fmt,note",
        [
            ("plugin.yaml", "yaml", "YAML parsing not implemented - treating as text"),
            ("plugin.yml", "yaml", "YAML parsing not implemented - treating as text"),
            ("Cargo.toml", "toml", "TOML parsing not implemented - treating as text"),
            ("pom.xml", "xml", "XML parsing not implemented - treating as text"),
        ],
    )
    def test_opaque_formats_are_text(self, path, fmt, note):
        fetcher, _ = build_fetcher(lambda r: not_found())
        parsed = fetcher.auto_parse(fetched(path, "a: 1"))
        assert parsed.format == fmt
        assert parsed.data == "a: 1"
        assert parsed.validation_errors == [note]

    def test_unknown_extension_tries_json_then_text(self):
        fetcher, _ = build_fetcher(lambda r: not_found())
        assert fetcher.auto_parse(fetched("MANIFEST", '{"name": "a", "plugins": []}')).format == "json"
        assert fetcher.auto_parse(fetched("NOTES", "plain words")).format == "text"


class TestManifests:
    """Fixed manifest paths and batches."""

    @pytest.mark.asyncio
    async def test_plugin_manifest_path(self):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            return httpx.Response(200, json=file_payload(plugin_manifest_path("lint"), {"name": "lint"}))

        fetcher, _ = build_fetcher(handler)
        result = await fetcher.fetch_and_parse_plugin_manifest("acme", "market", "lint")

        assert paths == ["/repos/acme/market/contents/.claude-plugin/plugins/lint/manifest.json"]
        assert result.data.schema_validation.schema_type == "plugin"
        assert result.data.schema_validation.is_valid

    @pytest.mark.asyncio
    async def test_deeply_nested_manifest_does_not_raise(self):
        def handler(request):
            return httpx.Response(200, json=file_payload(MANIFEST, DEEPLY_NESTED))

        fetcher, _ = build_fetcher(handler)
        result = await fetcher.fetch_and_parse_marketplace_manifest("acme", "market")

        assert result.success
        assert not result.data.is_valid
        assert result.data.data is None

    @pytest.mark.asyncio
    async def test_check_manifest_exists(self):
        def handler(request):
            if "/good/" in request.url.path:
                return httpx.Response(200, json=file_payload(MANIFEST, "{}"))
            return not_found()

        fetcher, _ = build_fetcher(handler)
        assert await fetcher.check_manifest_exists("acme", "good")
        assert not await fetcher.check_manifest_exists("acme", "bad")

    @pytest.mark.asyncio
    async def test_batch_isolates_a_failing_repository(self):
        def handler(request):
            if request.url.path.startswith("/repos/acme/repo3/"):
                return not_found()
            return httpx.Response(200, json=file_payload(MANIFEST, marketplace_manifest()))

        fetcher, _ = build_fetcher(handler)
        result = await fetcher.fetch_multiple_manifests([("acme", f"repo{i}") for i in range(1, 6)])

        assert result.success
        assert len(result.data.contents) == 4
        assert len(result.data.failures) == 1
        failure = result.data.failures[0]
        assert (failure.owner, failure.repo) == ("acme", "repo3")
        assert "404" in failure.error

    @pytest.mark.asyncio
    async def test_clear_cache(self):
        fetcher, _ = build_fetcher(lambda r: httpx.Response(200, json=file_payload(MANIFEST, "{}")))
        await fetcher.fetch_marketplace_manifest("acme", "market")
        fetcher.clear_cache()
        assert fetcher.cache_stats()["size"] == 0
