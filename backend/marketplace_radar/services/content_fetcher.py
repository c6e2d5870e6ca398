import asyncio
import base64
import binascii
import json
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Tuple

from loguru import logger

from ..config import Settings, get_settings
from ..datasources.base import DataSource, GitHubContent
from ..errors import ApiResult, NotFoundError, ValidationError, classify_exception
from ..schemas import (
    FetchedContent,
    ManifestBatch,
    ManifestFetchFailure,
    ParsedManifest,
    SchemaValidationResult,
    ValidationContext,
)
from .cache import TTLCache
from .manifest_validation import (
    MARKETPLACE_MAX_SIZE,
    NESTING_TOO_DEEP,
    PLUGIN_MAX_SIZE,
    validate_manifest,
    validate_marketplace_manifest,
    validate_plugin_manifest,
)
from .search import MARKETPLACE_MANIFEST_PATH

OPAQUE_FORMATS = {"yaml": "YAML", "yml": "YAML", "toml": "TOML", "xml": "XML"}


def plugin_manifest_path(plugin_name: str) -> str:
    return f".claude-plugin/plugins/{plugin_name}/manifest.json"


class ContentFetcher:
    """Fetches manifest files through the API client and decodes them.

    Decoded files are cached per ``owner/repo:path:ref``. Parsing never
    raises: problems land on ``ParsedManifest.validation_errors`` and
    ``ParsedManifest.schema_validation``.
    """

    def __init__(
        self,
        client: DataSource,
        cache: Optional[TTLCache] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client
        self.settings = settings or get_settings()
        self.cache = cache or TTLCache(self.settings.content_cache_ttl)
        self._sleep = sleep

    @staticmethod
    def cache_key(owner: str, repo: str, path: str, ref: Optional[str] = None) -> str:
        return f"{owner}/{repo}:{path}:{ref or 'default'}"

    def _check(self, content: GitHubContent) -> Optional[str]:
        if content.size > self.settings.max_file_size:
            return (
                f"File size ({content.size} bytes) exceeds maximum allowed size "
                f"({self.settings.max_file_size} bytes)"
            )
        if content.type != "file":
            return f"Content type '{content.type}' is not supported. Only files are supported."
        if not content.content and not content.download_url:
            return "Content is not available. The file might be too large or binary."
        return None

    @staticmethod
    def _decode(content: GitHubContent) -> Tuple[str, str]:
        if content.content and content.encoding == "base64":
            try:
                raw = base64.b64decode(content.content)
                return raw.decode("utf-8"), "base64"
            except (binascii.Error, UnicodeDecodeError) as exc:
                raise ValueError(f"Failed to decode content with encoding base64: {exc}") from exc
        if content.content:
            return content.content, content.encoding or "raw"
        raise ValueError("No content available to decode")

    async def _get_with_retry(
        self, owner: str, repo: str, path: str, ref: Optional[str]
    ) -> ApiResult[GitHubContent]:
        attempts = self.settings.content_retry_attempts
        attempt = 1
        while True:
            response = await self.client.get_content(owner, repo, path, ref)
            if response.success or response.error is None or not response.error.retryable:
                return response
            if attempt >= attempts:
                return response
            delay = self.settings.content_retry_delay * attempt
            logger.warning(
                f"[content] fetch attempt {attempt} failed for {owner}/{repo}/{path}, "
                f"retrying in {delay:.1f}s"
            )
            await self._sleep(delay)
            attempt += 1

    async def fetch_content(
        self, owner: str, repo: str, path: str, ref: Optional[str] = None
    ) -> ApiResult[FetchedContent]:
        key = self.cache_key(owner, repo, path, ref)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"[content] cache hit {key}")
            return ApiResult.ok(cached)

        logger.debug(f"[content] fetching {owner}/{repo}/{path} ({ref or 'default branch'})")
        response = await self._get_with_retry(owner, repo, path, ref)
        if not response.success or response.data is None:
            return ApiResult.fail(response.error, rate_limit=response.rate_limit)

        problem = self._check(response.data)
        if problem:
            return ApiResult.fail(ValidationError(problem), rate_limit=response.rate_limit)
        try:
            text, encoding = self._decode(response.data)
        except ValueError as exc:
            return ApiResult.fail(
                ValidationError(f"Failed to decode content: {exc}"), rate_limit=response.rate_limit
            )

        fetched = FetchedContent(
            owner=owner,
            repo=repo,
            ref=ref,
            path=response.data.path or path,
            content=text,
            encoding=encoding,
            size=response.data.size,
            sha=response.data.sha,
            download_url=response.data.download_url,
            fetched_at=datetime.now(timezone.utc),
        )
        self.cache.set(key, fetched)
        return ApiResult.ok(fetched, rate_limit=response.rate_limit)

    # ------------------------------------------------------------------
    # parsing
    # ------------------------------------------------------------------

    def _validation_context(self, default_max: int) -> ValidationContext:
        return ValidationContext(
            max_size=min(default_max, self.settings.max_file_size),
            strict_mode=self.settings.strict_validation,
        )

    def _schema_check(self, text: str, schema_type: Optional[str]) -> SchemaValidationResult:
        if schema_type == "marketplace":
            return validate_marketplace_manifest(text, self._validation_context(MARKETPLACE_MAX_SIZE))
        if schema_type == "plugin":
            return validate_plugin_manifest(text, self._validation_context(PLUGIN_MAX_SIZE))
        return validate_manifest(text, self._validation_context(MARKETPLACE_MAX_SIZE))

    def _unparsed(self, fetched: FetchedContent, error: str) -> ParsedManifest:
        return ParsedManifest(
            data=None,
            format="json",
            encoding=fetched.encoding,
            size=fetched.size,
            is_valid=False,
            validation_errors=[error],
        )

    def parse_json(self, fetched: FetchedContent, schema_type: Optional[str] = None) -> ParsedManifest:
        try:
            data = json.loads(fetched.content)
        except json.JSONDecodeError as exc:
            return self._unparsed(fetched, f"JSON parsing failed: {exc.msg}")
        except RecursionError:
            return self._unparsed(fetched, f"JSON parsing failed: {NESTING_TOO_DEEP}")
        schema_validation = None
        if self.settings.enable_schema_validation:
            schema_validation = self._schema_check(fetched.content, schema_type)
        return ParsedManifest(
            data=data,
            format="json",
            encoding=fetched.encoding,
            size=fetched.size,
            is_valid=True,
            schema_validation=schema_validation,
        )

    def _as_text(self, fetched: FetchedContent, fmt: str, note: Optional[str] = None) -> ParsedManifest:
        return ParsedManifest(
            data=fetched.content,
            format=fmt,
            encoding=fetched.encoding,
            size=fetched.size,
            is_valid=True,
            validation_errors=[note] if note else [],
        )

    def parse_yaml(self, fetched: FetchedContent) -> ParsedManifest:
        return self._as_text(fetched, "yaml", "YAML parsing not implemented - treating as text")

    def auto_parse(self, fetched: FetchedContent, schema_type: Optional[str] = None) -> ParsedManifest:
        extension = fetched.path.rsplit(".", 1)[-1].lower() if "." in fetched.path else ""
        if extension == "json":
            return self.parse_json(fetched, schema_type)
        if extension in ("yaml", "yml"):
            return self.parse_yaml(fetched)
        if extension in OPAQUE_FORMATS:
            label = OPAQUE_FORMATS[extension]
            return self._as_text(fetched, extension, f"{label} parsing not implemented - treating as text")
        parsed = self.parse_json(fetched, schema_type)
        if parsed.is_valid:
            return parsed
        return self._as_text(fetched, "text")

    # ------------------------------------------------------------------
    # manifests
    # ------------------------------------------------------------------

    async def fetch_marketplace_manifest(
        self, owner: str, repo: str, ref: Optional[str] = None
    ) -> ApiResult[FetchedContent]:
        return await self.fetch_content(owner, repo, MARKETPLACE_MANIFEST_PATH, ref)

    async def fetch_plugin_manifest(
        self, owner: str, repo: str, plugin_name: str, ref: Optional[str] = None
    ) -> ApiResult[FetchedContent]:
        return await self.fetch_content(owner, repo, plugin_manifest_path(plugin_name), ref)

    async def fetch_and_parse_marketplace_manifest(
        self, owner: str, repo: str, ref: Optional[str] = None
    ) -> ApiResult[ParsedManifest]:
        response = await self.fetch_marketplace_manifest(owner, repo, ref)
        if not response.success or response.data is None:
            return ApiResult.fail(response.error, rate_limit=response.rate_limit)
        return ApiResult.ok(self.auto_parse(response.data, "marketplace"), rate_limit=response.rate_limit)

    async def fetch_and_parse_plugin_manifest(
        self, owner: str, repo: str, plugin_name: str, ref: Optional[str] = None
    ) -> ApiResult[ParsedManifest]:
        response = await self.fetch_plugin_manifest(owner, repo, plugin_name, ref)
        if not response.success or response.data is None:
            return ApiResult.fail(response.error, rate_limit=response.rate_limit)
        return ApiResult.ok(self.auto_parse(response.data, "plugin"), rate_limit=response.rate_limit)

    async def check_manifest_exists(
        self,
        owner: str,
        repo: str,
        path: str = MARKETPLACE_MANIFEST_PATH,
        ref: Optional[str] = None,
    ) -> bool:
        response = await self.client.get_content(owner, repo, path, ref)
        return response.success

    async def fetch_multiple_manifests(
        self, repositories: Iterable[Tuple[str, str]]
    ) -> ApiResult[ManifestBatch]:
        """Fetch the marketplace manifest of each ``(owner, repo)``.

        One repository failing never affects the others; its failure is
        recorded on the batch instead.
        """
        repositories = list(repositories)
        semaphore = asyncio.Semaphore(self.settings.max_concurrent_calls)
        logger.info(f"[content] fetching manifests from {len(repositories)} repositories")

        async def fetch_one(owner: str, repo: str):
            async with semaphore:
                try:
                    response = await self.fetch_marketplace_manifest(owner, repo)
                except Exception as exc:
                    error = classify_exception(exc)
                    logger.warning(f"[content] manifest fetch for {owner}/{repo} raised: {error.message}")
                    return owner, repo, ApiResult.fail(error)
            return owner, repo, response

        outcomes = await asyncio.gather(*(fetch_one(owner, repo) for owner, repo in repositories))

        batch = ManifestBatch()
        for owner, repo, response in outcomes:
            if response.success and response.data is not None:
                batch.contents.append(response.data)
            else:
                error = response.error or NotFoundError("Failed to fetch manifest")
                batch.failures.append(ManifestFetchFailure(owner=owner, repo=repo, error=error.message))
        logger.info(
            f"[content] fetched {len(batch.contents)}/{len(repositories)} manifests"
        )
        return ApiResult.ok(batch)

    def clear_cache(self) -> None:
        self.cache.clear()

    def cache_stats(self) -> Dict[str, Any]:
        return self.cache.stats()
