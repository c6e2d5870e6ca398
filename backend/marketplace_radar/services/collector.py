import asyncio
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from ..config import Settings, get_settings
from ..errors import SchemaError, classify_exception
from ..schemas import (
    Candidate,
    CollectionMetadata,
    CollectionResult,
    Marketplace,
    ParsedManifest,
    Plugin,
    PluginSource,
    RepoOwner,
    RepositoryMetadata,
    RepositoryStats,
)
from .cache import TTLCache
from .content_fetcher import ContentFetcher
from .enrichment import MetadataEnrichmentService
from .manifest_validation import validate_plugin_entry
from .scoring import (
    MARKETPLACE_FIELDS,
    PLUGIN_FIELDS,
    code_health_score,
    completeness,
    quality_score,
)
from .search import MARKETPLACE_MANIFEST_PATH, SearchService

MARKETPLACES_KEY = "ecosystem-marketplaces"
PLUGINS_KEY = "ecosystem-plugins"

Target = Tuple[str, str, Optional[Candidate]]


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def _string(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _strings(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [item for item in value if isinstance(item, str)]
    return []


def _author(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return _string(value.get("name"))
    return _string(value)


def _source(value: Any, repo_url: str) -> PluginSource:
    if isinstance(value, str):
        if value.startswith(("http://", "https://")):
            return PluginSource(type="url", url=value)
        return PluginSource(type="path", url=repo_url, path=value)
    if isinstance(value, dict):
        kind = value.get("source") or value.get("type")
        if kind == "github" and _string(value.get("repo")):
            return PluginSource(
                type="github",
                url=f"https://github.com/{value['repo']}",
                path=_string(value.get("path")),
            )
        if _string(value.get("url")):
            return PluginSource(type="url", url=value["url"], path=_string(value.get("path")))
        if _string(value.get("path")):
            return PluginSource(type="path", url=repo_url, path=value["path"])
    return PluginSource(type="github", url=repo_url)


def metadata_from_candidate(candidate: Candidate) -> RepositoryMetadata:
    return RepositoryMetadata(
        id=candidate.id,
        name=candidate.name,
        full_name=candidate.full_name,
        description=candidate.description,
        url=candidate.html_url,
        stars=candidate.stars,
        forks=candidate.forks,
        language=candidate.language,
        license=candidate.license,
        created_at=candidate.created_at,
        updated_at=candidate.updated_at,
        pushed_at=candidate.pushed_at,
        open_issues=candidate.open_issues,
        topics=candidate.topics,
        default_branch=candidate.default_branch,
        owner_login=candidate.owner,
        owner_type=candidate.owner_type,
    )


class CollectionCancelled(Exception):
    pass


class EcosystemDataCollector:
    """Drives search, manifest fetching and enrichment into entity collections.

    Every candidate ends up either as an entity in ``data`` or as one entry
    in ``errors``; ``metadata`` counts both.
    """

    def __init__(
        self,
        search: SearchService,
        fetcher: ContentFetcher,
        enrichment: MetadataEnrichmentService,
        cache: Optional[TTLCache] = None,
        settings: Optional[Settings] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.search = search
        self.fetcher = fetcher
        self.enrichment = enrichment
        self.settings = settings or get_settings()
        self.cache = cache or TTLCache(self.settings.collection_cache_ttl)
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._cancelled = False

    def cancel(self) -> None:
        """Ask the running collection to stop; pending candidates are recorded as failed."""
        self._cancelled = True

    def _check_cancelled(self) -> None:
        if self._cancelled:
            raise CollectionCancelled("Collection cancelled")

    def _core_quota_exhausted(self) -> bool:
        rate_limit_state = getattr(self.enrichment.client, "rate_limit_state", None)
        if rate_limit_state is None:
            return False
        state = rate_limit_state("core")
        return state.limit > 0 and state.remaining == 0

    # ------------------------------------------------------------------
    # marketplaces
    # ------------------------------------------------------------------

    async def _targets(
        self, warnings: List[str], errors: List[str]
    ) -> Tuple[List[Target], List[str]]:
        targets: List[Target] = []
        sources: List[str] = []
        seen = set()

        found = await self.search.search_all()
        warnings.extend(found.warnings)
        if found.success:
            sources.append("github-search")
            for candidate in found.data or []:
                key = candidate.full_name.lower()
                if key not in seen:
                    seen.add(key)
                    targets.append((candidate.owner, candidate.name, candidate))
        else:
            message = f"Repository search failed: {found.error_message}"
            logger.error(f"[collector] {message}")
            errors.append(message)

        seeds = 0
        for full_name in self.settings.seed_repositories:
            owner, _, repo = full_name.strip().partition("/")
            if not owner or not repo:
                warnings.append(f"Ignoring malformed seed repository '{full_name}'")
                continue
            if full_name.lower() in seen:
                continue
            seen.add(full_name.lower())
            targets.append((owner, repo, None))
            seeds += 1
        if seeds:
            sources.append("seed-repositories")
        return targets, sources

    async def _base_metadata(
        self, owner: str, repo: str, candidate: Optional[Candidate]
    ) -> RepositoryMetadata:
        if candidate is not None:
            return metadata_from_candidate(candidate)
        response = await self.enrichment.get_repository_metadata(owner, repo)
        if not response.success or response.data is None:
            raise LookupError(response.error_message or "repository lookup failed")
        return response.data

    async def _process(
        self, owner: str, repo: str, candidate: Optional[Candidate], warnings: List[str]
    ) -> Marketplace:
        self._check_cancelled()
        parsed = await self.fetcher.fetch_and_parse_marketplace_manifest(owner, repo)
        if not parsed.success or parsed.data is None:
            raise LookupError(f"manifest fetch failed: {parsed.error_message}")
        if not parsed.data.is_valid:
            raise SchemaError(f"manifest is not valid JSON: {'; '.join(parsed.data.validation_errors)}")
        manifest = parsed.data.data
        if not isinstance(manifest, dict):
            raise SchemaError("manifest is not a JSON object")
        if not isinstance(manifest.get("plugins"), list) or not manifest["plugins"]:
            raise SchemaError("manifest declares no plugins")

        self._check_cancelled()
        if self._core_quota_exhausted():
            warnings.append(f"{owner}/{repo}: core quota exhausted, enrichment skipped")
            metadata = await self._base_metadata(owner, repo, candidate)
            health = code_health_score(metadata, self._now())
        else:
            enriched = await self.enrichment.enrich(owner, repo)
            if enriched.success and enriched.data is not None:
                metadata = enriched.data
                health = enriched.data.code_health_score
            else:
                warnings.append(f"{owner}/{repo}: enrichment failed ({enriched.error_message})")
                metadata = await self._base_metadata(owner, repo, candidate)
                health = code_health_score(metadata, self._now())

        return self.build_marketplace(owner, repo, metadata, parsed.data, health, warnings)

    def build_marketplace(
        self,
        owner: str,
        repo: str,
        metadata: RepositoryMetadata,
        parsed: ParsedManifest,
        health: int,
        warnings: Optional[List[str]] = None,
    ) -> Marketplace:
        manifest: Dict[str, Any] = parsed.data
        validation = parsed.schema_validation
        schema_valid = validation.is_valid if validation is not None else True
        marketplace_id = f"{owner}-{repo}"
        now = self._now()

        plugins: List[Plugin] = []
        skipped: List[str] = []
        for index, entry in enumerate(manifest.get("plugins", [])):
            if not isinstance(entry, dict):
                skipped.append(f"{marketplace_id}: plugin entry {index + 1} is not an object")
                continue
            try:
                plugins.append(self.build_plugin(entry, index, owner, repo, metadata, health, now))
            except PydanticValidationError as exc:
                skipped.append(
                    f"{marketplace_id}: plugin entry {index + 1} could not be built "
                    f"({exc.error_count()} invalid fields)"
                )
        if warnings is not None:
            warnings.extend(skipped)

        nested = manifest.get("metadata") if isinstance(manifest.get("metadata"), dict) else {}
        verified = metadata.owner_type == "Organization" and schema_valid
        return Marketplace(
            id=marketplace_id,
            name=_string(manifest.get("name")) or metadata.name,
            description=_string(manifest.get("description"))
            or _string(nested.get("description"))
            or metadata.description
            or "",
            owner=RepoOwner(
                name=metadata.owner_login,
                url=metadata.owner_url or f"https://github.com/{metadata.owner_login}",
                type="Organization" if metadata.owner_type == "Organization" else "User",
            ),
            repository=RepositoryStats(
                url=metadata.url,
                stars=metadata.stars,
                forks=metadata.forks,
                created_at=metadata.created_at,
                updated_at=metadata.updated_at,
                language=metadata.language,
                license=metadata.license,
                default_branch=metadata.default_branch,
                open_issues=metadata.open_issues,
            ),
            manifest_url=f"{metadata.url}/blob/{metadata.default_branch}/{MARKETPLACE_MANIFEST_PATH}",
            plugins=plugins,
            skipped_plugins=skipped,
            tags=_strings(manifest.get("tags")) or metadata.topics,
            verified=verified,
            quality_score=quality_score(completeness(manifest, MARKETPLACE_FIELDS), health, verified),
            code_health_score=health,
            schema_warnings=(validation.errors + validation.warnings) if validation else [],
            last_scanned=now,
            added_at=metadata.created_at,
        )

    def build_plugin(
        self,
        entry: Dict[str, Any],
        index: int,
        owner: str,
        repo: str,
        metadata: RepositoryMetadata,
        health: int,
        now: datetime,
    ) -> Plugin:
        name = _string(entry.get("name")) or f"plugin-{index + 1}"
        errors, _ = validate_plugin_entry(entry)
        validated = not errors
        repository = entry.get("repository")
        if isinstance(repository, dict):
            repository = repository.get("url")
        return Plugin(
            id=f"{owner}-{repo}-{slugify(name)}",
            name=name,
            description=_string(entry.get("description")) or "",
            version=_string(entry.get("version")),
            author=_author(entry.get("author")) or metadata.owner_login,
            homepage=_string(entry.get("homepage")),
            repository=_string(repository) or metadata.url,
            license=_string(entry.get("license")) or metadata.license,
            keywords=_strings(entry.get("keywords")),
            category=_string(entry.get("category")),
            tags=_strings(entry.get("tags")),
            commands=_strings(entry.get("commands")),
            agents=_strings(entry.get("agents")),
            source=_source(entry.get("source"), metadata.url),
            marketplace_id=f"{owner}-{repo}",
            validated=validated,
            quality_score=quality_score(completeness(entry, PLUGIN_FIELDS), health, validated),
            last_scanned=now,
        )

    async def collect_marketplaces(self, force_refresh: bool = False) -> CollectionResult[Marketplace]:
        if not force_refresh:
            cached = self.cache.get(MARKETPLACES_KEY)
            if cached is not None:
                logger.debug("[collector] returning cached marketplaces")
                return cached

        self._cancelled = False
        started = time.perf_counter()
        warnings: List[str] = []
        errors: List[str] = []
        targets, sources = await self._targets(warnings, errors)
        logger.info(f"[collector] processing {len(targets)} marketplace candidates")

        semaphore = asyncio.Semaphore(self.settings.max_concurrent_calls)

        async def run(owner: str, repo: str, candidate: Optional[Candidate]):
            async with semaphore:
                try:
                    return await self._process(owner, repo, candidate, warnings), None
                except CollectionCancelled:
                    return None, f"{owner}/{repo}: cancelled"
                except SchemaError as exc:
                    return None, f"{owner}/{repo}: {exc.message}"
                except LookupError as exc:
                    return None, f"{owner}/{repo}: {exc}"
                except Exception as exc:
                    error = classify_exception(exc)
                    logger.exception(f"[collector] unexpected failure for {owner}/{repo}")
                    return None, f"{owner}/{repo}: {error.message}"

        outcomes = await asyncio.gather(*(run(*target) for target in targets))

        marketplaces: List[Marketplace] = []
        failed = 0
        for marketplace, error in outcomes:
            if marketplace is not None:
                marketplaces.append(marketplace)
            else:
                failed += 1
                logger.warning(f"[collector] {error}")
                errors.append(error)

        result = CollectionResult[Marketplace](
            data=marketplaces,
            metadata=CollectionMetadata(
                total_items=len(targets),
                successful_items=len(marketplaces),
                failed_items=failed,
                collection_time_ms=int((time.perf_counter() - started) * 1000),
                sources=sources,
            ),
            warnings=warnings,
            errors=errors,
        )
        logger.info(
            f"[collector] collected {len(marketplaces)}/{len(targets)} marketplaces "
            f"in {result.metadata.collection_time_ms}ms"
        )
        self.cache.set(MARKETPLACES_KEY, result)
        return result

    # ------------------------------------------------------------------
    # plugins
    # ------------------------------------------------------------------

    async def _merge_manifest(
        self, plugin: Plugin, owner: str, repo: str, health: int, warnings: List[str]
    ) -> Plugin:
        response = await self.fetcher.fetch_and_parse_plugin_manifest(owner, repo, plugin.name)
        if not response.success or response.data is None or not isinstance(response.data.data, dict):
            warnings.append(f"{plugin.id}: no plugin manifest ({response.error_message or 'not an object'})")
            return plugin

        manifest = response.data.data
        update: Dict[str, Any] = {}
        for field in ("description", "version", "homepage", "license", "category"):
            if not getattr(plugin, field) and _string(manifest.get(field)):
                update[field] = manifest[field]
        for field in ("keywords", "tags", "commands", "agents"):
            if not getattr(plugin, field) and _strings(manifest.get(field)):
                update[field] = _strings(manifest.get(field))
        if _author(manifest.get("author")) and plugin.author == owner:
            update["author"] = _author(manifest.get("author"))

        validation = response.data.schema_validation
        validated = validation.is_valid if validation is not None else plugin.validated
        update["validated"] = validated
        merged_fields = {**plugin.model_dump(), **update}
        update["quality_score"] = quality_score(
            completeness(merged_fields, PLUGIN_FIELDS), health, validated
        )
        return plugin.model_copy(update=update)

    async def collect_plugins(self, force_refresh: bool = False) -> CollectionResult[Plugin]:
        if not force_refresh:
            cached = self.cache.get(PLUGINS_KEY)
            if cached is not None:
                logger.debug("[collector] returning cached plugins")
                return cached

        started = time.perf_counter()
        marketplaces = await self.collect_marketplaces(force_refresh)
        warnings: List[str] = []
        plugins: List[Plugin] = []

        if self.settings.fetch_plugin_manifests:
            semaphore = asyncio.Semaphore(self.settings.max_concurrent_calls)

            async def merge(plugin: Plugin, marketplace: Marketplace) -> Plugin:
                owner, repo = marketplace.repository.url.rstrip("/").split("/")[-2:]
                async with semaphore:
                    if self._cancelled:
                        return plugin
                    return await self._merge_manifest(
                        plugin, owner, repo, marketplace.code_health_score, warnings
                    )

            plugins = list(
                await asyncio.gather(
                    *(merge(p, m) for m in marketplaces.data for p in m.plugins)
                )
            )
        else:
            plugins = [p for m in marketplaces.data for p in m.plugins]

        skipped = [message for m in marketplaces.data for message in m.skipped_plugins]
        # marketplace-level failures are context here, not plugin failures
        warnings = [f"marketplace collection: {e}" for e in marketplaces.errors] + warnings
        result = CollectionResult[Plugin](
            data=plugins,
            metadata=CollectionMetadata(
                total_items=len(plugins) + len(skipped),
                successful_items=len(plugins),
                failed_items=len(skipped),
                collection_time_ms=int((time.perf_counter() - started) * 1000),
                sources=[*marketplaces.metadata.sources, "marketplace-manifests"],
            ),
            warnings=warnings,
            errors=skipped,
        )
        logger.info(
            f"[collector] collected {len(plugins)} plugins from {len(marketplaces.data)} marketplaces"
        )
        self.cache.set(PLUGINS_KEY, result)
        return result

    def clear_cache(self) -> None:
        self.cache.clear()
        logger.debug("[collector] cache cleared")

    def cache_stats(self) -> Dict[str, Any]:
        return self.cache.stats()
