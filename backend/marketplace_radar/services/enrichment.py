import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from loguru import logger

from ..config import Settings, get_settings
from ..datasources.base import DataSource, GitHubRepository
from ..errors import ApiResult, classify_exception
from ..schemas import (
    CommitSummary,
    ContributorSummary,
    EnhancedMetadata,
    EnrichmentBatch,
    EnrichmentFailure,
    RepositoryMetadata,
)
from .cache import TTLCache
from .scoring import bus_factor, code_health_score, commit_frequency

DOCUMENTATION_FILES = [
    "README.md",
    "readme.md",
    "README.rst",
    "readme.rst",
    "LICENSE",
    "LICENSE.md",
    "CONTRIBUTING.md",
    "CHANGELOG.md",
    ".gitignore",
    "package.json",
    "requirements.txt",
    "Pipfile",
    "Cargo.toml",
    "go.mod",
]
TEST_PATHS = ["__tests__", "tests", "test", "spec", "jest.config.js", "pytest.ini", "tox.ini"]
CI_PATHS = [
    ".github/workflows",
    ".gitlab-ci.yml",
    ".travis.yml",
    "appveyor.yml",
    "circle.yml",
    "Jenkinsfile",
    "azure-pipelines.yml",
]


def metadata_from_repository(item: GitHubRepository) -> RepositoryMetadata:
    return RepositoryMetadata(
        id=item.id,
        name=item.name,
        full_name=item.full_name,
        description=item.description,
        url=item.html_url,
        stars=item.stargazers_count,
        forks=item.forks_count,
        language=item.language,
        license=(item.license.spdx_id or item.license.name) if item.license else None,
        created_at=item.created_at,
        updated_at=item.updated_at,
        pushed_at=item.pushed_at,
        size=item.size,
        open_issues=item.open_issues_count,
        topics=item.topics,
        default_branch=item.default_branch,
        owner_login=item.owner.login,
        owner_type=item.owner.type,
        owner_url=item.owner.html_url,
    )


class MetadataEnrichmentService:
    """Turns a repository into ``EnhancedMetadata`` with quality signals.

    Only the base repository lookup is required. Languages, contributors,
    commits and feature probes are best-effort: a failure is logged and the
    corresponding field stays ``None``.
    """

    def __init__(
        self,
        client: DataSource,
        cache: Optional[TTLCache] = None,
        settings: Optional[Settings] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.client = client
        self.settings = settings or get_settings()
        self.cache = cache or TTLCache(self.settings.metadata_cache_ttl)
        self._now = now or (lambda: datetime.now(timezone.utc))

    @staticmethod
    def cache_key(owner: str, repo: str, kind: str) -> str:
        return f"{owner}/{repo}:{kind}"

    async def get_repository_metadata(self, owner: str, repo: str) -> ApiResult[RepositoryMetadata]:
        key = self.cache_key(owner, repo, "metadata")
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"[enrich] cache hit {key}")
            return ApiResult.ok(cached)
        response = await self.client.get_repository(owner, repo)
        if not response.success or response.data is None:
            return ApiResult.fail(response.error, rate_limit=response.rate_limit)
        metadata = metadata_from_repository(response.data)
        self.cache.set(key, metadata)
        return ApiResult.ok(metadata, rate_limit=response.rate_limit)

    async def _cached(self, owner: str, repo: str, kind: str, fetch, convert) -> Any:
        key = self.cache_key(owner, repo, kind)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        response = await fetch()
        if not response.success or response.data is None:
            logger.warning(f"[enrich] failed to fetch {kind} for {owner}/{repo}: {response.error_message}")
            return None
        value = convert(response.data)
        self.cache.set(key, value)
        return value

    async def _languages(self, owner: str, repo: str) -> Optional[Dict[str, int]]:
        return await self._cached(
            owner, repo, "languages", lambda: self.client.get_languages(owner, repo), dict
        )

    async def _contributors(self, owner: str, repo: str) -> Optional[List[ContributorSummary]]:
        return await self._cached(
            owner,
            repo,
            "contributors",
            lambda: self.client.get_contributors(owner, repo, per_page=self.settings.max_contributors),
            lambda items: [
                ContributorSummary(login=c.login, contributions=c.contributions) for c in items
            ],
        )

    async def _commits(self, owner: str, repo: str) -> Optional[List[CommitSummary]]:
        return await self._cached(
            owner,
            repo,
            "commits",
            lambda: self.client.get_commits(owner, repo, per_page=self.settings.max_commits),
            lambda items: [
                CommitSummary(
                    sha=c.sha,
                    message=c.commit.message,
                    author=c.commit.author.name if c.commit.author else None,
                    date=c.commit.author.date if c.commit.author else None,
                )
                for c in items
            ],
        )

    async def _any_exists(self, owner: str, repo: str, paths: Sequence[str]) -> bool:
        for path in paths:
            response = await self.client.get_content(owner, repo, path)
            if response.success:
                return True
        return False

    async def _features(self, owner: str, repo: str) -> Dict[str, bool]:
        key = self.cache_key(owner, repo, "features")
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        features = {
            "has_documentation": await self._any_exists(owner, repo, DOCUMENTATION_FILES),
            "has_tests": await self._any_exists(owner, repo, TEST_PATHS),
            "has_ci": await self._any_exists(owner, repo, CI_PATHS),
        }
        self.cache.set(key, features)
        return features

    async def _skip(self) -> None:
        return None

    async def enrich(self, owner: str, repo: str) -> ApiResult[EnhancedMetadata]:
        base = await self.get_repository_metadata(owner, repo)
        if not base.success or base.data is None:
            return ApiResult.fail(base.error, rate_limit=base.rate_limit)

        settings = self.settings
        languages, contributors, commits = await asyncio.gather(
            self._languages(owner, repo) if settings.fetch_languages else self._skip(),
            self._contributors(owner, repo) if settings.fetch_contributors else self._skip(),
            self._commits(owner, repo) if settings.fetch_commits else self._skip(),
        )

        enhanced = EnhancedMetadata(
            **base.data.model_dump(),
            languages=languages,
            contributors=contributors,
            recent_commits=commits,
        )
        if commits:
            enhanced.last_commit_sha = commits[0].sha
            enhanced.last_commit_date = commits[0].date
        if commits is not None:
            enhanced.commit_frequency = commit_frequency(commits)
        if contributors is not None:
            enhanced.bus_factor = bus_factor(contributors)

        if settings.check_repository_features:
            features = await self._features(owner, repo)
            enhanced.has_documentation = features["has_documentation"]
            enhanced.has_tests = features["has_tests"]
            enhanced.has_ci = features["has_ci"]

        enhanced.code_health_score = code_health_score(enhanced, self._now())
        return ApiResult.ok(enhanced, rate_limit=base.rate_limit)

    async def enrich_many(self, repositories: Iterable[Tuple[str, str]]) -> ApiResult[EnrichmentBatch]:
        repositories = list(repositories)
        semaphore = asyncio.Semaphore(self.settings.max_concurrent_calls)
        logger.info(f"[enrich] enriching {len(repositories)} repositories")

        async def enrich_one(owner: str, repo: str):
            async with semaphore:
                try:
                    return owner, repo, await self.enrich(owner, repo)
                except Exception as exc:
                    error = classify_exception(exc)
                    logger.warning(f"[enrich] {owner}/{repo} raised: {error.message}")
                    return owner, repo, ApiResult.fail(error)

        outcomes = await asyncio.gather(*(enrich_one(owner, repo) for owner, repo in repositories))
        batch = EnrichmentBatch()
        for owner, repo, response in outcomes:
            if response.success and response.data is not None:
                batch.items.append(response.data)
            else:
                batch.failures.append(
                    EnrichmentFailure(owner=owner, repo=repo, error=response.error_message or "Unknown error")
                )
        logger.info(f"[enrich] enriched {len(batch.items)}/{len(repositories)} repositories")
        return ApiResult.ok(batch)

    def clear_cache(self) -> None:
        self.cache.clear()

    def cache_stats(self) -> Dict[str, Any]:
        return self.cache.stats()
