import asyncio
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger

from ..config import Settings, get_settings
from ..datasources.base import DataSource, GitHubRepository
from ..errors import ApiResult
from ..schemas import Candidate, SearchFilters, SearchPage

MARKETPLACE_MANIFEST_PATH = ".claude-plugin/marketplace.json"
MANIFEST_QUALIFIERS = ["filename:marketplace.json", "path:.claude-plugin"]


def candidate_from_repository(item: GitHubRepository) -> Candidate:
    return Candidate(
        id=item.id,
        full_name=item.full_name,
        name=item.name,
        owner=item.owner.login,
        owner_type=item.owner.type,
        html_url=item.html_url,
        description=item.description,
        stars=item.stargazers_count,
        forks=item.forks_count,
        open_issues=item.open_issues_count,
        topics=item.topics,
        language=item.language,
        license=(item.license.spdx_id or item.license.key) if item.license else None,
        default_branch=item.default_branch,
        created_at=item.created_at,
        updated_at=item.updated_at,
        pushed_at=item.pushed_at,
        fork=item.fork,
        archived=item.archived,
    )


class SearchService:
    """Finds repositories that plausibly publish a marketplace manifest."""

    def __init__(
        self,
        client: DataSource,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client
        self.settings = settings or get_settings()
        self._sleep = sleep

    def build_query(self, filters: SearchFilters) -> str:
        parts: List[str] = list(MANIFEST_QUALIFIERS)
        if filters.query:
            parts.append(filters.query.strip())
        if filters.organization:
            parts.append(f"org:{filters.organization}")
        if filters.user:
            parts.append(f"user:{filters.user}")
        if filters.language:
            parts.append(f"language:{filters.language}")

        if filters.stars_min is not None or filters.stars_max is not None:
            if filters.stars_min is not None:
                parts.append(f"stars:>={filters.stars_min}")
            if filters.stars_max is not None:
                parts.append(f"stars:<={filters.stars_max}")
        elif self.settings.search_min_stars > 0:
            parts.append(f"stars:>={self.settings.search_min_stars}")

        if filters.forks_min is not None:
            parts.append(f"forks:>={filters.forks_min}")
        if filters.forks_max is not None:
            parts.append(f"forks:<={filters.forks_max}")
        if filters.created_from:
            parts.append(f"created:>={filters.created_from}")
        if filters.created_to:
            parts.append(f"created:<={filters.created_to}")
        if filters.pushed_from:
            parts.append(f"pushed:>={filters.pushed_from}")
        if filters.pushed_to:
            parts.append(f"pushed:<={filters.pushed_to}")

        parts += [f"topic:{topic}" for topic in filters.topics]

        if filters.exclude_forks is not False:
            parts.append("fork:false")
        if filters.exclude_archived is not False:
            parts.append("archived:false")
        return " ".join(parts)

    async def search(
        self,
        filters: Optional[SearchFilters] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> ApiResult[SearchPage]:
        filters = filters or SearchFilters()
        max_per_page = self.settings.search_max_results_per_page
        page_size = min(page_size or max_per_page, max_per_page)
        page = max(1, page)
        params: Dict[str, Any] = {
            "q": self.build_query(filters),
            "sort": filters.sort or "updated",
            "order": filters.order or "desc",
            "per_page": page_size,
            "page": page,
        }
        logger.debug(f"[search] query={params['q']!r} page={page}")

        response = await self.client.search_repositories(params)
        if not response.success or response.data is None:
            return ApiResult.fail(response.error, rate_limit=response.rate_limit)

        total_count = min(response.data.total_count, self.settings.search_max_total_results)
        total_pages = math.ceil(total_count / page_size) if page_size else 0
        result = SearchPage(
            candidates=[candidate_from_repository(item) for item in response.data.items],
            total_count=total_count,
            current_page=page,
            page_size=page_size,
            total_pages=total_pages,
            has_next_page=page < total_pages,
            has_previous_page=page > 1,
        )
        return ApiResult.ok(result, rate_limit=response.rate_limit)

    async def _wait_for_search_quota(self) -> None:
        rate_limit_state = getattr(self.client, "rate_limit_state", None)
        if rate_limit_state is None:
            return
        state = rate_limit_state("search")
        if state.limit == 0 or state.remaining > 0 or state.reset_at is None:
            return
        wait = (state.reset_at - datetime.now(timezone.utc)).total_seconds()
        if wait > 0:
            logger.warning(f"[search] search quota exhausted, waiting {math.ceil(wait)}s for reset")
            await self._sleep(wait)

    async def search_all(
        self,
        filters: Optional[SearchFilters] = None,
        max_pages: Optional[int] = None,
        delay_between_requests: Optional[float] = None,
    ) -> ApiResult[List[Candidate]]:
        """Walk result pages until exhausted or ``search_max_total_results`` is reached.

        A failed page ends the walk; what was gathered so far is returned with
        a warning so callers can proceed on the partial set.
        """
        filters = filters or SearchFilters()
        max_total = self.settings.search_max_total_results
        max_pages = max_pages or self.settings.search_max_pages or math.ceil(
            max_total / self.settings.search_max_results_per_page
        )
        delay = self.settings.search_page_delay if delay_between_requests is None else delay_between_requests

        candidates: List[Candidate] = []
        warnings: List[str] = []
        rate_limit = None
        page = 1
        while page <= max_pages:
            await self._wait_for_search_quota()
            response = await self.search(filters, page=page)
            if not response.success or response.data is None:
                message = f"Failed to fetch search page {page}: {response.error_message}"
                logger.warning(f"[search] {message}")
                if page == 1:
                    return ApiResult.fail(response.error, rate_limit=response.rate_limit)
                warnings.append(message)
                break
            candidates.extend(response.data.candidates)
            rate_limit = response.rate_limit
            if len(candidates) >= max_total:
                logger.debug(f"[search] reached maximum total results ({max_total})")
                break
            if not response.data.has_next_page:
                break
            page += 1
            if delay > 0:
                await self._sleep(delay)

        logger.info(f"[search] complete, found {len(candidates)} repositories")
        return ApiResult.ok(candidates[:max_total], rate_limit=rate_limit, warnings=warnings)

    async def search_organization(
        self, organization: str, filters: Optional[SearchFilters] = None
    ) -> ApiResult[List[Candidate]]:
        scoped = (filters or SearchFilters()).model_copy(update={"organization": organization})
        return await self.search_all(scoped)

    async def search_user(
        self, username: str, filters: Optional[SearchFilters] = None
    ) -> ApiResult[List[Candidate]]:
        scoped = (filters or SearchFilters()).model_copy(update={"user": username})
        return await self.search_all(scoped)

    async def search_topics(
        self, topics: List[str], filters: Optional[SearchFilters] = None
    ) -> ApiResult[List[Candidate]]:
        base = filters or SearchFilters()
        scoped = base.model_copy(update={"topics": [*base.topics, *topics]})
        return await self.search_all(scoped)

    async def get_popular(self, limit: int = 50, min_stars: int = 10) -> ApiResult[List[Candidate]]:
        since = (datetime.now(timezone.utc) - timedelta(days=90)).date().isoformat()
        filters = SearchFilters(stars_min=min_stars, pushed_from=since, sort="stars")
        response = await self.search(filters, page=1, page_size=limit)
        if not response.success or response.data is None:
            return ApiResult.fail(response.error, rate_limit=response.rate_limit)
        return ApiResult.ok(response.data.candidates, rate_limit=response.rate_limit)

    async def get_recently_updated(self, limit: int = 50, days_back: int = 30) -> ApiResult[List[Candidate]]:
        since = (datetime.now(timezone.utc) - timedelta(days=days_back)).date().isoformat()
        filters = SearchFilters(pushed_from=since)
        response = await self.search(filters, page=1, page_size=limit)
        if not response.success or response.data is None:
            return ApiResult.fail(response.error, rate_limit=response.rate_limit)
        return ApiResult.ok(response.data.candidates, rate_limit=response.rate_limit)

    async def validate_candidate(self, owner: str, repo: str) -> ApiResult[bool]:
        """Probe for the marketplace manifest.

        A missing path or a directory at the manifest path is a negative
        answer, not a failure: the result succeeds with ``data=False``.
        """
        response = await self.client.get_content(owner, repo, MARKETPLACE_MANIFEST_PATH)
        if not response.success or response.data is None:
            result = ApiResult.ok(False, rate_limit=response.rate_limit)
            result.error = response.error
            return result
        return ApiResult.ok(response.data.type == "file", rate_limit=response.rate_limit)
