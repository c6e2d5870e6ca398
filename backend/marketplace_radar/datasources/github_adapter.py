import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import httpx
from loguru import logger
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ..config import Settings, get_settings
from ..errors import (
    AbuseLimitError,
    ApiError,
    ApiResult,
    RateLimitError,
    ValidationError,
    classify_exception,
    classify_response,
)
from ..schemas import RateLimitState
from ..services.rate_limiter import SlidingWindowRateLimiter, backoff_delay
from .base import (
    DataSource,
    GitHubCommit,
    GitHubContent,
    GitHubContributor,
    GitHubRepository,
    RateLimitResponse,
    SearchRepositoriesResponse,
)

T = TypeVar("T")

Operation = Callable[[], Awaitable[httpx.Response]]

_languages_adapter = TypeAdapter(Dict[str, int])
_contributors_adapter = TypeAdapter(List[GitHubContributor])
_commits_adapter = TypeAdapter(List[GitHubCommit])


def _parse_content(path: str) -> Callable[[Any], GitHubContent]:
    def parse(payload: Any) -> GitHubContent:
        # the contents API answers a directory path with a listing
        if isinstance(payload, list):
            return GitHubContent(type="dir", path=path, name=path.rsplit("/", 1)[-1])
        return GitHubContent.model_validate(payload)

    return parse


class RateLimitedApiClient(DataSource):
    """Single point of contact with the GitHub REST API.

    Every call goes through ``execute``: a client-side sliding window, a
    bounded number of in-flight requests, error classification and
    exponential backoff for retryable failures. Quota headers from each
    response update the shared ``RateLimitState`` buckets so other services
    can apply back-pressure.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or get_settings()
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": self.settings.github_user_agent,
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.settings.github_token:
            headers["Authorization"] = f"Bearer {self.settings.github_token}"
        self.headers = headers
        client_kwargs: Dict[str, Any] = {
            "base_url": str(self.settings.github_base_url),
            "headers": headers,
            "timeout": self.settings.request_timeout,
        }
        if transport is not None:
            client_kwargs["transport"] = transport
        elif self.settings.github_proxy:
            client_kwargs["proxy"] = self.settings.github_proxy
        self.client = httpx.AsyncClient(**client_kwargs)

        self.limiter = SlidingWindowRateLimiter(
            self.settings.throttle_limit, self.settings.throttle_window_seconds, clock=clock
        )
        self.rate_limits: Dict[str, RateLimitState] = {
            "core": RateLimitState(),
            "search": RateLimitState(),
        }
        self.request_count = 0
        self.last_reset_time = wall_clock()
        self._sleep = sleep
        self._wall_clock = wall_clock
        # created lazily so the semaphore binds to the running loop
        self._semaphore: Optional[asyncio.Semaphore] = None

    async def __aenter__(self) -> "RateLimitedApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    def _get_semaphore(self) -> asyncio.Semaphore:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.settings.max_concurrent_calls)
        return self._semaphore

    # ------------------------------------------------------------------
    # quota bookkeeping
    # ------------------------------------------------------------------

    def _consume_quota(self, bucket: str) -> None:
        state = self.rate_limits.setdefault(bucket, RateLimitState())
        if state.limit > 0:
            state.remaining = max(0, state.remaining - 1)
            state.used += 1

    def _update_rate_limit(self, headers: httpx.Headers, bucket: str) -> None:
        if "x-ratelimit-limit" not in headers:
            return
        resource = headers.get("x-ratelimit-resource", bucket)
        state = self.rate_limits.setdefault(resource, RateLimitState())
        try:
            state.limit = int(headers.get("x-ratelimit-limit", 0))
            state.remaining = max(0, int(headers.get("x-ratelimit-remaining", 0)))
            state.used = int(headers.get("x-ratelimit-used", state.used))
            reset = int(headers.get("x-ratelimit-reset", 0))
        except ValueError:
            logger.warning(f"[github] unparseable rate limit headers: {dict(headers)}")
            return
        state.reset_at = datetime.fromtimestamp(reset, tz=timezone.utc) if reset else None

    def rate_limit_state(self, bucket: str = "core") -> RateLimitState:
        return self.rate_limits.setdefault(bucket, RateLimitState()).model_copy()

    def rate_limit_snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {name: state.model_dump(mode="json") for name, state in self.rate_limits.items()}

    def limiter_status(self) -> Dict[str, Any]:
        return {
            "remaining_requests": self.limiter.remaining(),
            "time_until_next_request": self.limiter.time_until_next_request(),
        }

    def reset_limiter(self) -> None:
        self.limiter.reset()

    def request_stats(self) -> Dict[str, float]:
        return {"request_count": self.request_count, "last_reset_time": self.last_reset_time}

    def is_authenticated(self) -> bool:
        return bool(self.settings.github_token)

    # ------------------------------------------------------------------
    # core dispatch
    # ------------------------------------------------------------------

    def _retry_delay(self, error: ApiError, attempt: int) -> Optional[float]:
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            if error.retry_after > self.settings.retry_max_delay:
                return None
            return error.retry_after
        return backoff_delay(attempt, self.settings.retry_base_delay, self.settings.retry_max_delay)

    async def _throttle(self) -> Optional[ApiError]:
        if self.limiter.is_allowed():
            return None
        wait = self.limiter.time_until_next_request()
        logger.warning(f"[github] client rate limit reached, waiting {wait:.1f}s")
        if wait > 0:
            await self._sleep(wait)
        if self.limiter.is_allowed():
            return None
        return RateLimitError(
            "Rate limit exceeded. Please try again later.",
            retry_after=self.limiter.time_until_next_request(),
        )

    async def execute(
        self,
        operation: Operation,
        bucket: str = "core",
        parse: Optional[Callable[[Any], T]] = None,
        description: str = "request",
    ) -> ApiResult[T]:
        throttled = await self._throttle()
        if throttled is not None:
            return ApiResult.fail(throttled, rate_limit=self.rate_limit_snapshot())

        attempt = 0
        while True:
            try:
                async with self._get_semaphore():
                    self._consume_quota(bucket)
                    response = await operation()
            except httpx.RequestError as exc:
                error = classify_exception(exc)
            else:
                self._update_rate_limit(response.headers, bucket)
                if response.is_success:
                    self.request_count += 1
                    return self._decode(response, parse, description)
                error = classify_response(response, self._wall_clock())

            if isinstance(error, AbuseLimitError):
                logger.error(
                    f"[github] abuse limit hit on {description}, server asks to wait "
                    f"{error.retry_after or 'unknown'}s; not retrying: {error.message}"
                )
                return ApiResult.fail(error, rate_limit=self.rate_limit_snapshot())

            if not error.retryable or attempt >= self.settings.max_retries:
                if error.retryable:
                    logger.warning(
                        f"[github] {description} failed after {attempt + 1} attempts: {error.message}"
                    )
                return ApiResult.fail(error, rate_limit=self.rate_limit_snapshot())

            delay = self._retry_delay(error, attempt)
            if delay is None:
                logger.warning(
                    f"[github] {description} rate limited for {error.retry_after:.0f}s, "
                    "longer than the retry ceiling; giving up"
                )
                return ApiResult.fail(error, rate_limit=self.rate_limit_snapshot())

            logger.warning(
                f"[github] {description} failed ({error.kind}), retrying in {delay:.2f}s "
                f"(attempt {attempt + 1}/{self.settings.max_retries})"
            )
            await self._sleep(delay)
            attempt += 1

    def _decode(
        self, response: httpx.Response, parse: Optional[Callable[[Any], T]], description: str
    ) -> ApiResult[T]:
        if parse is None:
            return ApiResult.ok(response, rate_limit=self.rate_limit_snapshot())
        try:
            payload = response.json() if response.content else []
            data = parse(payload)
        except (ValueError, TypeError, PydanticValidationError) as exc:
            logger.warning(f"[github] unexpected payload for {description}: {exc}")
            return ApiResult.fail(
                ValidationError(f"Unexpected payload for {description}: {exc}"),
                rate_limit=self.rate_limit_snapshot(),
            )
        return ApiResult.ok(data, rate_limit=self.rate_limit_snapshot())

    # ------------------------------------------------------------------
    # endpoints
    # ------------------------------------------------------------------

    async def search_repositories(self, params: Dict[str, Any]) -> ApiResult[SearchRepositoriesResponse]:
        return await self.execute(
            lambda: self.client.get("/search/repositories", params=params),
            bucket="search",
            parse=SearchRepositoriesResponse.model_validate,
            description=f"search {params.get('q', '')!r}",
        )

    async def get_repository(self, owner: str, repo: str) -> ApiResult[GitHubRepository]:
        return await self.execute(
            lambda: self.client.get(f"/repos/{owner}/{repo}"),
            parse=GitHubRepository.model_validate,
            description=f"repo {owner}/{repo}",
        )

    async def get_content(
        self, owner: str, repo: str, path: str, ref: Optional[str] = None
    ) -> ApiResult[GitHubContent]:
        params = {"ref": ref} if ref else None
        return await self.execute(
            lambda: self.client.get(f"/repos/{owner}/{repo}/contents/{path}", params=params),
            parse=_parse_content(path),
            description=f"content {owner}/{repo}/{path}",
        )

    async def get_languages(self, owner: str, repo: str) -> ApiResult[Dict[str, int]]:
        return await self.execute(
            lambda: self.client.get(f"/repos/{owner}/{repo}/languages"),
            parse=_languages_adapter.validate_python,
            description=f"languages {owner}/{repo}",
        )

    async def get_contributors(
        self, owner: str, repo: str, per_page: int = 30
    ) -> ApiResult[List[GitHubContributor]]:
        return await self.execute(
            lambda: self.client.get(
                f"/repos/{owner}/{repo}/contributors",
                params={"per_page": per_page, "anon": "false"},
            ),
            parse=_contributors_adapter.validate_python,
            description=f"contributors {owner}/{repo}",
        )

    async def get_commits(
        self, owner: str, repo: str, per_page: int = 30, sha: Optional[str] = None
    ) -> ApiResult[List[GitHubCommit]]:
        params: Dict[str, Any] = {"per_page": per_page}
        if sha:
            params["sha"] = sha
        return await self.execute(
            lambda: self.client.get(f"/repos/{owner}/{repo}/commits", params=params),
            parse=_commits_adapter.validate_python,
            description=f"commits {owner}/{repo}",
        )

    async def get_rate_limit(self) -> ApiResult[RateLimitResponse]:
        result = await self.execute(
            lambda: self.client.get("/rate_limit"),
            parse=RateLimitResponse.model_validate,
            description="rate limit",
        )
        if result.success and result.data:
            for name, bucket in result.data.resources.items():
                state = self.rate_limits.setdefault(name, RateLimitState())
                state.limit = bucket.limit
                state.remaining = max(0, bucket.remaining)
                state.used = bucket.used
                state.reset_at = (
                    datetime.fromtimestamp(bucket.reset, tz=timezone.utc) if bucket.reset else None
                )
            result.rate_limit = self.rate_limit_snapshot()
        return result
