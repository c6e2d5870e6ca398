from functools import lru_cache
from typing import List, Optional

from pydantic import Field, HttpUrl
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    github_token: Optional[str] = Field(default=None, alias="GITHUB_TOKEN")
    github_base_url: HttpUrl = Field(
        default="https://api.github.com", alias="GITHUB_BASE_URL"
    )
    github_proxy: Optional[str] = Field(default=None, alias="GITHUB_PROXY")
    github_user_agent: str = Field(
        default="marketplace-radar/0.1.0", alias="GITHUB_USER_AGENT"
    )

    # transport
    max_concurrent_calls: int = Field(default=5, ge=1, alias="MAX_CONCURRENT_CALLS")
    request_timeout: float = Field(default=10.0, gt=0, alias="REQUEST_TIMEOUT")

    # retry policy
    max_retries: int = Field(default=3, ge=0, alias="MAX_RETRIES")
    retry_base_delay: float = Field(default=1.0, ge=0, alias="RETRY_BASE_DELAY")
    retry_max_delay: float = Field(default=30.0, ge=0, alias="RETRY_MAX_DELAY")

    # client-side sliding window (GitHub allows 5000 authenticated calls/hour)
    throttle_limit: int = Field(default=5000, ge=1, alias="THROTTLE_LIMIT")
    throttle_window_seconds: float = Field(
        default=3600.0, gt=0, alias="THROTTLE_WINDOW_SECONDS"
    )

    # cache TTLs, seconds
    content_cache_ttl: int = Field(default=1800, alias="CONTENT_CACHE_TTL")
    metadata_cache_ttl: int = Field(default=3600, alias="METADATA_CACHE_TTL")
    collection_cache_ttl: int = Field(default=21600, alias="COLLECTION_CACHE_TTL")

    # search
    search_max_results_per_page: int = Field(
        default=100, ge=1, le=100, alias="SEARCH_MAX_RESULTS_PER_PAGE"
    )
    search_max_total_results: int = Field(
        default=1000, ge=1, alias="SEARCH_MAX_TOTAL_RESULTS"
    )
    search_min_stars: int = Field(default=0, ge=0, alias="SEARCH_MIN_STARS")
    search_page_delay: float = Field(default=1.0, ge=0, alias="SEARCH_PAGE_DELAY")
    search_max_pages: Optional[int] = Field(default=None, alias="SEARCH_MAX_PAGES")

    # content fetching
    max_file_size: int = Field(default=1024 * 1024, alias="MAX_FILE_SIZE")
    content_retry_attempts: int = Field(default=2, ge=1, alias="CONTENT_RETRY_ATTEMPTS")
    content_retry_delay: float = Field(default=1.0, ge=0, alias="CONTENT_RETRY_DELAY")
    enable_schema_validation: bool = Field(default=True, alias="ENABLE_SCHEMA_VALIDATION")
    strict_validation: bool = Field(default=False, alias="STRICT_VALIDATION")

    # enrichment
    fetch_languages: bool = Field(default=True, alias="FETCH_LANGUAGES")
    fetch_contributors: bool = Field(default=True, alias="FETCH_CONTRIBUTORS")
    fetch_commits: bool = Field(default=True, alias="FETCH_COMMITS")
    max_contributors: int = Field(default=10, ge=1, le=100, alias="MAX_CONTRIBUTORS")
    max_commits: int = Field(default=30, ge=1, le=100, alias="MAX_COMMITS")
    check_repository_features: bool = Field(
        default=True, alias="CHECK_REPOSITORY_FEATURES"
    )

    # collection
    seed_repositories: List[str] = Field(default=[], alias="SEED_REPOSITORIES")
    fetch_plugin_manifests: bool = Field(default=False, alias="FETCH_PLUGIN_MANIFESTS")

    # statistics
    download_estimation_factor: int = Field(
        default=50, ge=0, alias="DOWNLOAD_ESTIMATION_FACTOR"
    )
    recent_update_threshold_days: int = Field(
        default=30, ge=0, alias="RECENT_UPDATE_THRESHOLD_DAYS"
    )
    active_developer_threshold_days: int = Field(
        default=90, ge=0, alias="ACTIVE_DEVELOPER_THRESHOLD_DAYS"
    )
    min_category_size: int = Field(default=2, ge=1, alias="MIN_CATEGORY_SIZE")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    cors_origins: list[str] = Field(default=["*"], alias="CORS_ORIGINS")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        populate_by_name = True  # lets tests pass snake_case field names
        extra = "ignore"  # ignore unrelated env vars to avoid validation errors


@lru_cache
def get_settings() -> Settings:
    return Settings()
