from datetime import datetime
from typing import Any, Dict, Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")

TimeRange = Literal["7d", "30d", "90d", "6m", "1y", "all"]


class RateLimitState(BaseModel):
    limit: int = 0
    remaining: int = 0
    reset_at: Optional[datetime] = None
    used: int = 0


# --- search ---------------------------------------------------------------


class SearchFilters(BaseModel):
    query: str = ""
    organization: Optional[str] = None
    user: Optional[str] = None
    language: Optional[str] = None
    stars_min: Optional[int] = None
    stars_max: Optional[int] = None
    forks_min: Optional[int] = None
    forks_max: Optional[int] = None
    created_from: Optional[str] = None
    created_to: Optional[str] = None
    pushed_from: Optional[str] = None
    pushed_to: Optional[str] = None
    topics: List[str] = []
    exclude_forks: Optional[bool] = None
    exclude_archived: Optional[bool] = None
    sort: Optional[Literal["stars", "forks", "updated"]] = None
    order: Optional[Literal["asc", "desc"]] = None


class Candidate(BaseModel):
    id: int
    full_name: str
    name: str
    owner: str
    owner_type: str = "User"
    html_url: str
    description: Optional[str] = None
    stars: int = 0
    forks: int = 0
    open_issues: int = 0
    topics: List[str] = []
    language: Optional[str] = None
    license: Optional[str] = None
    default_branch: str = "main"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    pushed_at: Optional[datetime] = None
    fork: bool = False
    archived: bool = False


class SearchPage(BaseModel):
    candidates: List[Candidate]
    total_count: int
    current_page: int
    page_size: int
    total_pages: int
    has_next_page: bool
    has_previous_page: bool


# --- content --------------------------------------------------------------


class ValidationContext(BaseModel):
    max_size: Optional[int] = None
    strict_mode: bool = False


class SchemaValidationResult(BaseModel):
    is_valid: bool
    schema_type: Optional[Literal["marketplace", "plugin"]] = None
    errors: List[str] = []
    warnings: List[str] = []
    data: Optional[Any] = None


class FetchedContent(BaseModel):
    owner: str
    repo: str
    ref: Optional[str] = None
    path: str
    content: str
    encoding: str
    size: int
    sha: str
    download_url: Optional[str] = None
    fetched_at: datetime


class ParsedManifest(BaseModel):
    data: Any = None
    format: Literal["json", "yaml", "toml", "xml", "text"]
    encoding: str = "utf-8"
    size: int
    is_valid: bool
    validation_errors: List[str] = []
    schema_validation: Optional[SchemaValidationResult] = None


class ManifestFetchFailure(BaseModel):
    owner: str
    repo: str
    error: str


class ManifestBatch(BaseModel):
    contents: List[FetchedContent] = []
    failures: List[ManifestFetchFailure] = []


# --- enrichment -----------------------------------------------------------


class RepositoryMetadata(BaseModel):
    id: int
    name: str
    full_name: str
    description: Optional[str] = None
    url: str
    stars: int = 0
    forks: int = 0
    language: Optional[str] = None
    license: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    pushed_at: Optional[datetime] = None
    size: int = 0
    open_issues: int = 0
    topics: List[str] = []
    default_branch: str = "main"
    owner_login: str
    owner_type: str = "User"
    owner_url: Optional[str] = None


class ContributorSummary(BaseModel):
    login: Optional[str] = None
    contributions: int = 0


class CommitSummary(BaseModel):
    sha: str
    message: str = ""
    author: Optional[str] = None
    date: Optional[datetime] = None


class EnhancedMetadata(RepositoryMetadata):
    languages: Optional[Dict[str, int]] = None
    contributors: Optional[List[ContributorSummary]] = None
    recent_commits: Optional[List[CommitSummary]] = None
    last_commit_sha: Optional[str] = None
    last_commit_date: Optional[datetime] = None
    commit_frequency: Optional[float] = None
    bus_factor: Optional[int] = None
    has_documentation: Optional[bool] = None
    has_tests: Optional[bool] = None
    has_ci: Optional[bool] = None
    code_health_score: int = 0


class EnrichmentFailure(BaseModel):
    owner: str
    repo: str
    error: str


class EnrichmentBatch(BaseModel):
    items: List[EnhancedMetadata] = []
    failures: List[EnrichmentFailure] = []


# --- entities -------------------------------------------------------------


class RepoOwner(BaseModel):
    name: str
    url: Optional[str] = None
    type: Literal["User", "Organization"] = "User"


class RepositoryStats(BaseModel):
    url: str
    stars: int = 0
    forks: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    language: Optional[str] = None
    license: Optional[str] = None
    default_branch: Optional[str] = None
    open_issues: int = 0


class PluginSource(BaseModel):
    type: Literal["github", "url", "path"] = "github"
    url: str
    path: Optional[str] = None


class Plugin(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    version: Optional[str] = None
    author: Optional[str] = None
    homepage: Optional[str] = None
    repository: Optional[str] = None
    license: Optional[str] = None
    keywords: List[str] = []
    category: Optional[str] = None
    tags: List[str] = []
    commands: List[str] = []
    agents: List[str] = []
    source: PluginSource
    marketplace_id: str
    validated: bool = False
    quality_score: int = Field(default=0, ge=0, le=100)
    last_scanned: datetime


class Marketplace(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    owner: RepoOwner
    repository: RepositoryStats
    manifest_url: str
    plugins: List[Plugin] = []
    skipped_plugins: List[str] = []
    tags: List[str] = []
    verified: bool = False
    quality_score: int = Field(default=0, ge=0, le=100)
    code_health_score: int = Field(default=0, ge=0, le=100)
    schema_warnings: List[str] = []
    last_scanned: datetime
    added_at: Optional[datetime] = None


class CollectionMetadata(BaseModel):
    total_items: int = 0
    successful_items: int = 0
    failed_items: int = 0
    collection_time_ms: int = 0
    sources: List[str] = []


class CollectionResult(BaseModel, Generic[T]):
    data: List[T] = []
    metadata: CollectionMetadata = Field(default_factory=CollectionMetadata)
    warnings: List[str] = []
    errors: List[str] = []


# --- statistics -----------------------------------------------------------


class EcosystemOverview(BaseModel):
    total_plugins: int
    total_marketplaces: int
    total_developers: int
    estimated_downloads: int
    total_stars: int
    total_forks: int
    verified_marketplaces: int
    verified_plugins: int
    average_quality_score: float
    total_categories: int
    download_estimation_factor: int
    last_updated: datetime


class GrowthDataPoint(BaseModel):
    date: datetime
    plugins: int
    marketplaces: int
    developers: int
    estimated_downloads: int


class TopPlugin(BaseModel):
    id: str
    name: str
    estimated_stars: int
    estimated_downloads: int
    quality_score: int


class CategoryAnalytics(BaseModel):
    category: str
    plugin_count: int
    percentage: float
    average_quality_score: float
    estimated_downloads: int
    developer_count: int
    growth_rate: float
    popular_tags: List[str]
    top_plugins: List[TopPlugin]


class DeveloperAnalytics(BaseModel):
    developer: str
    plugin_count: int
    estimated_downloads: int
    estimated_stars: int
    average_quality_score: float
    categories: List[str]
    first_plugin_date: Optional[datetime] = None
    last_plugin_date: Optional[datetime] = None
    verified_plugin_count: int


class QualityDistribution(BaseModel):
    excellent: int = 0
    good: int = 0
    fair: int = 0
    poor: int = 0


class QualityMetrics(BaseModel):
    verified_plugin_percentage: float
    verified_marketplace_percentage: float
    high_quality_plugins: int
    recently_updated_plugins: int
    active_developers: int
    average_plugin_age_days: float
    quality_distribution: QualityDistribution


class EcosystemStats(BaseModel):
    overview: EcosystemOverview
    growth: List[GrowthDataPoint]
    categories: List[CategoryAnalytics]
    developers: List[DeveloperAnalytics]
    quality: QualityMetrics
    time_range: TimeRange
    generated_at: datetime
