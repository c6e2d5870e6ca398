"""Typed views of the GitHub REST payloads the pipeline consumes.

Every response is validated into one of these models at the client boundary;
a payload that does not fit is reported as a ``ValidationError`` result.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

from ..errors import ApiResult


class GitHubOwner(BaseModel):
    login: str
    id: Optional[int] = None
    type: str = "User"
    name: Optional[str] = None
    html_url: Optional[str] = None
    avatar_url: Optional[str] = None


class GitHubLicense(BaseModel):
    key: Optional[str] = None
    name: Optional[str] = None
    spdx_id: Optional[str] = None


class GitHubRepository(BaseModel):
    id: int
    name: str
    full_name: str
    owner: GitHubOwner
    html_url: str
    description: Optional[str] = None
    fork: bool = False
    archived: bool = False
    stargazers_count: int = 0
    forks_count: int = 0
    open_issues_count: int = 0
    language: Optional[str] = None
    license: Optional[GitHubLicense] = None
    topics: List[str] = Field(default_factory=list)
    default_branch: str = "main"
    size: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    pushed_at: Optional[datetime] = None


class SearchRepositoriesResponse(BaseModel):
    total_count: int
    incomplete_results: bool = False
    items: List[GitHubRepository] = Field(default_factory=list)


class GitHubContent(BaseModel):
    type: str
    path: str
    name: Optional[str] = None
    sha: str = ""
    size: int = 0
    encoding: Optional[str] = None
    content: Optional[str] = None
    download_url: Optional[str] = None
    html_url: Optional[str] = None


class GitHubContributor(BaseModel):
    login: Optional[str] = None
    id: Optional[int] = None
    type: Optional[str] = None
    contributions: int = 0


class GitHubCommitAuthor(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    date: Optional[datetime] = None


class GitHubCommitDetail(BaseModel):
    message: str = ""
    author: Optional[GitHubCommitAuthor] = None


class GitHubCommit(BaseModel):
    sha: str
    commit: GitHubCommitDetail
    html_url: Optional[str] = None


class RateLimitBucket(BaseModel):
    limit: int = 0
    remaining: int = 0
    reset: int = 0
    used: int = 0


class RateLimitResponse(BaseModel):
    resources: Dict[str, RateLimitBucket] = Field(default_factory=dict)
    rate: Optional[RateLimitBucket] = None


class DataSource(Protocol):
    """What the services need from a hosting-platform client."""

    async def search_repositories(self, params: Dict[str, Any]) -> ApiResult[SearchRepositoriesResponse]:
        ...

    async def get_repository(self, owner: str, repo: str) -> ApiResult[GitHubRepository]:
        ...

    async def get_content(
        self, owner: str, repo: str, path: str, ref: Optional[str] = None
    ) -> ApiResult[GitHubContent]:
        ...

    async def get_languages(self, owner: str, repo: str) -> ApiResult[Dict[str, int]]:
        ...

    async def get_contributors(
        self, owner: str, repo: str, per_page: int = 30
    ) -> ApiResult[List[GitHubContributor]]:
        ...

    async def get_commits(
        self, owner: str, repo: str, per_page: int = 30, sha: Optional[str] = None
    ) -> ApiResult[List[GitHubCommit]]:
        ...
