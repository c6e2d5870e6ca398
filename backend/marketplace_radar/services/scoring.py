import math
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..schemas import CommitSummary, ContributorSummary, RepositoryMetadata

MARKETPLACE_FIELDS = ("name", "description", "owner", "version", "plugins", "tags")
PLUGIN_FIELDS = (
    "name",
    "description",
    "version",
    "author",
    "category",
    "keywords",
    "source",
    "license",
    "homepage",
)


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def age_in_days(when: Optional[datetime], now: Optional[datetime] = None) -> Optional[int]:
    if when is None:
        return None
    now = now or datetime.now(timezone.utc)
    seconds = abs((_utc(now) - _utc(when)).total_seconds())
    return math.ceil(seconds / 86400)


def commit_frequency(commits: Sequence[CommitSummary]) -> float:
    """Commits per week across the span of ``commits`` (newest first)."""
    if not commits:
        return 0.0
    newest, oldest = commits[0].date, commits[-1].date
    weeks = 1.0
    if newest and oldest:
        weeks = max(1.0, (_utc(newest) - _utc(oldest)).total_seconds() / (86400 * 7))
    return round(len(commits) / weeks, 1)


def bus_factor(contributors: Sequence[ContributorSummary]) -> int:
    """Share (percent) of contributions made by the top contributor."""
    total = sum(c.contributions for c in contributors)
    if not contributors or total <= 0:
        return 0
    return round(contributors[0].contributions / total * 100)


def code_health_score(metadata: RepositoryMetadata, now: Optional[datetime] = None) -> int:
    score = 0

    age = age_in_days(metadata.created_at, now)
    if age is not None:
        if age > 365:
            score += 20
        elif age > 90:
            score += 15
        elif age > 30:
            score += 10
        else:
            score += 5

    if metadata.stars > 1000:
        score += 20
    elif metadata.stars > 100:
        score += 15
    elif metadata.stars > 10:
        score += 10
    elif metadata.stars > 0:
        score += 5

    if metadata.forks > 100:
        score += 15
    elif metadata.forks > 10:
        score += 10
    elif metadata.forks > 0:
        score += 5

    since_update = age_in_days(metadata.updated_at, now)
    if since_update is not None:
        if since_update < 7:
            score += 15
        elif since_update < 30:
            score += 10
        elif since_update < 90:
            score += 5

    if metadata.description and len(metadata.description) > 50:
        score += 10
    elif metadata.description:
        score += 5

    if metadata.license:
        score += 10

    if len(metadata.topics) > 3:
        score += 10
    elif metadata.topics:
        score += 5

    return min(score, 100)


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list, dict)):
        return len(value) > 0
    return True


def completeness(manifest: Dict[str, Any], fields: Iterable[str]) -> float:
    """Percentage (0..100) of ``fields`` the manifest fills in.

    A field nested under the manifest's ``metadata`` object counts as present.
    """
    fields = list(fields)
    if not fields or not isinstance(manifest, dict):
        return 0.0
    nested = manifest.get("metadata") if isinstance(manifest.get("metadata"), dict) else {}
    hits = sum(1 for f in fields if _present(manifest.get(f)) or _present(nested.get(f)))
    return hits / len(fields) * 100


def quality_score(completeness_pct: float, health: int, verified: bool) -> int:
    raw = 0.5 * completeness_pct + 0.4 * health + (10 if verified else 0)
    return max(0, min(100, round(raw)))


def top_counts(values: Iterable[str], limit: int) -> List[str]:
    """Most frequent values first; ties keep first-seen order."""
    counts: Dict[str, int] = {}
    for value in values:
        counts[value] = counts.get(value, 0) + 1
    return [v for v, _ in sorted(counts.items(), key=lambda kv: -kv[1])[:limit]]
