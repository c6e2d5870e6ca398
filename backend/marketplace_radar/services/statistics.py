"""Aggregations over collected marketplaces and plugins.

Everything here is pure: no network access, and the reference time comes from
the injected ``now`` so results are reproducible.

Downloads and plugin stars are *estimates*. A plugin's estimated stars are
``floor(quality_score * 2)`` and its estimated downloads are estimated stars
times ``download_estimation_factor``; output fields carry an ``estimated_``
prefix so they are never mistaken for measured values.
"""

import calendar
import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union

from loguru import logger

from ..config import Settings, get_settings
from ..schemas import (
    CategoryAnalytics,
    CollectionResult,
    DeveloperAnalytics,
    EcosystemOverview,
    EcosystemStats,
    GrowthDataPoint,
    Marketplace,
    Plugin,
    QualityDistribution,
    QualityMetrics,
    TimeRange,
    TopPlugin,
)
from .scoring import top_counts

ECOSYSTEM_START = datetime(2023, 1, 1, tzinfo=timezone.utc)
UNKNOWN_DEVELOPER = "Unknown"
GROWTH_WINDOW_DAYS = 30
TOP_TAGS = 10
TOP_PLUGINS = 5

Plugins = Union[CollectionResult[Plugin], Sequence[Plugin]]
Marketplaces = Union[CollectionResult[Marketplace], Sequence[Marketplace]]


def _items(collection) -> list:
    if isinstance(collection, CollectionResult):
        return list(collection.data)
    return list(collection or [])


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _mean(values: Sequence[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0.0


def _shift_months(when: datetime, months: int) -> datetime:
    month_index = when.month - 1 - months
    year = when.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return when.replace(year=year, month=month, day=min(when.day, last_day))


def range_start(now: datetime, time_range: TimeRange) -> datetime:
    if time_range == "7d":
        return now - timedelta(days=7)
    if time_range == "30d":
        return now - timedelta(days=30)
    if time_range == "90d":
        return now - timedelta(days=90)
    if time_range == "6m":
        return _shift_months(now, 6)
    if time_range == "1y":
        return _shift_months(now, 12)
    if time_range == "all":
        return ECOSYSTEM_START
    raise ValueError(f"Unknown time range: {time_range}")


def growth_boundaries(start: datetime, end: datetime) -> List[datetime]:
    """Weekly boundaries from ``start`` up to ``end``, always ending at ``end``."""
    boundaries: List[datetime] = []
    current = start
    while current <= end:
        boundaries.append(current)
        current += timedelta(days=7)
    if not boundaries or boundaries[-1] < end:
        boundaries.append(end)
    return boundaries


class StatisticsProcessor:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings or get_settings()
        self._now = now or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # per-plugin estimates
    # ------------------------------------------------------------------

    @staticmethod
    def estimated_stars(plugin: Plugin) -> int:
        return math.floor(plugin.quality_score * 2)

    def estimated_downloads(self, plugin: Plugin) -> int:
        return self.estimated_stars(plugin) * self.settings.download_estimation_factor

    def _total_downloads(self, plugins: Iterable[Plugin]) -> int:
        return sum(self.estimated_downloads(p) for p in plugins)

    @staticmethod
    def _developers(plugins: Iterable[Plugin]) -> List[str]:
        seen: Dict[str, None] = {}
        for plugin in plugins:
            if plugin.author:
                seen.setdefault(plugin.author, None)
        return list(seen)

    @staticmethod
    def _categories(plugins: Iterable[Plugin]) -> List[str]:
        return sorted({p.category for p in plugins if p.category})

    def _is_recent(self, when: datetime, days: int, now: datetime) -> bool:
        return (now - _utc(when)).total_seconds() / 86400 <= days

    # ------------------------------------------------------------------
    # aggregations
    # ------------------------------------------------------------------

    def process_overview(self, marketplaces: Marketplaces, plugins: Plugins) -> EcosystemOverview:
        marketplaces, plugins = _items(marketplaces), _items(plugins)
        plugin_stars = sum(self.estimated_stars(p) for p in plugins)
        return EcosystemOverview(
            total_plugins=len(plugins),
            total_marketplaces=len(marketplaces),
            total_developers=len(self._developers(plugins)),
            estimated_downloads=self._total_downloads(plugins),
            total_stars=sum(m.repository.stars for m in marketplaces) + plugin_stars,
            total_forks=sum(m.repository.forks for m in marketplaces) + math.floor(plugin_stars * 0.1),
            verified_marketplaces=sum(1 for m in marketplaces if m.verified),
            verified_plugins=sum(1 for p in plugins if p.validated),
            average_quality_score=_mean([p.quality_score for p in plugins]),
            total_categories=len(self._categories(plugins)),
            download_estimation_factor=self.settings.download_estimation_factor,
            last_updated=self._now(),
        )

    def process_growth_trends(
        self,
        plugins: Plugins,
        time_range: TimeRange = "1y",
        marketplaces: Optional[Marketplaces] = None,
    ) -> List[GrowthDataPoint]:
        """Cumulative series: each point counts everything scanned on or before it."""
        plugins = _items(plugins)
        marketplaces = _items(marketplaces)
        now = self._now()
        points: List[GrowthDataPoint] = []
        for boundary in growth_boundaries(range_start(now, time_range), now):
            to_date = [p for p in plugins if _utc(p.last_scanned) <= boundary]
            points.append(
                GrowthDataPoint(
                    date=boundary,
                    plugins=len(to_date),
                    marketplaces=sum(
                        1 for m in marketplaces if _utc(m.added_at or m.last_scanned) <= boundary
                    ),
                    developers=len(self._developers(to_date)),
                    estimated_downloads=self._total_downloads(to_date),
                )
            )
        logger.debug(f"[stats] generated {len(points)} growth points for {time_range}")
        return points

    def _rank(self, plugin: Plugin) -> float:
        return plugin.quality_score + self.estimated_stars(plugin) * 0.1

    def process_category_analytics(self, plugins: Plugins) -> List[CategoryAnalytics]:
        plugins = _items(plugins)
        total = len(plugins)
        now = self._now()
        analytics: List[CategoryAnalytics] = []
        for category in self._categories(plugins):
            members = [p for p in plugins if p.category == category]
            if len(members) < self.settings.min_category_size:
                continue
            recent = [p for p in members if self._is_recent(p.last_scanned, GROWTH_WINDOW_DAYS, now)]
            top = sorted(members, key=self._rank, reverse=True)[:TOP_PLUGINS]
            analytics.append(
                CategoryAnalytics(
                    category=category,
                    plugin_count=len(members),
                    percentage=round(len(members) / total * 100, 2),
                    average_quality_score=_mean([p.quality_score for p in members]),
                    estimated_downloads=self._total_downloads(members),
                    developer_count=len(self._developers(members)),
                    growth_rate=round(len(recent) / len(members) * 100, 2),
                    popular_tags=top_counts((t for p in members for t in p.tags), TOP_TAGS),
                    top_plugins=[
                        TopPlugin(
                            id=p.id,
                            name=p.name,
                            estimated_stars=self.estimated_stars(p),
                            estimated_downloads=self.estimated_downloads(p),
                            quality_score=p.quality_score,
                        )
                        for p in top
                    ],
                )
            )
        analytics.sort(key=lambda c: c.plugin_count, reverse=True)
        return analytics

    def process_developer_analytics(self, plugins: Plugins, limit: int = 50) -> List[DeveloperAnalytics]:
        grouped: Dict[str, List[Plugin]] = {}
        for plugin in _items(plugins):
            grouped.setdefault(plugin.author or UNKNOWN_DEVELOPER, []).append(plugin)

        analytics = []
        for developer, members in grouped.items():
            dates = sorted(_utc(p.last_scanned) for p in members)
            analytics.append(
                DeveloperAnalytics(
                    developer=developer,
                    plugin_count=len(members),
                    estimated_downloads=self._total_downloads(members),
                    estimated_stars=sum(self.estimated_stars(p) for p in members),
                    average_quality_score=_mean([p.quality_score for p in members]),
                    categories=self._categories(members),
                    first_plugin_date=dates[0] if dates else None,
                    last_plugin_date=dates[-1] if dates else None,
                    verified_plugin_count=sum(1 for p in members if p.validated),
                )
            )
        analytics.sort(key=lambda d: d.estimated_downloads, reverse=True)
        return analytics[:limit]

    def process_quality_metrics(self, marketplaces: Marketplaces, plugins: Plugins) -> QualityMetrics:
        marketplaces, plugins = _items(marketplaces), _items(plugins)
        now = self._now()
        settings = self.settings

        def percentage(part: int, whole: int) -> float:
            return round(part / whole * 100, 2) if whole else 0.0

        scores = [p.quality_score for p in plugins]
        ages = [(now - _utc(p.last_scanned)).total_seconds() / 86400 for p in plugins]
        active = {
            p.author
            for p in plugins
            if p.author and self._is_recent(p.last_scanned, settings.active_developer_threshold_days, now)
        }
        return QualityMetrics(
            verified_plugin_percentage=percentage(sum(1 for p in plugins if p.validated), len(plugins)),
            verified_marketplace_percentage=percentage(
                sum(1 for m in marketplaces if m.verified), len(marketplaces)
            ),
            high_quality_plugins=sum(1 for s in scores if s > 80),
            recently_updated_plugins=sum(
                1
                for p in plugins
                if self._is_recent(p.last_scanned, settings.recent_update_threshold_days, now)
            ),
            active_developers=len(active),
            average_plugin_age_days=_mean(ages),
            quality_distribution=QualityDistribution(
                excellent=sum(1 for s in scores if s >= 90),
                good=sum(1 for s in scores if 80 <= s < 90),
                fair=sum(1 for s in scores if 70 <= s < 80),
                poor=sum(1 for s in scores if s < 70),
            ),
        )

    def process_all(
        self,
        marketplaces: Marketplaces,
        plugins: Plugins,
        time_range: TimeRange = "1y",
        developer_limit: int = 50,
    ) -> EcosystemStats:
        stats = EcosystemStats(
            overview=self.process_overview(marketplaces, plugins),
            growth=self.process_growth_trends(plugins, time_range, marketplaces),
            categories=self.process_category_analytics(plugins),
            developers=self.process_developer_analytics(plugins, developer_limit),
            quality=self.process_quality_metrics(marketplaces, plugins),
            time_range=time_range,
            generated_at=self._now(),
        )
        logger.info(
            f"[stats] processed {stats.overview.total_plugins} plugins across "
            f"{stats.overview.total_marketplaces} marketplaces"
        )
        return stats
