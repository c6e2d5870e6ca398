import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from .config import Settings, get_settings
from .datasources.github_adapter import RateLimitedApiClient
from .services.cache import TTLCache
from .services.collector import EcosystemDataCollector
from .services.content_fetcher import ContentFetcher
from .services.enrichment import MetadataEnrichmentService
from .services.search import SearchService
from .services.statistics import StatisticsProcessor


@dataclass
class Pipeline:
    settings: Settings
    client: RateLimitedApiClient
    search: SearchService
    fetcher: ContentFetcher
    enrichment: MetadataEnrichmentService
    collector: EcosystemDataCollector
    statistics: StatisticsProcessor

    async def aclose(self) -> None:
        await self.client.aclose()

    def clear_caches(self) -> None:
        self.fetcher.clear_cache()
        self.enrichment.clear_cache()
        self.collector.clear_cache()


def create_pipeline(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Pipeline:
    """Wire one client, three caches and the services that share them.

    Each call builds fresh instances; nothing is shared between pipelines.
    """
    settings = settings or get_settings()
    client = RateLimitedApiClient(settings, transport=transport, sleep=sleep)
    search = SearchService(client, settings, sleep=sleep)
    fetcher = ContentFetcher(
        client, TTLCache(settings.content_cache_ttl), settings, sleep=sleep
    )
    enrichment = MetadataEnrichmentService(client, TTLCache(settings.metadata_cache_ttl), settings)
    collector = EcosystemDataCollector(
        search, fetcher, enrichment, TTLCache(settings.collection_cache_ttl), settings
    )
    return Pipeline(
        settings=settings,
        client=client,
        search=search,
        fetcher=fetcher,
        enrichment=enrichment,
        collector=collector,
        statistics=StatisticsProcessor(settings),
    )
