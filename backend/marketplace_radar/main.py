from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from .config import get_settings
from .logging_setup import configure_logging
from .pipeline import Pipeline, create_pipeline
from .schemas import CollectionResult, Marketplace, TimeRange

settings = get_settings()
configure_logging(settings.log_level)


def get_pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


def _ensure_collected(result: CollectionResult) -> None:
    # nothing was even searched: surface as an upstream failure
    if result.metadata.total_items == 0 and result.errors:
        raise HTTPException(status_code=502, detail=f"GitHub API error: {'; '.join(result.errors)}")


def create_app(pipeline_factory: Callable[[], Pipeline] = create_pipeline) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.pipeline = pipeline_factory()
        logger.info("[api] pipeline ready")
        try:
            yield
        finally:
            await app.state.pipeline.aclose()

    app = FastAPI(title="Marketplace Radar", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health(pipeline: Pipeline = Depends(get_pipeline)):
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "authenticated": pipeline.client.is_authenticated(),
        }

    @app.get("/marketplaces")
    async def marketplaces(
        refresh: bool = Query(False),
        verified: Optional[bool] = Query(None),
        pipeline: Pipeline = Depends(get_pipeline),
    ):
        result = await pipeline.collector.collect_marketplaces(force_refresh=refresh)
        _ensure_collected(result)
        payload = result.model_dump(mode="json")
        if verified is not None:
            payload["data"] = [m for m in payload["data"] if m["verified"] is verified]
        return payload

    @app.get("/plugins")
    async def plugins(
        refresh: bool = Query(False),
        category: Optional[str] = Query(None),
        marketplace_id: Optional[str] = Query(None),
        pipeline: Pipeline = Depends(get_pipeline),
    ):
        result = await pipeline.collector.collect_plugins(force_refresh=refresh)
        _ensure_collected(await pipeline.collector.collect_marketplaces())
        payload = result.model_dump(mode="json")
        if category:
            payload["data"] = [p for p in payload["data"] if p["category"] == category]
        if marketplace_id:
            payload["data"] = [p for p in payload["data"] if p["marketplace_id"] == marketplace_id]
        return payload

    @app.get("/ecosystem-stats")
    async def ecosystem_stats(
        time_range: TimeRange = Query("1y"),
        developer_limit: int = Query(50, ge=1, le=500),
        refresh: bool = Query(False),
        pipeline: Pipeline = Depends(get_pipeline),
    ):
        # collecting plugins refreshes the marketplace collection it is built from
        plugins = await pipeline.collector.collect_plugins(force_refresh=refresh)
        marketplaces: CollectionResult[Marketplace] = await pipeline.collector.collect_marketplaces()
        _ensure_collected(marketplaces)
        stats = pipeline.statistics.process_all(
            marketplaces, plugins, time_range=time_range, developer_limit=developer_limit
        )
        return stats.model_dump(mode="json")

    @app.get("/rate-limit")
    async def rate_limit(pipeline: Pipeline = Depends(get_pipeline)):
        result = await pipeline.client.get_rate_limit()
        if not result.success:
            raise HTTPException(status_code=502, detail=f"GitHub API error: {result.error_message}")
        return {
            "authenticated": pipeline.client.is_authenticated(),
            "buckets": pipeline.client.rate_limit_snapshot(),
            "limiter": pipeline.client.limiter_status(),
            "requests": pipeline.client.request_stats(),
        }

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8020)
