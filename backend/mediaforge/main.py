"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Response

from mediaforge.core.config import settings
from mediaforge.core.logging import setup_logging
from mediaforge.core.metrics import get_content_type, get_metrics, set_app_info
from mediaforge.core.middleware import (
    CorrelationIdMiddleware,
    MetricsMiddleware,
    RequestLoggingMiddleware,
)
from mediaforge.modules.job.router import router as job_router
from mediaforge.modules.job.service import TranscodingPipeline, build_pipeline
from mediaforge.modules.streaming.router import router as streaming_router
from mediaforge.modules.streaming.service import StreamingOptimizer


def create_app(
    pipeline: Optional[TranscodingPipeline] = None,
    optimizer: Optional[StreamingOptimizer] = None,
) -> FastAPI:
    """Build the API.

    Args:
        pipeline: Pre-built pipeline; built from settings when omitted
        optimizer: Pre-built streaming optimizer; built from settings when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        setup_logging(
            level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
            json_format=settings.LOG_JSON,
            include_stack_trace=True,
        )
        set_app_info(version=settings.VERSION, environment=settings.ENVIRONMENT)

        app.state.pipeline = pipeline or build_pipeline(settings)
        app.state.streaming_optimizer = optimizer or StreamingOptimizer.from_settings(settings)
        await app.state.pipeline.start()
        try:
            yield
        finally:
            await app.state.pipeline.shutdown()
            await app.state.pipeline.store.close()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        description="""
## Media transcoding and streaming delivery API

* **Jobs** - Submit audio/video for transcoding, track progress, cancel
* **Streaming** - HLS/DASH/progressive manifests, quality recommendation, preloading
        """,
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "health", "description": "Health check endpoints"},
            {"name": "jobs", "description": "Transcoding job queue"},
            {"name": "streaming", "description": "Manifest generation and delivery optimization"},
        ],
    )

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(MetricsMiddleware)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict:
        """Liveness plus scheduler occupancy."""
        pipeline_ = app.state.pipeline
        return {
            "status": "shutting_down" if pipeline_.is_shutting_down else "healthy",
            "queue": pipeline_.get_queue_stats().model_dump(),
        }

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(content=get_metrics(), media_type=get_content_type())

    app.include_router(job_router, prefix=settings.API_V1_PREFIX)
    app.include_router(streaming_router, prefix=settings.API_V1_PREFIX)
    return app


app = create_app()
