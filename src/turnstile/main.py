from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from redis.asyncio import from_url

from turnstile.api.middleware import RateLimitMiddleware
from turnstile.api.routes import admin_router, router
from turnstile.config import Settings, get_settings
from turnstile.core.cache.factory import create_cache
from turnstile.core.cleanup import CleanupJob
from turnstile.core.logging import setup_logging
from turnstile.core.quota import TierLimits
from turnstile.core.service import AdmissionService
from turnstile.core.storage.sql import SQLStore

logger = structlog.get_logger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        Application lifecycle manager.
        Builds store, cache, service and cleanup job; tears them down in
        reverse order.
        """
        store = SQLStore.from_url(settings.database_url, auto_create=settings.database_auto_create)
        await store.initialize()

        redis_client = None
        if settings.redis_url:
            redis_client = from_url(settings.redis_url, encoding="utf-8", decode_responses=True)

        cache = await create_cache(
            settings.rate_limit_cache_type,
            redis=redis_client,
            max_entries=settings.rate_limit_cache_max_entries,
            key_prefix=settings.rate_limit_cache_key_prefix,
            default_ttl_ms=settings.rate_limit_window_ms,
        )

        service = AdmissionService(store, cache, defaults=settings.limit_defaults())
        app.state.admission_service = service

        # Always built so PUT /config can switch it on later
        cleanup_job = CleanupJob(service, interval_ms=settings.rate_limit_cleanup_interval_ms)
        app.state.cleanup_job = cleanup_job
        if settings.rate_limit_cleanup_enabled:
            cleanup_job.start()

        logger.info("turnstile_started", **service.describe())
        try:
            yield
        finally:
            await cleanup_job.stop()
            app.state.cleanup_job = None
            app.state.admission_service = None
            await cache.shutdown()
            # A fallback cache never took ownership of the client
            if redis_client is not None and cache.name != "redis":
                await redis_client.aclose()
            await store.shutdown()
            logger.info("turnstile_stopped")

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.add_middleware(
        RateLimitMiddleware,
        max_requests=TierLimits() if settings.rate_limit_tiers_enabled else None,
        skip=lambda request: request.url.path == "/health",
    )
    app.include_router(router)
    if settings.rate_limit_api_enabled:
        app.include_router(admin_router, prefix=settings.rate_limit_api_prefix)
    return app


def _build_default_app() -> FastAPI:
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_json)
    return create_app(settings)


app = _build_default_app()
