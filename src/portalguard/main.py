from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from redis.asyncio import from_url
import structlog

from portalguard.config import Settings, StoreBackendType, get_settings
from portalguard.api.middleware import RateLimitMiddleware
from portalguard.api.routes import router
from portalguard.core.clock import Clock, now_ms
from portalguard.core.keys import KeyDeriver
from portalguard.core.limiter import Limiter
from portalguard.core.logging import setup_logging
from portalguard.core.policy import PolicyRegistry, build_default_registry
from portalguard.core.storage.base import StorageBackend
from portalguard.core.storage.memory import InMemoryBackend
from portalguard.core.storage.redis import RedisBackend

logger = structlog.get_logger()


def build_backend(settings: Settings, clock: Clock = now_ms) -> StorageBackend:
    if settings.store_backend == StoreBackendType.MEMORY:
        return InMemoryBackend(clock=clock)

    timeout = settings.store_timeout_ms / 1000
    redis_client = from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_timeout=timeout,
        socket_connect_timeout=timeout,
    )
    return RedisBackend(redis_client, timeout_ms=settings.store_timeout_ms)


def create_app(
    settings: Settings | None = None,
    backend: StorageBackend | None = None,
    registry: PolicyRegistry | None = None,
    clock: Clock = now_ms,
) -> FastAPI:
    """
    Build the application.

    Everything the limiter needs is constructed here or in the lifespan and
    handed over explicitly; tests pass their own backend, registry and clock.
    """
    settings = settings or get_settings()
    setup_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        Application lifecycle manager.
        Builds the store and limiter on startup, drains and closes them on shutdown.
        """
        # 1. Initialize Infrastructure
        store = backend if backend is not None else build_backend(settings, clock)

        # 2. Initialize Core Logic (Dependency Injection)
        limiter = Limiter(
            store,
            registry if registry is not None else build_default_registry(settings),
            key_deriver=KeyDeriver(
                trusted_edge_headers=settings.trusted_edge_headers,
                forwarded_for_header=settings.forwarded_for_header,
                fingerprint_header=settings.fingerprint_header,
            ),
            prefix=settings.key_prefix,
            clock=clock,
        )
        app.state.limiter = limiter

        logger.info(
            "portalguard_started",
            store_backend=settings.store_backend.value,
            policies=limiter.registry.names(),
        )
        yield

        # 3. Cleanup
        await limiter.aclose()
        await store.close()
        logger.info("portalguard_stopped")

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    app.add_middleware(RateLimitMiddleware)
    app.include_router(router)
    return app


app = create_app()
