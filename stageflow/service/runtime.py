from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

import httpx

from stageflow.config import get_settings, reset_settings_cache
from stageflow.logging import get_logger
from stageflow.service.executor import InflightRegistry, StageExecutor
from stageflow.service.gateway import StepGateway
from stageflow.service.nodes import load_graph
from stageflow.service.recommendation import ConfidenceWeights, RecommendationEngine
from stageflow.service.usage import SampleBuffer, UsageAggregator
from stageflow.storage.memory import MemoryStore
from stageflow.storage.postgres import PostgresStore
from stageflow.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode to avoid event loop binding issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

            if self.cache is None:
                if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                    raise RuntimeError(
                        "Redis is configured but unreachable; start Redis or set "
                        "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                    ) from redis_error
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(redis_error),
                    mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
                    message="In-flight stage markers are process-local only.",
                )
        else:
            logger.info("redis_not_configured", message="In-flight stage markers are process-local only.")

        self.graph = load_graph(self.settings.workflow_graph_path)
        self.gateway = StepGateway.from_settings(self.settings, transport=transport)
        self.samples = SampleBuffer(self.settings.response_sample_capacity)
        self.aggregator = UsageAggregator(
            self.store,
            graph=self.graph,
            sample_buffer=self.samples,
            sample_capacity=self.settings.response_sample_capacity,
            default_window_days=self.settings.default_stats_window_days,
        )
        self.recommender = RecommendationEngine(
            self.graph, ConfidenceWeights.from_settings(self.settings)
        )
        api_keys = {}
        for node_id in self.graph.ids:
            key = self.settings.api_key_for(node_id)
            if key:
                api_keys[node_id] = key
        self.executor = StageExecutor(
            self.graph,
            self.gateway,
            self.store,
            aggregator=self.aggregator,
            registry=InflightRegistry(
                self.cache, ttl_seconds=self.settings.inflight_ttl_seconds
            ),
            api_keys=api_keys,
            keep_history=self.settings.keep_output_history,
        )

        logger.info(
            "runtime_initialized",
            nodes=len(self.graph),
            redis_enabled=self.cache is not None,
            stage_api_base_url=self.settings.stage_api_base_url,
            max_retries=self.gateway.max_retries,
        )

    async def close(self) -> None:
        await self.gateway.close()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the fast path skips the lock once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(
    *, transport: Optional[httpx.AsyncBaseTransport] = None
) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            if isinstance(runtime.cache, SyncRedisCache):
                # Sync client can be closed without an event loop
                runtime.cache._sync_client.close()
            else:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(transport=transport)
        return runtime
