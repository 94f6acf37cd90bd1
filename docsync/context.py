"""Server-wide state shared by request handlers."""

import time
from dataclasses import dataclass, field

from fastapi import Request

from docsync.cache import ConversionCache, StaticFileCache
from docsync.config import Settings
from docsync.converter import ConversionOrchestrator
from docsync.jobs import JobStore
from docsync.pipeline import ConversionPipeline
from docsync.pool import ProcessPool
from docsync.ratelimit import RateLimiter
from docsync.static import StaticAssets


@dataclass
class ServerContext:
    """Owns every cache, counter and pool of one running server."""

    settings: Settings
    pool: ProcessPool
    job_store: JobStore
    conversion_cache: ConversionCache
    static_cache: StaticFileCache
    rate_limiter: RateLimiter
    pipeline: ConversionPipeline
    static_assets: StaticAssets
    started_at: float = field(default_factory=time.monotonic)
    active_conversions: int = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ServerContext":
        pool = ProcessPool(
            max_concurrent=settings.max_concurrent_processes,
            timeout_seconds=settings.process_timeout_seconds,
        )
        job_store = JobStore(
            root=settings.job_root,
            ttl_ms=settings.job_ttl_ms,
            max_keep=settings.job_max_keep,
        )
        conversion_cache = ConversionCache(
            ttl_seconds=settings.conversion_cache_ttl_ms / 1000,
            max_size=settings.conversion_cache_max_size,
        )
        static_cache = StaticFileCache(
            ttl_seconds=settings.static_cache_ttl_seconds,
            max_entries=settings.static_cache_max_entries,
        )
        orchestrator = ConversionOrchestrator(
            pool=pool,
            script_path=settings.script_path.resolve(),
        )
        return cls(
            settings=settings,
            pool=pool,
            job_store=job_store,
            conversion_cache=conversion_cache,
            static_cache=static_cache,
            rate_limiter=RateLimiter(settings.max_requests_per_minute),
            pipeline=ConversionPipeline(job_store, conversion_cache, orchestrator),
            static_assets=StaticAssets(settings.public_dir, static_cache),
        )

    @property
    def uptime(self) -> float:
        return round(time.monotonic() - self.started_at, 3)


def get_context(request: Request) -> ServerContext:
    return request.app.state.context
