"""FastAPI application entry point."""

import logging
import sys
import time
import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from docsync.api import router, static_router
from docsync.config import Settings, settings as default_settings
from docsync.context import ServerContext
from docsync.errors import ApiError


def configure_logging(settings: Settings) -> None:
    """Configure structured logging with structlog."""
    level = getattr(logging, settings.effective_log_level, logging.INFO)

    # Set up standard logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(
            ) if settings.is_development else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger = structlog.get_logger()
    ctx: ServerContext = app.state.context

    # Startup
    ctx.job_store.ensure_root()
    removed = await ctx.job_store.sweep()
    logger.info(
        "Starting conversion server",
        service=ctx.settings.service_name,
        job_root=str(ctx.job_store.root),
        swept_jobs=removed,
        max_concurrent_processes=ctx.pool.max_concurrent,
        max_concurrent_conversions=ctx.settings.max_concurrent_conversions,
    )

    yield

    # Shutdown
    logger.info("Shutting down conversion server")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the application around a fresh server context."""
    settings = settings or default_settings
    logger = structlog.get_logger()

    app = FastAPI(
        title="Docsync Conversion Server",
        description="Converts Markdown, Word and HTML documents with pandoc",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.context = ServerContext.from_settings(settings)

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        """Assign a requestId, bind it to the log context and log the request."""
        request_id = uuid.uuid4().hex
        request.state.request_id = request_id
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        started = time.monotonic()

        try:
            response = await call_next(request)
        except Exception:
            logger.exception("Unhandled error", path=request.url.path)
            response = JSONResponse(
                {
                    "requestId": request_id,
                    "status": 500,
                    "code": "INTERNAL_ERROR",
                    "error": "Internal server error",
                },
                status_code=500,
            )

        response.headers["X-Request-Id"] = request_id
        logger.info(
            f"HTTP {request.method} {request.url.path}",
            status=response.status_code,
            duration_ms=round((time.monotonic() - started) * 1000, 1),
        )
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
        request_id = getattr(request.state, "request_id", None)
        log = logger.error if exc.status >= 500 else logger.warning
        log(
            "Request failed",
            status=exc.status,
            error_code=exc.code,
            error=exc.message,
        )
        return JSONResponse(exc.to_payload(request_id), status_code=exc.status)

    # API routes first; the static catch-all must stay last
    app.include_router(router)
    app.include_router(static_router)

    return app


# Configure logging before creating app
configure_logging(default_settings)

# Create FastAPI application
app = create_app()


def run() -> None:
    """Serve the application with uvicorn."""
    import uvicorn

    uvicorn.run(app, host=default_settings.host, port=default_settings.port)


if __name__ == "__main__":
    run()
