"""HTTP API endpoints for the conversion server."""

import json
import mimetypes

import structlog
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import FileResponse
from pydantic import ValidationError

from docsync.context import ServerContext, get_context
from docsync.errors import (
    FileNotFound,
    PayloadTooLarge,
    RateLimited,
    ServerBusy,
    ValidationFailed,
)
from docsync.models import ConvertRequest, ConvertResponse
from docsync.responses import json_response

logger = structlog.get_logger()

router = APIRouter(prefix="/api", tags=["conversion"])
static_router = APIRouter(tags=["static"])


def client_address(request: Request) -> str:
    """Client IP from the first X-Forwarded-For entry, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client:
        return request.client.host
    return "unknown"


async def read_body(request: Request, limit: int) -> bytes:
    """Accumulate the body, aborting as soon as it grows past ``limit``."""
    chunks: list[bytes] = []
    received = 0
    async for chunk in request.stream():
        received += len(chunk)
        if received > limit:
            raise PayloadTooLarge(
                "Upload too large",
                suggestion="Split the document or raise DSYNC_UI_MAX_BYTES",
                maxBytes=limit,
            )
        chunks.append(chunk)
    return b"".join(chunks)


def parse_convert_request(body: bytes) -> ConvertRequest:
    try:
        payload = json.loads(body or b"{}")
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationFailed("Invalid JSON payload")

    try:
        return ConvertRequest.model_validate(payload)
    except ValidationError as exc:
        fields = {str(error["loc"][0]) for error in exc.errors() if error["loc"]}
        if fields == {"formats"}:
            raise ValidationFailed("Select at least one output format")
        raise ValidationFailed(
            "fileName and fileData are required",
            suggestion="Send fileName, fileData (base64) and a formats list",
        )


@router.post("/convert")
async def convert(
    request: Request,
    ctx: ServerContext = Depends(get_context),
) -> Response:
    """
    Convert an uploaded document into the requested formats.

    Identical uploads within the cache TTL are answered from the conversion
    cache and flagged with ``fromCache``.
    """
    if not ctx.rate_limiter.check(client_address(request)):
        raise RateLimited(
            "Too many conversion requests",
            suggestion="Wait a minute before converting again",
            limit=ctx.rate_limiter.current_limit(),
        )

    if ctx.active_conversions >= ctx.settings.max_concurrent_conversions:
        raise ServerBusy(
            "Server busy, too many conversions in progress",
            suggestion="Retry in a few seconds",
            activeConversions=ctx.active_conversions,
        )

    ctx.active_conversions += 1
    try:
        body = await read_body(request, ctx.settings.max_body_bytes)
        convert_request = parse_convert_request(body)
        manifest, from_cache = await ctx.pipeline.run(convert_request)
    finally:
        ctx.active_conversions -= 1

    response = ConvertResponse(
        **manifest.model_dump(),
        requestId=request.state.request_id,
        fromCache=True if from_cache else None,
    )
    return json_response(request, response)


@router.get("/jobs/{job_id}")
async def get_job(
    job_id: str,
    request: Request,
    ctx: ServerContext = Depends(get_context),
) -> Response:
    """Return the persisted manifest of a job."""
    manifest = await ctx.job_store.read_manifest(job_id)
    response = ConvertResponse(
        **manifest.model_dump(),
        requestId=request.state.request_id,
    )
    return json_response(
        request,
        response,
        etag_source=manifest.model_dump_json().encode("utf-8"),
    )


@router.get("/jobs/{job_id}/files/{file_name}")
async def download_file(
    job_id: str,
    file_name: str,
    ctx: ServerContext = Depends(get_context),
) -> Response:
    """Stream a produced artifact."""
    path = ctx.job_store.file_path(job_id, file_name)
    if not path.is_file():
        raise FileNotFound("Not found", jobId=job_id, fileName=path.name)

    logger.debug("Serving job file", job_id=job_id, file_name=path.name)
    return FileResponse(
        path,
        media_type=mimetypes.guess_type(path.name)[0] or "application/octet-stream",
        filename=path.name,
    )


@router.get("/metrics")
async def metrics(
    request: Request,
    ctx: ServerContext = Depends(get_context),
) -> Response:
    """Process-pool and conversion counters."""
    return json_response(
        request,
        {
            "requestId": request.state.request_id,
            "uptime": ctx.uptime,
            "activeConversions": ctx.active_conversions,
            "maxConcurrentConversions": ctx.settings.max_concurrent_conversions,
            "processPool": ctx.pool.get_metrics(),
            "conversionCache": {
                "size": len(ctx.conversion_cache),
                "maxSize": ctx.settings.conversion_cache_max_size,
            },
            "staticCache": {"size": len(ctx.static_cache)},
            "rateLimiter": {
                "buckets": len(ctx.rate_limiter),
                "maxRequestsPerMinute": ctx.rate_limiter.current_limit(),
            },
        },
    )


@router.get("/health")
async def health(
    request: Request,
    ctx: ServerContext = Depends(get_context),
) -> Response:
    """Health check endpoint."""
    return json_response(
        request,
        {
            "status": "ok",
            "service": ctx.settings.service_name,
            "version": request.app.version,
            "uptime": ctx.uptime,
        },
    )


@static_router.get("/{full_path:path}", include_in_schema=False)
async def static_asset(
    full_path: str,
    request: Request,
    ctx: ServerContext = Depends(get_context),
) -> Response:
    """Static UI assets with SPA fallback."""
    return await ctx.static_assets.serve(request, full_path)
