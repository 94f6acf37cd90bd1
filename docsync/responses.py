"""Shared response helpers honoring conditional request headers."""

import hashlib
from email.utils import parsedate_to_datetime
from typing import Any

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel


def make_etag(data: bytes) -> str:
    return f'"{hashlib.sha1(data).hexdigest()}"'


def is_not_modified(
    request: Request,
    etag: str | None,
    last_modified: str | None = None,
) -> bool:
    """Evaluate If-None-Match (preferred) or If-Modified-Since."""
    if_none_match = request.headers.get("if-none-match")
    if if_none_match is not None:
        if etag is None:
            return False
        candidates = [tag.strip() for tag in if_none_match.split(",")]
        return "*" in candidates or etag in candidates

    if_modified_since = request.headers.get("if-modified-since")
    if if_modified_since and last_modified:
        try:
            return parsedate_to_datetime(last_modified) <= parsedate_to_datetime(
                if_modified_since)
        except (TypeError, ValueError):
            return False
    return False


def not_modified(etag: str | None, last_modified: str | None = None) -> Response:
    headers = {}
    if etag:
        headers["ETag"] = etag
    if last_modified:
        headers["Last-Modified"] = last_modified
    return Response(status_code=304, headers=headers)


def json_response(
    request: Request,
    payload: BaseModel | dict[str, Any],
    status_code: int = 200,
    etag_source: bytes | None = None,
    headers: dict[str, str] | None = None,
) -> Response:
    """
    Render ``payload`` as JSON.

    When ``etag_source`` is given the response carries an ETag derived from it
    and a matching If-None-Match yields 304. Compression is applied by the
    GZip middleware based on Accept-Encoding.
    """
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json", exclude_none=True)

    response_headers = dict(headers or {})
    if etag_source is not None:
        etag = make_etag(etag_source)
        if is_not_modified(request, etag):
            return not_modified(etag)
        response_headers["ETag"] = etag

    return JSONResponse(payload, status_code=status_code, headers=response_headers)
