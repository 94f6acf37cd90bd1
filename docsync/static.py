"""Static asset serving with an in-memory cache and SPA fallback."""

import asyncio
import mimetypes
import os
from email.utils import formatdate
from pathlib import Path

import structlog
from fastapi import Request, Response
from fastapi.responses import FileResponse

from docsync.cache import StaticFileCache
from docsync.errors import FileNotFound
from docsync.jobs import ensure_within
from docsync.responses import is_not_modified, not_modified

logger = structlog.get_logger()

INDEX_DOCUMENT = "index.html"


def content_type_for(path: Path) -> str:
    guessed, _ = mimetypes.guess_type(path.name)
    if guessed is None:
        return "text/html; charset=utf-8"
    if guessed.startswith("text/") and "charset" not in guessed:
        return f"{guessed}; charset=utf-8"
    return guessed


class StaticAssets:
    """Serves files below ``public_dir``; unknown paths get the SPA entry."""

    def __init__(self, public_dir: Path, cache: StaticFileCache) -> None:
        self.public_dir = Path(public_dir)
        self._cache = cache

    async def serve(self, request: Request, url_path: str) -> Response:
        relative = url_path.strip("/") or INDEX_DOCUMENT
        try:
            path = ensure_within(self.public_dir, self.public_dir / relative)
            stat = await asyncio.to_thread(os.stat, path)
            if os.path.isdir(path):
                return await self.serve(request, f"{relative}/{INDEX_DOCUMENT}")
        except (FileNotFoundError, NotADirectoryError, ValueError):
            # ValueError covers paths the OS refuses, such as embedded NUL bytes
            if relative != INDEX_DOCUMENT:
                return await self.serve(request, INDEX_DOCUMENT)
            raise FileNotFound("Not found")

        etag = f'W/"{stat.st_size:x}-{stat.st_mtime_ns:x}"'
        last_modified = formatdate(stat.st_mtime, usegmt=True)
        content_type = content_type_for(path)

        if is_not_modified(request, etag, last_modified):
            return not_modified(etag, last_modified)

        if stat.st_size >= StaticFileCache.MAX_FILE_BYTES:
            return FileResponse(
                path,
                media_type=content_type,
                headers={"ETag": etag, "Last-Modified": last_modified},
                stat_result=stat,
            )

        entry = self._cache.get(str(path), stat.st_mtime_ns)
        if entry is None:
            body = await asyncio.to_thread(path.read_bytes)
            entry = self._cache.put(
                str(path),
                body=body,
                etag=etag,
                last_modified=last_modified,
                content_type=content_type,
                mtime_ns=stat.st_mtime_ns,
            )
            logger.debug("Static asset cached", path=relative, size=len(body))

        return Response(
            content=entry.body,
            media_type=entry.content_type,
            headers={"ETag": entry.etag, "Last-Modified": entry.last_modified},
        )
