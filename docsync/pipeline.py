"""Conversion request pipeline: cache lookup, job setup, orchestration."""

import asyncio
import base64
import binascii
from datetime import datetime, timezone

import structlog

from docsync.cache import ConversionCache, conversion_key
from docsync.converter import (
    ConversionError,
    ConversionOrchestrator,
    JobContext,
    detect_input_type,
    filter_formats,
)
from docsync.errors import ConversionFailed, ValidationFailed
from docsync.jobs import MANIFEST_NAME, JobStore, sanitize_filename
from docsync.models import FORMAT_SUPPORT, ConvertRequest, JobManifest

logger = structlog.get_logger()


def decode_file_data(file_data: str) -> bytes:
    """Decode a base64 payload, accepting a ``data:...;base64,`` prefix."""
    encoded = file_data.rsplit(",", 1)[-1] if "," in file_data else file_data
    try:
        data = base64.b64decode(encoded.strip())
    except (binascii.Error, ValueError):
        raise ValidationFailed(
            "fileData is not valid base64",
            suggestion="Send the file as base64 or as a data URL",
        )
    if not data:
        raise ValidationFailed("Uploaded file is empty")
    return data


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class ConversionPipeline:
    """
    Handles one validated conversion request:
    1. Resolve input type and supported formats
    2. Return a cached manifest when the same bytes and formats were converted
    3. Otherwise create a job directory and write the upload
    4. Run the orchestrator
    5. Write the manifest, remember it in the cache, trigger a sweep
    """

    def __init__(
        self,
        job_store: JobStore,
        cache: ConversionCache,
        orchestrator: ConversionOrchestrator,
    ) -> None:
        self._jobs = job_store
        self._cache = cache
        self._orchestrator = orchestrator

    async def run(self, request: ConvertRequest) -> tuple[JobManifest, bool]:
        """
        Execute a conversion request.

        Returns:
            Tuple of (manifest, served_from_cache)

        Raises:
            ValidationFailed: If no requested format fits the input type
            ConversionFailed: If a conversion step fails or produces nothing
        """
        safe_name = sanitize_filename(request.fileName)
        input_type = detect_input_type(safe_name)
        formats = filter_formats(input_type, request.formats)
        if not formats:
            supported = [fmt.value for fmt in FORMAT_SUPPORT[input_type]]
            raise ValidationFailed(
                f"This file type supports: {', '.join(supported)}",
                suggestion="Pick at least one of the supported formats",
                inputType=input_type.value,
                supportedFormats=supported,
            )

        data = decode_file_data(request.fileData)
        key = conversion_key(data, [fmt.value for fmt in formats], input_type.value)

        cached = self._cache.get(key)
        if cached is not None:
            logger.info("Conversion cache hit", job_id=cached.jobId)
            return cached, True

        job_id, job_dir = await self._jobs.create_job()
        # The manifest owns meta.json inside the job directory
        upload_name = f"upload-{safe_name}" if safe_name == MANIFEST_NAME else safe_name
        upload_path = job_dir / upload_name
        await asyncio.to_thread(upload_path.write_bytes, data)

        logger.info(
            "Starting conversion",
            job_id=job_id,
            original_name=safe_name,
            input_type=input_type.value,
            formats=[fmt.value for fmt in formats],
            size_bytes=len(data),
        )

        ctx = JobContext(
            job_id=job_id,
            job_dir=job_dir,
            upload_path=upload_path,
            input_type=input_type,
        )
        try:
            outputs = await self._orchestrator.run(ctx, formats)
        except ConversionError as exc:
            context = {"jobId": job_id, "step": exc.step}
            if exc.stderr:
                context["stderr"] = exc.stderr
            raise ConversionFailed(
                exc.message,
                suggestion="Check that the document is valid and pandoc is installed",
                **context,
            ) from exc

        manifest = JobManifest(
            jobId=job_id,
            originalName=safe_name,
            createdAt=utc_timestamp(),
            outputs=outputs,
            logs=ctx.logs,
        )
        await self._jobs.write_manifest(job_dir, manifest)
        self._cache.set(key, manifest)
        self._jobs.trigger_sweep()

        return manifest, False
