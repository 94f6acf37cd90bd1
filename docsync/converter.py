"""Conversion orchestration on top of the external docx-sync script."""

import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable
from urllib.parse import quote

import structlog

from docsync.models import (
    FORMAT_SUPPORT,
    InputType,
    OutputFormat,
    OutputInfo,
    StepLog,
)
from docsync.pool import ProcessError, ProcessPool

logger = structlog.get_logger()

# Format the upload already is, per input type
NATIVE_FORMAT: dict[InputType, OutputFormat] = {
    InputType.DOCX: OutputFormat.DOCX,
    InputType.MARKDOWN: OutputFormat.MD,
    InputType.HTML: OutputFormat.HTML,
}

# Order in which requested targets are produced
TARGET_ORDER = (
    OutputFormat.MD,
    OutputFormat.DOCX,
    OutputFormat.PDF,
    OutputFormat.PPTX,
    OutputFormat.HTML,
)

OUTPUT_SUFFIX = {
    OutputFormat.PDF: ".pdf",
    OutputFormat.PPTX: ".pptx",
    OutputFormat.HTML: ".preview.html",
}

STDERR_EXCERPT_CHARS = 500


class ConversionError(Exception):
    """Exception raised when a conversion step fails."""

    def __init__(
        self,
        code: str,
        message: str,
        step: str | None = None,
        stderr: str = "",
        exit_code: int | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.step = step
        self.stderr = stderr
        self.exit_code = exit_code
        super().__init__(message)


def detect_input_type(file_name: str) -> InputType:
    """Classify an upload by extension; anything unknown is markdown."""
    suffix = Path(file_name).suffix.lower()
    if suffix == ".docx":
        return InputType.DOCX
    if suffix in (".html", ".htm"):
        return InputType.HTML
    return InputType.MARKDOWN


def filter_formats(input_type: InputType, formats: Iterable[str]) -> list[OutputFormat]:
    """Keep the requested formats the input type supports, deduplicated."""
    allowed = FORMAT_SUPPORT[input_type]
    selected: list[OutputFormat] = []
    for fmt in formats:
        normalized = str(fmt or "").strip().lower()
        for candidate in allowed:
            if candidate.value == normalized and candidate not in selected:
                selected.append(candidate)
    return selected


def first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()[:STDERR_EXCERPT_CHARS]
    return ""


def download_url(job_id: str, file_name: str) -> str:
    return f"/api/jobs/{quote(job_id)}/files/{quote(file_name)}"


@dataclass
class JobContext:
    """Paths and accumulated results of one conversion job."""

    job_id: str
    job_dir: Path
    upload_path: Path
    input_type: InputType
    logs: list[StepLog] = field(default_factory=list)

    @property
    def base_name(self) -> str:
        return self.upload_path.stem

    @property
    def docx_path(self) -> Path:
        if self.input_type == InputType.DOCX:
            return self.upload_path
        return self.job_dir / f"{self.base_name}.docx"

    @property
    def markdown_path(self) -> Path:
        if self.input_type == InputType.MARKDOWN:
            return self.upload_path
        return self.job_dir / f"{self.base_name}.md"

    def output_path(self, suffix: str) -> Path:
        """Target path for a produced file, never the upload itself."""
        path = self.job_dir / f"{self.base_name}{suffix}"
        if path == self.upload_path:
            path = self.job_dir / f"{self.base_name}.converted{suffix}"
        return path


class ConversionOrchestrator:
    """
    Maps a requested format set onto the minimal chain of script calls.

    The script contract is ``script <docxPath> <textPath> <mode> [output]``,
    exit code 0 meaning success. Every call goes through the process pool.
    """

    def __init__(
        self,
        pool: ProcessPool,
        script_path: Path,
        cwd: Path | None = None,
    ) -> None:
        """
        Initialize orchestrator.

        Args:
            pool: Process pool used for every script invocation
            script_path: Path to the conversion script
            cwd: Working directory for the script (defaults to the current one)
        """
        self._pool = pool
        self._script = Path(script_path)
        self._cwd = cwd
        self._markdown_tasks: dict[str, asyncio.Task] = {}

    async def run(
        self,
        ctx: JobContext,
        formats: Iterable[OutputFormat],
    ) -> list[OutputInfo]:
        """
        Produce every requested format for a job.

        Args:
            ctx: Job context; its ``logs`` collect one entry per invocation
            formats: Targets already filtered against the input type

        Returns:
            Descriptors of the produced files

        Raises:
            ConversionError: If a step fails or nothing was produced
        """
        requested = set(formats)
        native = NATIVE_FORMAT[ctx.input_type]
        outputs: list[OutputInfo] = []
        started = time.monotonic()

        try:
            if native in requested:
                await self._collect(outputs, ctx, ctx.upload_path, native)

            for fmt in TARGET_ORDER:
                if fmt == native or fmt not in requested:
                    continue
                path = await self._produce(ctx, fmt)
                await self._collect(outputs, ctx, path, fmt)
        except ConversionError as exc:
            logger.warning(
                "Conversion failed",
                job_id=ctx.job_id,
                step=exc.step,
                error_code=exc.code,
                duration_ms=round((time.monotonic() - started) * 1000),
            )
            raise
        finally:
            self._markdown_tasks.pop(ctx.job_id, None)

        if not outputs:
            raise ConversionError(
                code="NO_OUTPUTS",
                message="No compatible formats produced for this input",
            )

        logger.info(
            "Conversion succeeded",
            job_id=ctx.job_id,
            input_type=ctx.input_type.value,
            formats=[output.format.value for output in outputs],
            steps=[log.step for log in ctx.logs],
            duration_ms=round((time.monotonic() - started) * 1000),
        )
        return outputs

    async def _produce(self, ctx: JobContext, fmt: OutputFormat) -> Path:
        if fmt == OutputFormat.MD:
            return await self.ensure_markdown_from_docx(ctx)

        if fmt == OutputFormat.DOCX:
            await self._invoke(ctx, "to-docx", ctx.docx_path, self._text_source(ctx))
            return ctx.docx_path

        source = await self._markdown_source(ctx)
        output_path = ctx.output_path(OUTPUT_SUFFIX[fmt])
        await self._invoke(ctx, f"to-{fmt.value}", ctx.docx_path, source, output_path)
        return output_path

    def _text_source(self, ctx: JobContext) -> Path:
        if ctx.input_type == InputType.HTML:
            return ctx.upload_path
        return ctx.markdown_path

    async def _markdown_source(self, ctx: JobContext) -> Path:
        if ctx.input_type == InputType.DOCX:
            return await self.ensure_markdown_from_docx(ctx)
        return self._text_source(ctx)

    async def ensure_markdown_from_docx(self, ctx: JobContext) -> Path:
        """Derive the markdown intermediate at most once per job."""
        task = self._markdown_tasks.get(ctx.job_id)
        if task is None:
            task = asyncio.ensure_future(
                self._invoke(ctx, "to-md", ctx.docx_path, ctx.markdown_path)
            )
            self._markdown_tasks[ctx.job_id] = task
        await task
        return ctx.markdown_path

    async def _invoke(
        self,
        ctx: JobContext,
        mode: str,
        docx_path: Path,
        text_path: Path,
        output_path: Path | None = None,
    ) -> None:
        args = [str(docx_path), str(text_path), mode]
        if output_path is not None:
            args.append(str(output_path))

        logger.debug("Running conversion step", job_id=ctx.job_id, step=mode)

        try:
            result = await self._pool.execute(str(self._script), args, cwd=self._cwd)
        except ProcessError as exc:
            stderr_excerpt = exc.stderr[:STDERR_EXCERPT_CHARS]
            ctx.logs.append(StepLog(step=mode, stdout=exc.stdout, stderr=exc.stderr))
            raise ConversionError(
                code="CONVERSION_FAILED",
                message=first_line(exc.stderr) or f"Conversion step {mode} failed: {exc}",
                step=mode,
                stderr=stderr_excerpt,
                exit_code=exc.exit_code,
            )
        except OSError as exc:
            raise ConversionError(
                code="CONVERSION_FAILED",
                message=f"Conversion script could not be started: {exc.strerror or exc}",
                step=mode,
            )

        ctx.logs.append(StepLog(step=mode, stdout=result.stdout, stderr=result.stderr))

    async def _collect(
        self,
        outputs: list[OutputInfo],
        ctx: JobContext,
        path: Path,
        fmt: OutputFormat,
    ) -> None:
        info = await describe_file(ctx.job_id, path, fmt)
        if info is None:
            logger.warning(
                "Expected output missing", job_id=ctx.job_id, format=fmt.value, path=str(path))
            return
        outputs.append(info)


async def describe_file(job_id: str, path: Path, fmt: OutputFormat) -> OutputInfo | None:
    try:
        stat = await asyncio.to_thread(path.stat)
    except FileNotFoundError:
        return None
    return OutputInfo(
        format=fmt,
        fileName=path.name,
        size=stat.st_size,
        url=download_url(job_id, path.name),
    )
