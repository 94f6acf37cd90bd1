"""On-disk job directories: creation, lookup, manifests and the sweep."""

import asyncio
import re
import shutil
import time
import uuid
from dataclasses import dataclass
from pathlib import Path

import structlog

from docsync.errors import AccessDenied, FileNotFound
from docsync.models import JobManifest

logger = structlog.get_logger()

MANIFEST_NAME = "meta.json"

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")


def sanitize_segment(value: str) -> str:
    """Keep the last path component and replace anything outside ``[A-Za-z0-9_.-]``."""
    base = value.replace("\\", "/").rsplit("/", 1)[-1]
    return _UNSAFE_CHARS.sub("_", base)


def sanitize_filename(name: str) -> str:
    """Sanitize an upload name, inventing one when nothing usable is left."""
    safe = sanitize_segment(name)
    if safe in ("", ".", ".."):
        return f"upload-{int(time.time() * 1000)}"
    return safe


def generate_id() -> str:
    return str(uuid.uuid4())


def ensure_within(base: Path, candidate: Path) -> Path:
    """Resolve ``candidate`` and require it to sit strictly below ``base``."""
    base = base.resolve()
    resolved = candidate.resolve()
    if resolved == base or base not in resolved.parents:
        raise AccessDenied(
            "Access denied",
            suggestion="Use the download URLs returned by the conversion response",
        )
    return resolved


@dataclass
class _JobDirInfo:
    path: Path
    mtime: float


class JobStore:
    """
    Owns the job root directory.

    Each job lives in ``<root>/<jobId>/`` holding the upload, intermediates,
    outputs and ``meta.json``. Nothing is updated after the manifest is written.
    """

    def __init__(self, root: Path, ttl_ms: int, max_keep: int) -> None:
        """
        Initialize job store.

        Args:
            root: Directory holding one subdirectory per job
            ttl_ms: Age after which a job directory is swept
            max_keep: Number of job directories retained by the sweep
        """
        self.root = Path(root)
        self._ttl_ms = ttl_ms
        self._max_keep = max_keep
        self._sweeps: set[asyncio.Task] = set()

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def job_dir(self, job_id: str) -> Path:
        """Resolve the directory of ``job_id``, rejecting traversal."""
        return ensure_within(self.root, self.root / sanitize_segment(job_id))

    def file_path(self, job_id: str, file_name: str) -> Path:
        """Resolve a file inside a job directory, rejecting traversal."""
        job_dir = self.job_dir(job_id)
        return ensure_within(job_dir, job_dir / sanitize_segment(file_name))

    async def create_job(self) -> tuple[str, Path]:
        """Create a fresh job directory and return its id and path."""
        job_id = generate_id()
        job_dir = self.job_dir(job_id)
        await asyncio.to_thread(job_dir.mkdir, parents=True, exist_ok=True)
        logger.debug("Job directory created", job_id=job_id)
        return job_id, job_dir

    async def write_manifest(self, job_dir: Path, manifest: JobManifest) -> None:
        await asyncio.to_thread(
            (job_dir / MANIFEST_NAME).write_text,
            manifest.model_dump_json(indent=2),
            "utf-8",
        )

    async def read_manifest(self, job_id: str) -> JobManifest:
        """
        Load a job's manifest.

        Raises:
            AccessDenied: If the job id resolves outside the job root
            FileNotFound: If the job has no manifest
        """
        meta_path = self.job_dir(job_id) / MANIFEST_NAME
        try:
            raw = await asyncio.to_thread(meta_path.read_text, "utf-8")
        except FileNotFoundError:
            raise FileNotFound("Job not found", jobId=job_id)
        return JobManifest.model_validate_json(raw)

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def trigger_sweep(self) -> None:
        """Start a sweep in the background without waiting for it."""
        task = asyncio.create_task(self.sweep())
        self._sweeps.add(task)
        task.add_done_callback(self._sweeps.discard)

    async def sweep(self) -> int:
        """
        Delete expired job directories, then the oldest beyond ``max_keep``.

        Failures are logged and never raised. Returns the number of
        directories removed.
        """
        try:
            return await asyncio.to_thread(self._sweep_sync)
        except Exception as exc:
            logger.warning("Job cleanup skipped", error=str(exc))
            return 0

    def _sweep_sync(self) -> int:
        try:
            entries = list(self.root.iterdir())
        except FileNotFoundError:
            return 0

        now_ms = time.time() * 1000
        keepers: list[_JobDirInfo] = []
        expired: list[_JobDirInfo] = []

        for entry in entries:
            try:
                if not entry.is_dir():
                    continue
                mtime_ms = entry.stat().st_mtime * 1000
            except OSError:
                continue
            info = _JobDirInfo(path=entry, mtime=mtime_ms)
            if now_ms - mtime_ms > self._ttl_ms:
                expired.append(info)
            else:
                keepers.append(info)

        removed = 0
        for info in expired:
            removed += self._remove(info.path, reason="expired")

        keepers.sort(key=lambda info: info.mtime)
        while len(keepers) > self._max_keep:
            removed += self._remove(keepers.pop(0).path, reason="over_limit")

        if removed:
            logger.info("Job sweep complete", removed=removed, retained=len(keepers))
        return removed

    @staticmethod
    def _remove(path: Path, reason: str) -> int:
        try:
            shutil.rmtree(path)
        except OSError as exc:
            logger.warning("Failed to remove job dir", path=str(path), error=str(exc))
            return 0
        logger.debug("Job dir removed", path=str(path), reason=reason)
        return 1
