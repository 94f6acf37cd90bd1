import asyncio
import os
import time

import pytest

from docsync.errors import AccessDenied, FileNotFound
from docsync.jobs import JobStore, sanitize_filename, sanitize_segment
from docsync.models import JobManifest, OutputFormat, OutputInfo


def make_job_dir(root, name: str, age_seconds: float):
    path = root / name
    path.mkdir(parents=True)
    (path / "meta.json").write_text("{}")
    stamp = time.time() - age_seconds
    os.utime(path, (stamp, stamp))
    return path


def test_sanitize_filename():
    assert sanitize_filename("../../etc/passwd") == "passwd"
    assert sanitize_filename("my report (final).md") == "my_report__final_.md"
    assert sanitize_filename("C:\\Users\\me\\notes.docx") == "notes.docx"
    assert sanitize_filename("").startswith("upload-")
    assert sanitize_filename("..").startswith("upload-")


def test_sanitize_segment_keeps_dot_names():
    assert sanitize_segment("..") == ".."
    assert sanitize_segment(".") == "."
    assert sanitize_segment("") == ""
    assert sanitize_segment("a/b c") == "b_c"


def test_job_dir_rejects_traversal(tmp_path):
    store = JobStore(tmp_path / "jobs", ttl_ms=60_000, max_keep=10)

    with pytest.raises(AccessDenied):
        store.job_dir("..")
    with pytest.raises(AccessDenied):
        store.job_dir(".")
    with pytest.raises(AccessDenied):
        store.job_dir("")


def test_file_path_rejects_traversal(tmp_path):
    store = JobStore(tmp_path / "jobs", ttl_ms=60_000, max_keep=10)

    with pytest.raises(AccessDenied):
        store.file_path("job-1", "..")
    with pytest.raises(AccessDenied):
        store.file_path("job-1", ".")
    with pytest.raises(AccessDenied):
        store.file_path("..", "meta.json")

    resolved = store.file_path("job-1", "../../secret.txt")
    assert resolved == (tmp_path / "jobs" / "job-1" / "secret.txt").resolve()


def test_manifest_is_written_and_read_back(tmp_path):
    store = JobStore(tmp_path / "jobs", ttl_ms=60_000, max_keep=10)
    store.ensure_root()

    async def scenario():
        job_id, job_dir = await store.create_job()
        manifest = JobManifest(
            jobId=job_id,
            originalName="sample.md",
            createdAt="2026-01-01T00:00:00.000Z",
            outputs=[
                OutputInfo(
                    format=OutputFormat.DOCX,
                    fileName="sample.docx",
                    size=4,
                    url=f"/api/jobs/{job_id}/files/sample.docx",
                )
            ],
        )
        await store.write_manifest(job_dir, manifest)
        return manifest, await store.read_manifest(job_id)

    written, loaded = asyncio.run(scenario())

    assert loaded == written


def test_read_manifest_of_unknown_job(tmp_path):
    store = JobStore(tmp_path / "jobs", ttl_ms=60_000, max_keep=10)

    with pytest.raises(FileNotFound):
        asyncio.run(store.read_manifest("missing"))


def test_sweep_removes_expired_jobs_regardless_of_count(tmp_path):
    root = tmp_path / "jobs"
    store = JobStore(root, ttl_ms=60_000, max_keep=10)
    expired = make_job_dir(root, "expired", age_seconds=120)
    fresh = make_job_dir(root, "fresh", age_seconds=1)

    removed = asyncio.run(store.sweep())

    assert removed == 1
    assert not expired.exists()
    assert fresh.exists()


def test_sweep_removes_oldest_beyond_max_keep(tmp_path):
    root = tmp_path / "jobs"
    store = JobStore(root, ttl_ms=3_600_000, max_keep=2)
    oldest = make_job_dir(root, "a", age_seconds=30)
    middle = make_job_dir(root, "b", age_seconds=20)
    newest = make_job_dir(root, "c", age_seconds=10)
    (root / "stray-file.txt").write_text("not a job")

    removed = asyncio.run(store.sweep())

    assert removed == 1
    assert not oldest.exists()
    assert middle.exists()
    assert newest.exists()
    assert (root / "stray-file.txt").exists()


def test_sweep_of_missing_root_is_a_no_op(tmp_path):
    store = JobStore(tmp_path / "does-not-exist", ttl_ms=1, max_keep=1)

    assert asyncio.run(store.sweep()) == 0
