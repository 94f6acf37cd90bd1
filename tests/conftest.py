import base64
import stat
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from docsync.config import Settings
from docsync.main import create_app

# Mimics docx-sync.sh: <docxPath> <textPath> <mode> [output]
FAKE_SCRIPT = """#!/bin/sh
docx="$1"
text="$2"
mode="$3"
out="$4"
echo "$mode" >> "{calls}"
case "$mode" in
  to-md) printf '# converted\\n' > "$text" ;;
  to-docx) printf 'PK-docx-bytes' > "$docx" ;;
  *) printf 'output for %s from %s' "$mode" "$text" > "$out" ;;
esac
echo "ran $mode"
"""

FAILING_SCRIPT = """#!/bin/sh
echo "partial output"
echo "pandoc: Could not parse document" >&2
echo "second diagnostic line" >&2
exit 3
"""

SILENT_SCRIPT = """#!/bin/sh
echo "did nothing"
"""


def write_script(directory: Path, body: str, name: str = "docx-sync.sh") -> Path:
    path = directory / name
    path.write_text(body.format(calls=directory / "calls.log") if "{calls}" in body else body)
    path.chmod(path.stat().st_mode | stat.S_IEXEC | stat.S_IXGRP | stat.S_IXOTH)
    return path


def read_calls(directory: Path) -> list[str]:
    calls = directory / "calls.log"
    if not calls.exists():
        return []
    return calls.read_text().split()


def encode(text: str, data_url: bool = True) -> str:
    encoded = base64.b64encode(text.encode("utf-8")).decode("ascii")
    return f"data:text/markdown;base64,{encoded}" if data_url else encoded


@pytest.fixture
def fake_script(tmp_path: Path) -> Path:
    return write_script(tmp_path, FAKE_SCRIPT)


@pytest.fixture
def make_settings(tmp_path: Path):
    def factory(**overrides) -> Settings:
        values = {
            "job_root": tmp_path / "jobs",
            "public_dir": tmp_path / "public",
            "script_path": tmp_path / "docx-sync.sh",
            "max_requests_per_minute": 100,
            "process_timeout_seconds": 10,
        }
        values.update(overrides)
        return Settings(**values)

    return factory


@pytest.fixture
def make_client(make_settings):
    clients: list[TestClient] = []

    def factory(**overrides) -> TestClient:
        client = TestClient(create_app(make_settings(**overrides)))
        client.__enter__()
        clients.append(client)
        return client

    yield factory

    for client in clients:
        client.__exit__(None, None, None)
