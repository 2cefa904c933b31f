"""Shared test fixtures for the archive client."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Callable, Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx
import pytest

from archiver.config import Settings
from archiver.events import RecordingObserver
from archiver.models.files import FileRecord, RemoteFileVersion
from archiver.services.inventory_service import build_file_record
from archiver.transport.http_client import ArchiveTransport

Handler = Callable[[httpx.Request], httpx.Response]

FIXED_TIME = datetime(2024, 5, 6, 7, 8, 9, tzinfo=timezone.utc)


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings pointing at fake hosts, with no certificate search."""
    return Settings(
        _env_file=None,
        ingest_host="ingest.test",
        policy_host="policy.test",
        metadata_host="metadata.test",
        files_host="files.test",
        client_cert_dirs=[],
        default_timeout_seconds=5.0,
        upload_timeout_seconds=10.0,
        timeout_grace_seconds=1.0,
        local_temp_dir=tmp_path / "tmp",
    )


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def make_transport(test_settings: Settings) -> Iterator[Callable[[Handler], ArchiveTransport]]:
    """Build an ``ArchiveTransport`` answering through ``handler``."""
    created: list[ArchiveTransport] = []

    def _make(handler: Handler) -> ArchiveTransport:
        transport = ArchiveTransport(test_settings, transport=httpx.MockTransport(handler))
        created.append(transport)
        return transport

    yield _make
    for transport in created:
        transport.close()


def sha1_of(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()


def make_record(
    relative_dir: str,
    name: str,
    data: bytes = b"content",
    source_dir: Path = Path("/data/source"),
) -> FileRecord:
    return FileRecord(
        source_path=source_dir / relative_dir / name if relative_dir else source_dir / name,
        relative_dir=relative_dir,
        name=name,
        sha1=sha1_of(data),
        size=len(data),
        ctime=FIXED_TIME,
        mtime=FIXED_TIME,
    )


def make_remote(
    subdir: str,
    name: str,
    hashsum: str,
    *,
    file_id: int = 1,
    created: str = "2024-01-15T10:00:00",
) -> RemoteFileVersion:
    return RemoteFileVersion.model_validate(
        {
            "_id": file_id,
            "name": name,
            "subdir": subdir,
            "hashsum": hashsum,
            "hashtype": "sha1",
            "size": 7,
            "created": created,
            "mtime": "2024-01-01T00:00:00",
        }
    )


def json_response(payload: Any, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, text=json.dumps(payload))


def write_dataset(root: Path, files: dict[str, bytes]) -> list[FileRecord]:
    """Create ``files`` (relative path -> content) under ``root`` and describe them."""
    records = []
    for relative, data in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        records.append(build_file_record(path, root))
    return records
