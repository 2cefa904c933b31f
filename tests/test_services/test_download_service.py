"""Tests for downloading archived files."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

import httpx
import pytest

from archiver.config import Settings
from archiver.events import RecordingObserver
from archiver.services.download_service import (
    ArchiveDownloader,
    DownloadLayout,
    OverwriteMode,
    needs_download,
    target_path,
)
from archiver.transport.http_client import ArchiveTransport
from tests.conftest import Handler, make_remote, sha1_of

DownloaderFactory = Callable[[Handler], ArchiveDownloader]


@pytest.fixture
def downloader(
    make_transport: Callable[[Handler], ArchiveTransport],
    test_settings: Settings,
    observer: RecordingObserver,
) -> DownloaderFactory:
    def _make(handler: Handler) -> ArchiveDownloader:
        return ArchiveDownloader(make_transport(handler), test_settings, observer)

    return _make


def _serve(blobs: dict[str, bytes], hits: list[str]) -> Handler:
    def handler(request: httpx.Request) -> httpx.Response:
        sha1 = request.url.path.rsplit("/", 1)[-1]
        hits.append(request.url.path)
        if sha1 not in blobs:
            return httpx.Response(404, text="not found")
        return httpx.Response(200, content=blobs[sha1])

    return handler


class TestTargetPath:
    def test_flat(self, tmp_path: Path) -> None:
        version = make_remote("QC", "a.png", "1" * 40)
        assert target_path(version, tmp_path, DownloadLayout.FLAT) == tmp_path.resolve() / "a.png"

    def test_single_dataset_keeps_subdirectories(self, tmp_path: Path) -> None:
        version = make_remote("QC/plots", "a.png", "1" * 40)
        path = target_path(version, tmp_path, DownloadLayout.SINGLE_DATASET)
        assert path == tmp_path.resolve() / "QC" / "plots" / "a.png"

    def test_dataset_name_prefix(self, tmp_path: Path) -> None:
        version = make_remote("", "run.raw", "1" * 40)
        path = target_path(
            version, tmp_path, DownloadLayout.DATASET_NAME_AND_SUBDIRECTORIES, dataset_name="Run1"
        )
        assert path == tmp_path.resolve() / "Run1" / "run.raw"

    def test_instrument_year_quarter(self, tmp_path: Path) -> None:
        version = make_remote("QC", "a.png", "1" * 40)
        path = target_path(
            version,
            tmp_path,
            DownloadLayout.INSTRUMENT_YEAR_QUARTER_DATASET,
            dataset_name="Run1",
            instrument_name="Lumos01",
            acquired=datetime(2024, 8, 3, tzinfo=timezone.utc),
        )
        assert path == tmp_path.resolve() / "Lumos01" / "2024_3" / "Run1" / "QC" / "a.png"

    def test_missing_dataset_name(self, tmp_path: Path) -> None:
        version = make_remote("", "run.raw", "1" * 40)
        with pytest.raises(ValueError, match="dataset name"):
            target_path(version, tmp_path, DownloadLayout.DATASET_NAME_AND_SUBDIRECTORIES)

    def test_escape_rejected(self, tmp_path: Path) -> None:
        version = make_remote("../../etc", "passwd", "1" * 40)
        with pytest.raises(ValueError, match="escapes"):
            target_path(version, tmp_path / "dest", DownloadLayout.SINGLE_DATASET)


class TestNeedsDownload:
    def test_missing_file(self, tmp_path: Path) -> None:
        assert needs_download(tmp_path / "nope", "1" * 40, OverwriteMode.NEVER)

    @pytest.mark.parametrize(
        ("mode", "same_hash", "expected"),
        [
            (OverwriteMode.ALWAYS, True, True),
            (OverwriteMode.NEVER, False, False),
            (OverwriteMode.IF_CHANGED, True, False),
            (OverwriteMode.IF_CHANGED, False, True),
        ],
    )
    def test_existing_file(
        self, tmp_path: Path, mode: OverwriteMode, same_hash: bool, expected: bool
    ) -> None:
        path = tmp_path / "a.raw"
        path.write_bytes(b"local")
        sha1 = sha1_of(b"local") if same_hash else sha1_of(b"remote")
        assert needs_download(path, sha1, mode) is expected


class TestArchiveDownloader:
    def test_file_url(self, downloader: DownloaderFactory) -> None:
        version = make_remote("", "a.raw", "f" * 40)
        assert (
            downloader(_serve({}, [])).file_url(version)
            == f"https://files.test/files/sha1/{'f' * 40}"
        )

    def test_downloads_each_hash_once(
        self, downloader: DownloaderFactory, tmp_path: Path
    ) -> None:
        data = b"shared bytes"
        sha1 = sha1_of(data)
        hits: list[str] = []
        versions = [make_remote("", "a.raw", sha1), make_remote("copy", "a.raw", sha1)]

        result = downloader(_serve({sha1: data}, hits)).download(versions, tmp_path)

        assert len(hits) == 1
        assert result.success
        assert (tmp_path / "a.raw").read_bytes() == data
        assert (tmp_path / "copy" / "a.raw").read_bytes() == data
        assert len(result.downloaded) == 2

    def test_sets_modification_time(self, downloader: DownloaderFactory, tmp_path: Path) -> None:
        data = b"payload"
        version = make_remote("", "a.raw", sha1_of(data))
        downloader(_serve({version.hashsum: data}, [])).download([version], tmp_path)
        assert version.mtime is not None
        assert (tmp_path / "a.raw").stat().st_mtime == version.mtime.timestamp()

    def test_unchanged_files_skipped(self, downloader: DownloaderFactory, tmp_path: Path) -> None:
        data = b"already here"
        (tmp_path / "a.raw").write_bytes(data)
        hits: list[str] = []
        version = make_remote("", "a.raw", sha1_of(data))

        result = downloader(_serve({version.hashsum: data}, hits)).download([version], tmp_path)

        assert hits == []
        assert result.skipped == [tmp_path.resolve() / "a.raw"]

    def test_service_unavailable_is_not_retried(
        self, downloader: DownloaderFactory, tmp_path: Path, observer: RecordingObserver
    ) -> None:
        hits: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            hits.append(request.url.path)
            return httpx.Response(503, text="maintenance")

        result = downloader(handler).download([make_remote("", "a.raw", "1" * 40)], tmp_path)

        assert len(hits) == 1
        assert not result.success
        assert any(e.startswith("Download failed") for e in observer.errors)
        assert not (tmp_path / "a.raw").exists()

    def test_other_failures_are_retried(
        self, downloader: DownloaderFactory, tmp_path: Path, test_settings: Settings
    ) -> None:
        hits: list[str] = []
        result = downloader(_serve({}, hits)).download(
            [make_remote("", "a.raw", "1" * 40)], tmp_path
        )
        assert len(hits) == test_settings.download_max_attempts
        assert list(result.failed) == [tmp_path.resolve() / "a.raw"]

    def test_hash_mismatch_warns(
        self, downloader: DownloaderFactory, tmp_path: Path, observer: RecordingObserver
    ) -> None:
        version = make_remote("", "a.raw", "1" * 40)
        downloader(_serve({"1" * 40: b"not matching"}, [])).download([version], tmp_path)
        assert any("Hash mismatch" in w for w in observer.warnings)
