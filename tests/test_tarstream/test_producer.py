"""Tests for writing upload tar streams."""

from __future__ import annotations

import io
import json
import tarfile
from pathlib import Path

import pytest

from archiver.events import ProgressUpdate
from archiver.exceptions import TarStreamError
from archiver.models.manifest import FileEntryItem
from archiver.services.manifest_service import (
    UploadMetadata,
    build_manifest,
    file_entries,
    manifest_to_json,
)
from archiver.tarstream.planner import TarEntry
from archiver.tarstream.producer import TarStreamProducer, report_interval
from tests.conftest import write_dataset


def _producer(
    root: Path, files: dict[str, bytes], **kwargs: object
) -> tuple[TarStreamProducer, list[FileEntryItem]]:
    records = write_dataset(root, files)
    items = build_manifest(UploadMetadata(dataset_id=7, instrument_name="Lumos01"), records)
    entries = file_entries(items)
    manifest = manifest_to_json(items).encode("utf-8")
    return TarStreamProducer(manifest, entries, **kwargs), entries  # type: ignore[arg-type]


class TestReportInterval:
    def test_grows_then_caps(self) -> None:
        assert report_interval(0) == 3
        assert report_interval(100) == 13
        assert report_interval(10_000) == 90


class TestTarStreamProducer:
    def test_written_length_matches_plan(self, tmp_path: Path) -> None:
        producer, _ = _producer(
            tmp_path / "ds",
            {"run.raw": b"r" * 5000, "QC/plot.png": b"p" * 513, "QC/empty_ok.txt": b"."},
        )
        sink = io.BytesIO()

        written = producer.write(sink)

        assert written == producer.content_length == len(sink.getvalue())
        assert written % 10240 == 0

    def test_contents_round_trip(self, tmp_path: Path) -> None:
        producer, entries = _producer(
            tmp_path / "ds", {"run.raw": b"raw bytes", "QC/plot.png": b"png bytes"}
        )
        sink = io.BytesIO()
        producer.write(sink)
        sink.seek(0)

        with tarfile.open(fileobj=sink) as tar:
            metadata = tar.extractfile("metadata.txt")
            assert metadata is not None
            manifest = json.loads(metadata.read())
            assert [m["name"] for m in manifest if m["destinationTable"] == "Files"] == [
                e.name for e in entries
            ]
            data_dir = tar.getmember("data")
            assert data_dir.isdir()
            assert data_dir.mode == 0o755
            plot = tar.getmember("data/QC/plot.png")
            assert plot.mode == 0o644
            extracted = tar.extractfile(plot)
            assert extracted is not None
            assert extracted.read() == b"png bytes"

    def test_long_and_non_ascii_names(self, tmp_path: Path) -> None:
        long_dir = "d" * 60 + "/" + "é" * 30
        long_name = "ü" * 70 + ".raw"
        producer, _ = _producer(
            tmp_path / "ds", {f"{long_dir}/{long_name}": b"x" * 700, "短.txt": b"short"}
        )
        sink = io.BytesIO()

        assert producer.write(sink) == producer.content_length

        sink.seek(0)
        with tarfile.open(fileobj=sink) as tar:
            names = tar.getnames()
        assert f"data/{long_dir}/{long_name}" in names
        assert "data/短.txt" in names

    def test_size_change_is_detected(self, tmp_path: Path) -> None:
        producer, entries = _producer(tmp_path / "ds", {"run.raw": b"original"})
        Path(entries[0].absolutelocalpath).write_bytes(b"now much longer than before")
        with pytest.raises(TarStreamError, match="changed size"):
            producer.write(io.BytesIO())

    def test_progress_reports(self, tmp_path: Path) -> None:
        updates: list[ProgressUpdate] = []
        ticks = iter(float(t) for t in range(0, 1000, 5))
        producer, _ = _producer(
            tmp_path / "ds",
            {"a.raw": b"a" * 100, "b.raw": b"b" * 100},
            progress=updates.append,
            clock=lambda: next(ticks),
        )

        producer.write(io.BytesIO())

        percents = [u.percent for u in updates]
        assert percents[0] == 0.0
        assert percents[-1] == 100.0
        assert 50.0 in percents
        assert all(u.message == "Uploading files" for u in updates)

    def test_write_to_file(self, tmp_path: Path) -> None:
        producer, _ = _producer(tmp_path / "ds", {"run.raw": b"abc"})
        path = tmp_path / "out" / "bundle.tar"
        assert producer.write_to_file(path) == path.stat().st_size

    def test_entry_without_content_or_source(self, tmp_path: Path) -> None:
        producer, _ = _producer(tmp_path / "ds", {"run.raw": b"abc"})
        with tarfile.open(fileobj=io.BytesIO(), mode="w|") as tar:
            with pytest.raises(TarStreamError, match="neither content nor a source"):
                producer._add_entry(tar, TarEntry("data/lost.raw", 5), 0.0)
