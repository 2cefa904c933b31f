"""Tar stream producer: writes the upload archive into any byte sink."""

from __future__ import annotations

import io
import logging
import os
import tarfile
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Protocol

from archiver.events import ProgressUpdate
from archiver.exceptions import TarStreamError
from archiver.models.manifest import FileEntryItem
from archiver.tarstream.planner import TarEntry, TarStreamPlan, iter_tar_entries, plan_tar_stream

logger = logging.getLogger(__name__)

UPLOADING_FILES = "Uploading files"
_MAX_REPORT_INTERVAL = 90.0
_MIN_REPORT_INTERVAL = 3.0


class ByteSink(Protocol):
    def write(self, data: bytes) -> int: ...


class _CountingSink:
    """Forwards writes to ``sink`` while counting bytes."""

    def __init__(self, sink: ByteSink) -> None:
        self._sink = sink
        self.count = 0

    def write(self, data: bytes) -> int:
        self._sink.write(data)
        self.count += len(data)
        return len(data)


def report_interval(elapsed_seconds: float) -> float:
    """Seconds between progress reports; grows with elapsed time, capped at 90."""
    return min(_MAX_REPORT_INTERVAL, _MIN_REPORT_INTERVAL + elapsed_seconds / 10)


class TarStreamProducer:
    """Writes the manifest and files of one upload as a GNU tar stream.

    Files are copied straight from disk to the sink in ``tarfile`` sized
    chunks, so memory use does not depend on file size.

    Args:
        manifest: Serialized manifest stored as ``metadata.txt``.
        files: File entries in manifest order.
        progress: Optional callback receiving ``ProgressUpdate`` objects.
    """

    def __init__(
        self,
        manifest: bytes,
        files: Sequence[FileEntryItem],
        progress: Callable[[ProgressUpdate], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._manifest = manifest
        self._files = list(files)
        self._progress = progress
        self._clock = clock
        self._plan: TarStreamPlan | None = None

    @property
    def plan(self) -> TarStreamPlan:
        if self._plan is None:
            self._plan = plan_tar_stream(self._manifest, self._files)
        return self._plan

    @property
    def content_length(self) -> int:
        return self.plan.total_bytes

    def _report(self, percent: float, done: int, total: int) -> None:
        if self._progress is not None:
            self._progress(ProgressUpdate(UPLOADING_FILES, percent, done, total))

    def _add_entry(self, tar: tarfile.TarFile, entry: TarEntry, now: float) -> None:
        info = tarfile.TarInfo(entry.path)
        if entry.is_dir:
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            info.mtime = int(now)
            tar.addfile(info)
            return

        info.mode = 0o644
        if entry.data is not None:
            info.size = len(entry.data)
            info.mtime = int(now)
            tar.addfile(info, io.BytesIO(entry.data))
            return

        if entry.source is None:
            raise TarStreamError(f"Tar entry {entry.path} has neither content nor a source file")
        with open(entry.source, "rb") as f:
            stat = os.fstat(f.fileno())
            if stat.st_size != entry.size:
                raise TarStreamError(
                    f"{entry.source} changed size since it was hashed "
                    f"({entry.size} -> {stat.st_size} bytes)"
                )
            info.size = entry.size
            info.mtime = int(stat.st_mtime)
            tar.addfile(info, f)

    def write(self, sink: ByteSink) -> int:
        """Write the complete stream to ``sink`` and return the byte count.

        Raises:
            TarStreamError: If the written length differs from the plan or a
                source file changed size.
        """
        expected = self.content_length
        total_file_bytes = sum(f.size for f in self._files) or 1
        counting = _CountingSink(sink)
        start = self._clock()
        last_report = start
        files_done = 0
        bytes_done = 0

        self._report(0.0, 0, total_file_bytes)
        with tarfile.open(
            fileobj=counting,
            mode="w|",
            format=tarfile.GNU_FORMAT,
            encoding="utf-8",
            errors="strict",
        ) as tar:
            for entry in iter_tar_entries(self._manifest, self._files):
                self._add_entry(tar, entry, time.time())
                if entry.source is None:
                    continue

                files_done += 1
                bytes_done += entry.size
                now = self._clock()
                if now - last_report >= report_interval(now - start):
                    last_report = now
                    percent = bytes_done * 100.0 / total_file_bytes
                    self._report(percent, bytes_done, total_file_bytes)

        if counting.count != expected:
            raise TarStreamError(
                f"Tar stream length mismatch: planned {expected} bytes, wrote {counting.count}"
            )
        self._report(100.0, bytes_done, total_file_bytes)
        logger.debug("Wrote %d files (%d bytes) to tar stream", files_done, counting.count)
        return counting.count

    def write_to_file(self, path: Path) -> int:
        """Write the stream to a local file instead of the network."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            return self.write(f)
