"""Retrieval: download archived files to a local directory."""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from http import HTTPStatus
from pathlib import Path, PurePosixPath

from archiver.config import Settings
from archiver.events import ArchiveObserver, LoggingObserver, ProgressUpdate
from archiver.exceptions import TransportError
from archiver.models.files import RemoteFileVersion
from archiver.services.datetime_service import year_quarter
from archiver.services.inventory_service import hash_file
from archiver.transport.http_client import ArchiveTransport

logger = logging.getLogger(__name__)

DOWNLOADING_FILES = "Downloading files"


class OverwriteMode(StrEnum):
    IF_CHANGED = "if_changed"
    ALWAYS = "always"
    NEVER = "never"


class DownloadLayout(StrEnum):
    """Where downloaded files land below the destination directory."""

    FLAT = "flat"
    SINGLE_DATASET = "single_dataset"
    DATASET_NAME_AND_SUBDIRECTORIES = "dataset_name_and_subdirectories"
    INSTRUMENT_YEAR_QUARTER_DATASET = "instrument_year_quarter_dataset"


@dataclass
class DownloadResult:
    downloaded: dict[Path, RemoteFileVersion] = field(default_factory=dict)
    skipped: list[Path] = field(default_factory=list)
    failed: dict[Path, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed


def target_path(
    version: RemoteFileVersion,
    dest_dir: Path,
    layout: DownloadLayout,
    dataset_name: str = "",
    instrument_name: str = "",
    acquired: datetime | None = None,
) -> Path:
    """Local path for ``version`` under ``dest_dir``.

    The dataset layouts need ``dataset_name``; the instrument layout also
    needs ``instrument_name`` and the acquisition date ``acquired``.

    Raises:
        ValueError: If the remote path would escape ``dest_dir``.
    """
    if layout == DownloadLayout.FLAT:
        relative = PurePosixPath(version.name)
    else:
        relative = PurePosixPath(version.relative_path)
        if layout in (
            DownloadLayout.DATASET_NAME_AND_SUBDIRECTORIES,
            DownloadLayout.INSTRUMENT_YEAR_QUARTER_DATASET,
        ):
            if not dataset_name:
                raise ValueError("A dataset name is required for this download layout")
            relative = PurePosixPath(dataset_name) / relative
        if layout == DownloadLayout.INSTRUMENT_YEAR_QUARTER_DATASET:
            if not instrument_name or acquired is None:
                raise ValueError("Instrument name and acquisition date are required")
            relative = PurePosixPath(instrument_name, year_quarter(acquired)) / relative

    target = (dest_dir / Path(*relative.parts)).resolve()
    if not target.is_relative_to(dest_dir.resolve()):
        raise ValueError(f"Remote path escapes the destination directory: {relative}")
    return target


def needs_download(path: Path, sha1: str, overwrite: OverwriteMode) -> bool:
    if not path.exists():
        return True
    if overwrite == OverwriteMode.ALWAYS:
        return True
    if overwrite == OverwriteMode.NEVER:
        return False
    return hash_file(path) != sha1


class ArchiveDownloader:
    """Fetches archived files, downloading each distinct hash once."""

    def __init__(
        self,
        transport: ArchiveTransport,
        settings: Settings,
        observer: ArchiveObserver | None = None,
    ) -> None:
        self._transport = transport
        self._settings = settings
        self._observer = observer or LoggingObserver()

    def file_url(self, version: RemoteFileVersion) -> str:
        hashtype = version.hashtype or "sha1"
        return f"{self._settings.files_base_url}/files/{hashtype}/{version.hashsum}"

    def _fetch(self, version: RemoteFileVersion, path: Path) -> str:
        """Download one file with retries; returns an error message or ``""``."""
        url = self.file_url(version)
        message = ""
        for attempt in range(1, self._settings.download_max_attempts + 1):
            try:
                self._transport.download(url, path)
                return ""
            except TransportError as exc:
                message = exc.message
                if exc.status_code == HTTPStatus.SERVICE_UNAVAILABLE:
                    logger.warning("File service unavailable for %s; not retrying", url)
                    break
                logger.warning(
                    "Download attempt %d of %s failed: %s",
                    attempt,
                    version.relative_path,
                    exc.message,
                )
        return message or "unknown error"

    def _finish(self, version: RemoteFileVersion, path: Path) -> None:
        if version.mtime is not None:
            timestamp = version.mtime.timestamp()
            os.utime(path, (timestamp, timestamp))

    def download(
        self,
        files: Sequence[RemoteFileVersion],
        dest_dir: Path,
        *,
        layout: DownloadLayout = DownloadLayout.SINGLE_DATASET,
        overwrite: OverwriteMode = OverwriteMode.IF_CHANGED,
        dataset_name: str = "",
        instrument_name: str = "",
        acquired: datetime | None = None,
    ) -> DownloadResult:
        """Download ``files`` below ``dest_dir``.

        Failures are reported through the observer and collected in the
        result; they do not stop the remaining downloads.
        """
        result = DownloadResult()
        by_hash: dict[str, list[tuple[RemoteFileVersion, Path]]] = {}
        for version in files:
            try:
                path = target_path(
                    version, dest_dir, layout, dataset_name, instrument_name, acquired
                )
            except ValueError as exc:
                self._observer.on_error(f"Download failed: {exc}")
                result.failed[dest_dir / version.name] = str(exc)
                continue
            by_hash.setdefault(version.hashsum, []).append((version, path))

        total = len(by_hash) or 1
        for index, (sha1, targets) in enumerate(by_hash.items()):
            pending: list[tuple[RemoteFileVersion, Path]] = []
            for version, path in targets:
                if needs_download(path, sha1, overwrite):
                    pending.append((version, path))
                else:
                    result.skipped.append(path)
            if not pending:
                continue

            version, first_path = pending[0]
            error = self._fetch(version, first_path)
            if error:
                for _, path in pending:
                    result.failed[path] = error
                self._observer.on_error(f"Download failed: {version.relative_path}: {error}")
                continue

            if version.hashtype.lower() == "sha1" and hash_file(first_path) != sha1:
                self._observer.on_warning(f"Hash mismatch after downloading {first_path}")
            self._finish(version, first_path)
            result.downloaded[first_path] = version

            for other, path in pending[1:]:
                path.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(first_path, path)
                self._finish(other, path)
                result.downloaded[path] = other

            self._observer.on_progress(
                ProgressUpdate(DOWNLOADING_FILES, (index + 1) * 100.0 / total)
            )

        self._observer.on_status(
            f"Downloaded {len(result.downloaded)} files to {dest_dir} "
            f"({len(result.skipped)} unchanged, {len(result.failed)} failed)"
        )
        return result
