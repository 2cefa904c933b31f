"""Local file inventory: hash every file that belongs in an upload."""

from __future__ import annotations

import fnmatch
import hashlib
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from archiver.events import ArchiveObserver, LoggingObserver, ProgressUpdate
from archiver.exceptions import SourceDirectoryNotFoundError, TooManyFilesError
from archiver.models.files import FileRecord, join_relative_path
from archiver.services.datetime_service import from_timestamp

logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 65536
CACHE_INFO_SUFFIX = "_cacheinfo.txt"
QC_DIRECTORY = "QC"
HASHING_FILES = "Hashing files"

_IGNORED_PATTERNS = (".ds_store", "thumbs.db", "*.sqlite-journal")


@dataclass
class DatasetInventory:
    """Result of scanning a dataset directory."""

    files: list[FileRecord] = field(default_factory=list)
    skipped_subdirectories: list[str] = field(default_factory=list)
    zero_byte_files: list[Path] = field(default_factory=list)

    @property
    def total_bytes(self) -> int:
        return sum(f.size for f in self.files)


def hash_file(path: Path) -> str:
    """Compute SHA-1 hash of a file."""
    sha = hashlib.sha1()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            sha.update(chunk)
    return sha.hexdigest()


def relative_directory(path: Path, base_dir: Path) -> str:
    """Return the forward-slash directory of ``path`` relative to ``base_dir``.

    Files directly inside ``base_dir`` get an empty string.
    """
    try:
        relative = path.parent.resolve().relative_to(base_dir.resolve())
    except ValueError as exc:
        raise ValueError(f"{path} is not inside {base_dir}") from exc
    if not relative.parts:
        return ""
    return PurePosixPath(*relative.parts).as_posix()


def is_ignored(name: str) -> bool:
    lowered = name.lower()
    return any(fnmatch.fnmatchcase(lowered, pattern) for pattern in _IGNORED_PATTERNS)


def is_utf8_encodable(name: str) -> bool:
    """False for names holding undecodable bytes (surrogate escapes from the OS)."""
    try:
        name.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def build_file_record(
    source_path: Path,
    base_dir: Path,
    destination_name: str | None = None,
    relative_dir: str | None = None,
) -> FileRecord:
    """Hash ``source_path`` and describe it relative to ``base_dir``."""
    if relative_dir is None:
        relative_dir = relative_directory(source_path, base_dir)
    stat = source_path.stat()
    return FileRecord(
        source_path=source_path.resolve(),
        relative_dir=relative_dir,
        name=destination_name or source_path.name,
        sha1=hash_file(source_path),
        size=stat.st_size,
        ctime=from_timestamp(stat.st_ctime),
        mtime=from_timestamp(stat.st_mtime),
    )


def _walk_files(source_dir: Path, recurse: bool) -> list[Path]:
    if not recurse:
        return sorted(p for p in source_dir.iterdir() if p.is_file())
    found: list[Path] = []
    for root, dirs, files in os.walk(source_dir):
        dirs.sort()
        for filename in files:
            found.append(Path(root) / filename)
    return sorted(found)


def _read_cache_info_target(cache_info: Path) -> str:
    with open(cache_info, encoding="utf-8") as f:
        for line in f:
            if line.strip():
                return line.strip()
    return ""


def _limit_large_dataset(
    source_dir: Path, candidates: list[Path], threshold_bytes: float, inventory: DatasetInventory
) -> list[Path]:
    """Keep root files and the QC directory when the dataset is too large."""
    total = sum(p.stat().st_size for p in candidates)
    if total <= threshold_bytes:
        return candidates

    kept: list[Path] = []
    skipped: set[str] = set()
    for candidate in candidates:
        parts = candidate.relative_to(source_dir).parts
        if len(parts) == 1 or parts[0].lower() == QC_DIRECTORY.lower():
            kept.append(candidate)
        else:
            skipped.add(parts[0])
    inventory.skipped_subdirectories.extend(sorted(skipped))
    logger.warning(
        "Dataset is %.1f GB; only archiving root files and the %s directory (skipped %s)",
        total / 1024**3,
        QC_DIRECTORY,
        ", ".join(sorted(skipped)),
    )
    return kept


def scan_dataset(
    source_dir: Path,
    base_dir: Path | None = None,
    *,
    recurse: bool = True,
    archive_mode: bool = True,
    max_files: int = 500,
    ignore_max_file_limit: bool = False,
    large_dataset_threshold_gb: float = 15.0,
    observer: ArchiveObserver | None = None,
) -> DatasetInventory:
    """Hash every file in ``source_dir`` that belongs in the archive.

    Zero-byte and junk files (.DS_Store, Thumbs.db, SQLite journals) are
    skipped.  A ``*_CacheInfo.txt`` file names a file stored elsewhere; that
    file is archived in place of the cache info file.  Results are sorted by
    absolute source path.  Each source path and each archive-relative path
    appears at most once; a later file that would land on an already used
    relative path, or whose name is not valid UTF-8, is skipped with a warning.
    """
    observer = observer or LoggingObserver()
    base_dir = base_dir or source_dir
    if not source_dir.is_dir():
        raise SourceDirectoryNotFoundError(f"Source directory not found: {source_dir}")

    inventory = DatasetInventory()
    candidates = [p for p in _walk_files(source_dir, recurse) if not is_ignored(p.name)]

    if len(candidates) >= max_files:
        message = (
            f"Source directory has over {max_files} files; files must be zipped before upload "
            f"({len(candidates)} found in {source_dir})"
        )
        if not ignore_max_file_limit:
            raise TooManyFilesError(message)
        observer.on_warning(message)

    if archive_mode and recurse:
        threshold = large_dataset_threshold_gb * 1024**3
        candidates = _limit_large_dataset(source_dir, candidates, threshold, inventory)

    seen: set[Path] = set()
    seen_relative: set[str] = set()
    staged: list[tuple[Path, str | None]] = []
    for candidate in candidates:
        if candidate.name.lower().endswith(CACHE_INFO_SUFFIX):
            target_text = _read_cache_info_target(candidate)
            if not target_text:
                observer.on_error(f"Cache info file is empty: {candidate}")
                continue
            target = Path(target_text)
            if not target.is_file():
                observer.on_warning(
                    f"Remote file referenced by {candidate.name} not found: {target}"
                )
                continue
            staged.append((target, relative_directory(candidate, base_dir)))
            continue
        staged.append((candidate, None))

    staged.sort(key=lambda item: str(item[0].resolve()))
    total_files = len(staged)
    for index, (path, relative_dir) in enumerate(staged):
        resolved = path.resolve()
        if resolved in seen:
            continue
        seen.add(resolved)

        if path.stat().st_size == 0:
            inventory.zero_byte_files.append(resolved)
            observer.on_warning(f"Skipping zero byte file {path.name} in {path.parent}")
            continue

        if relative_dir is None:
            relative_dir = relative_directory(path, base_dir)
        relative_path = join_relative_path(relative_dir, path.name)
        if not is_utf8_encodable(relative_path):
            observer.on_warning(
                f"Skipping file whose name is not valid UTF-8: {os.fsencode(path)!r}"
            )
            continue
        if relative_path in seen_relative:
            observer.on_warning(
                f"Skipping {path}: another file is already archived as {relative_path}"
            )
            continue
        seen_relative.add(relative_path)

        observer.on_progress(
            ProgressUpdate(
                message=f"{HASHING_FILES}: {path.name}", percent=index * 100.0 / total_files
            )
        )
        inventory.files.append(build_file_record(path, base_dir, relative_dir=relative_dir))

    observer.on_status(f"Found {len(inventory.files)} files to archive in {source_dir}")
    return inventory
