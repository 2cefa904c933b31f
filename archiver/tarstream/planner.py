"""Exact byte length of an upload tar stream, computed before writing it.

The ingest service needs ``Content-Length`` up front, so the planner and the
producer walk the same entry sequence (``iter_tar_entries``) and the planner
counts the 512-byte blocks ``tarfile`` will emit in GNU format:

- one header block per entry;
- for archive paths longer than 100 bytes, a ``././@LongLink`` header plus the
  NUL-terminated name padded to whole blocks;
- the content padded to whole blocks;
- two zero blocks at the end, then padding to a 10240-byte record.
"""

from __future__ import annotations

import math
import tarfile
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from archiver.exceptions import TarStreamError
from archiver.models.manifest import FileEntryItem

BLOCK_SIZE = tarfile.BLOCKSIZE
RECORD_SIZE = tarfile.RECORDSIZE
NAME_LIMIT = tarfile.LENGTH_NAME
METADATA_ENTRY = "metadata.txt"
DATA_DIRECTORY = "data/"


@dataclass(frozen=True)
class TarEntry:
    """One member of the upload tar stream."""

    path: str
    size: int = 0
    source: Path | None = None
    data: bytes | None = None

    @property
    def is_dir(self) -> bool:
        return self.path.endswith("/")


@dataclass
class PlannedEntry:
    path: str
    header_blocks: int
    content_blocks: int
    offset: int


@dataclass
class TarStreamPlan:
    total_bytes: int = 0
    entries: list[PlannedEntry] = field(default_factory=list)


def iter_tar_entries(manifest: bytes, files: Sequence[FileEntryItem]) -> Iterator[TarEntry]:
    """Yield the tar members for an upload in stream order.

    The manifest comes first, then the ``data/`` directory.  Each file is
    preceded by its directory entry the first time its source directory is
    seen, except for files at the dataset root.

    Raises:
        TarStreamError: If a source file has no resolvable parent directory.
    """
    yield TarEntry(METADATA_ENTRY, len(manifest), data=manifest)
    yield TarEntry(DATA_DIRECTORY)

    seen_parents: set[str] = set()
    for item in files:
        source = Path(item.absolutelocalpath)
        if not source.is_absolute() or source.parent == source:
            raise TarStreamError(
                f"Cannot access the parent folder for the source file: {item.absolutelocalpath}"
            )
        if item.subdir.strip("/") != DATA_DIRECTORY.strip("/"):
            parent_key = str(source.parent)
            if parent_key not in seen_parents:
                seen_parents.add(parent_key)
                yield TarEntry(item.subdir.rstrip("/") + "/")
        yield TarEntry(item.archive_path, item.size, source=source)


def encode_archive_path(path: str) -> bytes:
    """UTF-8 bytes of a member name, as written by the producer.

    Raises:
        TarStreamError: If the name holds characters with no UTF-8 encoding.
    """
    try:
        return path.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise TarStreamError(f"Archive path is not valid UTF-8: {path!a}") from exc


def header_blocks(path: str) -> int:
    """Header blocks for a member, including any GNU long-name record."""
    name_bytes = len(encode_archive_path(path))
    if name_bytes <= NAME_LIMIT:
        return 1
    # the long-name payload carries a trailing NUL
    return 2 + math.ceil((name_bytes + 1) / BLOCK_SIZE)


def content_blocks(size: int) -> int:
    return math.ceil(size / BLOCK_SIZE)


def plan_entries(entries: Iterator[TarEntry] | Sequence[TarEntry]) -> TarStreamPlan:
    plan = TarStreamPlan()
    offset = 0
    for entry in entries:
        headers = header_blocks(entry.path)
        blocks = content_blocks(entry.size)
        plan.entries.append(PlannedEntry(entry.path, headers, blocks, offset))
        offset += (headers + blocks) * BLOCK_SIZE

    offset += 2 * BLOCK_SIZE
    plan.total_bytes = math.ceil(offset / RECORD_SIZE) * RECORD_SIZE
    return plan


def plan_tar_stream(manifest: bytes, files: Sequence[FileEntryItem]) -> TarStreamPlan:
    """Plan the stream for ``manifest`` followed by ``files``."""
    return plan_entries(iter_tar_entries(manifest, files))
