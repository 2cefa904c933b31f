"""Reconciliation: decide which local files the archive still needs."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum

from archiver.events import ArchiveObserver, LoggingObserver
from archiver.exceptions import CriticalArchiveError, TrackingMismatchError
from archiver.models.files import FileRecord, RemoteFileVersion

logger = logging.getLogger(__name__)


class FileChange(StrEnum):
    """How a local file relates to the archive."""

    UNCHANGED = "unchanged"
    NEW = "new"
    UPDATED = "updated"


@dataclass
class ReconcileResult:
    """Files to upload plus counters for reporting."""

    files: list[FileRecord] = field(default_factory=list)
    new_count: int = 0
    updated_count: int = 0
    unchanged_count: int = 0
    total_bytes: int = 0


def tracking_tolerance(expected_count: int) -> float:
    """Fraction of the expected file count that must be present remotely."""
    if expected_count < 10:
        return 0.7
    if expected_count < 20:
        return 0.6
    if expected_count < 40:
        return 0.5
    if expected_count < 80:
        return 0.4
    return 0.25


def check_remote_count(
    remote_count: int,
    expected_count: int,
    *,
    ignore_mismatch: bool = False,
    observer: ArchiveObserver | None = None,
) -> None:
    """Compare the archive's file count with the tracking database.

    Raises:
        CriticalArchiveError: If ``expected_count`` is negative (lookup failed).
        TrackingMismatchError: If far fewer files are archived than expected and
            ``ignore_mismatch`` is not set.
    """
    if expected_count < 0:
        raise CriticalArchiveError(
            f"Expected archive file count is invalid ({expected_count}); "
            "the tracking database lookup failed"
        )
    if expected_count == 0:
        return

    tolerance = tracking_tolerance(expected_count)
    if remote_count >= expected_count * tolerance:
        return

    message = (
        f"Archive reports {remote_count} files, but the tracking database expects "
        f"{expected_count} (minimum {expected_count * tolerance:.0f})"
    )
    if not ignore_mismatch:
        raise TrackingMismatchError(message)
    observer = observer or LoggingObserver()
    observer.on_warning(f"{message}; continuing because the check is overridden")


def classify_file(
    record: FileRecord, remote: Mapping[str, Sequence[RemoteFileVersion]]
) -> FileChange:
    versions = remote.get(record.relative_path)
    if versions is None:
        return FileChange.NEW
    if any(v.hashsum == record.sha1 for v in versions):
        return FileChange.UNCHANGED
    return FileChange.UPDATED


def reconcile(
    local_files: Sequence[FileRecord],
    remote: Mapping[str, Sequence[RemoteFileVersion]],
    expected_remote_count: int,
    *,
    ignore_mismatch: bool = False,
    observer: ArchiveObserver | None = None,
) -> ReconcileResult:
    """Select the local files that are new or differ from every archived version.

    ``expected_remote_count`` comes from the tracking database; the remote
    inventory is checked against it before anything is compared.  Output
    preserves the order of ``local_files``.
    """
    check_remote_count(
        len(remote), expected_remote_count, ignore_mismatch=ignore_mismatch, observer=observer
    )

    result = ReconcileResult()
    for record in local_files:
        change = classify_file(record, remote)
        if change == FileChange.UNCHANGED:
            result.unchanged_count += 1
            continue
        if change == FileChange.NEW:
            result.new_count += 1
        else:
            result.updated_count += 1
        result.files.append(record)
        result.total_bytes += record.size

    logger.info(
        "Reconciled %d local files: %d new, %d updated, %d unchanged (%d bytes to upload)",
        len(local_files),
        result.new_count,
        result.updated_count,
        result.unchanged_count,
        result.total_bytes,
    )
    return result
