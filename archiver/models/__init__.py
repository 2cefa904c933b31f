"""Data models for the archive client."""

from archiver.models.files import FileRecord, RemoteFileVersion, join_relative_path
from archiver.models.manifest import (
    MANIFEST_ADAPTER,
    FileEntryItem,
    KeyValueItem,
    ManifestItem,
    TransactionValueItem,
)
from archiver.models.status import IngestJobStatus, IngestState

__all__ = [
    "MANIFEST_ADAPTER",
    "FileEntryItem",
    "FileRecord",
    "IngestJobStatus",
    "IngestState",
    "KeyValueItem",
    "ManifestItem",
    "RemoteFileVersion",
    "TransactionValueItem",
    "join_relative_path",
]
