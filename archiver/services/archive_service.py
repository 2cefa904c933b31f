"""Archive task: inventory, reconcile, build the manifest, validate, upload."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from archiver.config import Settings
from archiver.events import ArchiveObserver, LoggingObserver
from archiver.models.manifest import ManifestItem
from archiver.services.inventory_service import DatasetInventory, scan_dataset
from archiver.services.manifest_service import (
    UploadMetadata,
    build_manifest,
    check_identification,
    describe_manifest,
)
from archiver.services.reconcile_service import ReconcileResult, reconcile
from archiver.services.remote_inventory_service import RemoteInventoryClient
from archiver.services.upload_service import ArchiveUploader, UploadResult
from archiver.transport.http_client import ArchiveTransport

logger = logging.getLogger(__name__)


@dataclass
class ArchiveRequest:
    """What to archive and how strictly to check it."""

    source_dir: Path
    metadata: UploadMetadata
    expected_remote_count: int = 0
    base_dir: Path | None = None
    recurse: bool = True
    archive_mode: bool = True
    subdir_filter: str = ""
    ignore_max_file_limit: bool = False
    ignore_tracking_mismatch: bool = False
    skip_policy_check: bool = False


@dataclass
class PreparedUpload:
    inventory: DatasetInventory
    reconciled: ReconcileResult
    manifest: list[ManifestItem] = field(default_factory=list)

    @property
    def description(self) -> str:
        return describe_manifest(self.manifest)


class ArchiveTask:
    """Runs one dataset or data package through the upload path."""

    def __init__(
        self,
        transport: ArchiveTransport,
        settings: Settings,
        observer: ArchiveObserver | None = None,
    ) -> None:
        self._settings = settings
        self._observer = observer or LoggingObserver()
        self._remote = RemoteInventoryClient(transport, settings)
        self._uploader = ArchiveUploader(transport, settings, self._observer)

    def prepare(self, request: ArchiveRequest) -> PreparedUpload:
        """Work out which files need uploading and build their manifest.

        Raises:
            MissingIdentificationError: Before any request is made, if neither
                a dataset id nor a data package id is set.
        """
        check_identification(request.metadata)
        inventory = scan_dataset(
            request.source_dir,
            request.base_dir,
            recurse=request.recurse,
            archive_mode=request.archive_mode,
            max_files=self._settings.max_files_to_archive,
            ignore_max_file_limit=request.ignore_max_file_limit,
            large_dataset_threshold_gb=self._settings.large_dataset_threshold_gb,
            observer=self._observer,
        )

        metadata = request.metadata
        if metadata.dataset_id > 0:
            remote = self._remote.dataset_files(metadata.dataset_id, request.subdir_filter)
        else:
            remote = self._remote.data_package_files(
                metadata.data_package_id, request.subdir_filter
            )

        reconciled = reconcile(
            inventory.files,
            remote,
            request.expected_remote_count,
            ignore_mismatch=request.ignore_tracking_mismatch,
            observer=self._observer,
        )
        manifest = build_manifest(metadata, reconciled.files, self._observer)
        return PreparedUpload(inventory, reconciled, manifest)

    def run(self, request: ArchiveRequest) -> UploadResult:
        """Prepare, validate and upload; returns the upload outcome."""
        prepared = self.prepare(request)
        if not prepared.reconciled.files:
            self._observer.on_status(f"Archive is up to date: {prepared.description}")
            return UploadResult(success=True, message="Archive is up to date")

        self._observer.on_status(
            f"{prepared.reconciled.new_count} new and {prepared.reconciled.updated_count} "
            f"updated files to archive ({prepared.reconciled.total_bytes} bytes)"
        )
        if not request.skip_policy_check:
            self._uploader.validate_policy(prepared.manifest)
        return self._uploader.upload(prepared.manifest)
