"""Upload: policy validation and the streamed tar POST to the ingest service."""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from http import HTTPStatus
from pathlib import Path

from pydantic import ValidationError

from archiver.config import Settings
from archiver.events import ArchiveObserver, LoggingObserver
from archiver.exceptions import (
    PolicyServiceError,
    PolicyValidationError,
    PreconditionFailedError,
    TransportError,
    UploadError,
)
from archiver.models.manifest import ManifestItem
from archiver.models.status import IngestJobStatus, IngestState
from archiver.services.manifest_service import (
    deduplicate_files,
    describe_manifest,
    file_entries,
    manifest_to_json,
)
from archiver.services.status_service import IngestStatusPoller, StatusReport, interpret_status
from archiver.tarstream.producer import TarStreamProducer
from archiver.transport.http_client import ArchiveTransport

logger = logging.getLogger(__name__)

_POLICY_LOG_CHARS = 1250


@dataclass
class UploadResult:
    """Outcome of one upload attempt."""

    success: bool
    file_count: int = 0
    bytes_sent: int = 0
    job_id: int = -1
    status_url: str = ""
    report: StatusReport | None = None
    message: str = ""


class ArchiveUploader:
    """Sends manifests and tar streams to the policy and ingest services."""

    def __init__(
        self,
        transport: ArchiveTransport,
        settings: Settings,
        observer: ArchiveObserver | None = None,
    ) -> None:
        self._transport = transport
        self._settings = settings
        self._observer = observer or LoggingObserver()
        self._status = IngestStatusPoller(transport, settings, self._observer)

    def validate_policy(self, items: Sequence[ManifestItem]) -> None:
        """Ask the policy service whether the manifest would be accepted.

        Only the first file entry is sent.

        Raises:
            PolicyValidationError: If the policy service rejects the manifest.
            PolicyServiceError: If the policy service cannot be consulted.
        """
        payload = manifest_to_json(items, file_limit=1)
        url = f"{self._settings.policy_base_url}/ingest"
        logger.debug("Policy check payload: %s", payload[:_POLICY_LOG_CHARS])

        try:
            response = self._transport.post_json(url, payload)
        except PreconditionFailedError as exc:
            raise PolicyValidationError(
                "Policy validation error, e.g. invalid EUS Project ID or EUS Instrument ID "
                f"({describe_manifest(items)}): {exc.message}"
            ) from exc
        except TransportError as exc:
            raise PolicyServiceError(f"Policy validation request failed: {exc.message}") from exc

        if response.status_code != HTTPStatus.OK or "success" not in response.text.lower():
            raise PolicyServiceError(
                f"Policy validation returned {response.status_code}: {response.text[:200]}"
            )
        logger.debug("Policy validation passed for %s", describe_manifest(items))

    def upload(
        self,
        items: Sequence[ManifestItem],
        *,
        cancel: threading.Event | None = None,
    ) -> UploadResult:
        """Stream the manifest and its files to the ingest service.

        A manifest without files is a no-op and counts as success.
        """
        items = deduplicate_files(items)
        files = file_entries(items)
        if not files:
            self._observer.on_status("No files to upload; nothing to do")
            return UploadResult(success=True, message="No files to upload")

        producer = TarStreamProducer(
            manifest_to_json(items).encode("utf-8"), files, progress=self._observer.on_progress
        )
        url = f"{self._settings.ingest_base_url}/upload"
        self._observer.on_status(
            f"Uploading {len(files)} files ({producer.content_length} bytes): "
            f"{describe_manifest(items)}"
        )

        try:
            response = self._transport.post_stream(
                url, producer.write, producer.content_length, cancel=cancel
            )
        except TransportError as exc:
            self._observer.on_error(f"Upload failed: {exc.message}")
            return UploadResult(success=False, file_count=len(files), message=exc.message)

        try:
            status = IngestJobStatus.model_validate_json(response.text)
        except ValidationError as exc:
            raise UploadError(f"Unparseable ingest response: {response.text[:500]}") from exc
        if status.job_id <= 0:
            raise UploadError(f"Ingest response has no job id: {response.text[:500]}")

        status_url = self._status.status_url(status.job_id)
        if status.is_valid:
            report = interpret_status(status)
        else:
            report = self._status.check(status.job_id)

        result = UploadResult(
            success=report.status.ingest_state == IngestState.OK,
            file_count=len(files),
            bytes_sent=producer.content_length,
            job_id=status.job_id,
            status_url=status_url,
            report=report,
            message=report.message,
        )
        if result.success:
            self._observer.on_status(f"Upload accepted as ingest job {status.job_id}")
        elif report.status.ingest_state == IngestState.FAILED:
            self._observer.on_error(f"Upload failed during ingest process: {report.message}")
        else:
            self._observer.on_error(f"Upload failed: {report.message}")
        return result

    def write_local_tar(self, items: Sequence[ManifestItem], path: Path) -> int:
        """Write the tar stream for ``items`` to ``path`` instead of uploading it."""
        items = deduplicate_files(items)
        producer = TarStreamProducer(
            manifest_to_json(items).encode("utf-8"),
            file_entries(items),
            progress=self._observer.on_progress,
        )
        return producer.write_to_file(path)
