"""Archive client exception types.

Convention:
- ``ArchiveError``: base for every error raised by this package.
- ``CriticalArchiveError``: the operation must stop and the task should be
  reported as failed (missing source directory, missing dataset id, tracking
  mismatch, policy rejection, unreadable remote inventory).  Callers should
  not retry.
- ``TransportError``: a normalized HTTP failure.  Every subclass exposes
  ``outcome``, ``status_code`` and ``message`` so callers can branch on the
  kind of failure without inspecting the underlying ``httpx`` exception.
"""

from __future__ import annotations

from enum import StrEnum
from http import HTTPStatus


class ArchiveError(Exception):
    """Base class for archive client errors."""


class CriticalArchiveError(ArchiveError):
    """Raised for failures that abort the current archive task."""


class TransportOutcome(StrEnum):
    SUCCESS = "success"
    OFFLINE = "offline"
    TIMEOUT = "timeout"
    PRECONDITION_FAILED = "precondition_failed"
    FAILED = "failed"


class TransportError(ArchiveError):
    """A request that did not produce a successful response."""

    outcome = TransportOutcome.FAILED

    def __init__(self, message: str, status_code: int = HTTPStatus.BAD_REQUEST) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = int(status_code)


class TransportOfflineError(TransportError):
    """The remote host could not be reached (DNS failure, refused connection)."""

    outcome = TransportOutcome.OFFLINE

    def __init__(self, message: str) -> None:
        super().__init__(message, HTTPStatus.SERVICE_UNAVAILABLE)


class TransportTimeoutError(TransportError):
    """The request did not finish within its deadline."""

    outcome = TransportOutcome.TIMEOUT

    def __init__(self, message: str) -> None:
        super().__init__(message, HTTPStatus.REQUEST_TIMEOUT)


class PreconditionFailedError(TransportError):
    """The server answered 412 Precondition Failed."""

    outcome = TransportOutcome.PRECONDITION_FAILED

    def __init__(self, message: str) -> None:
        super().__init__(message, HTTPStatus.PRECONDITION_FAILED)


class CredentialError(CriticalArchiveError):
    """No usable client certificate or credentials."""


class SourceDirectoryNotFoundError(CriticalArchiveError):
    """The dataset directory to archive does not exist."""


class TooManyFilesError(CriticalArchiveError):
    """The dataset holds more files than may be archived in one upload."""


class TrackingMismatchError(CriticalArchiveError):
    """The archive holds far fewer files than the tracking database expects."""


class RemoteInventoryError(CriticalArchiveError):
    """The remote file listing was empty or could not be parsed."""


class PolicyValidationError(CriticalArchiveError):
    """The policy service rejected the manifest (e.g. invalid project id)."""


class PolicyServiceError(ArchiveError):
    """The policy service could not be consulted."""


class ManifestError(ArchiveError):
    """The upload manifest could not be built or parsed."""


class MissingIdentificationError(CriticalArchiveError, ManifestError):
    """Neither a dataset id nor a data package id was given."""


class TarStreamError(ArchiveError):
    """The tar stream could not be planned or written."""


class UploadError(ArchiveError):
    """The ingest service did not accept the upload."""


class UploadCancelledError(ArchiveError):
    """The upload was cancelled before the body was fully written."""
