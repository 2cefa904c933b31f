"""Remote inventory: what the archive already holds for a dataset."""

from __future__ import annotations

import logging
from urllib.parse import quote

from pydantic import TypeAdapter, ValidationError

from archiver.config import Settings
from archiver.exceptions import RemoteInventoryError, TransportError
from archiver.models.files import RemoteFileVersion
from archiver.services.datetime_service import within_window
from archiver.transport.http_client import ArchiveTransport

logger = logging.getLogger(__name__)

DATASET_ID_KEY = "omics.dms.dataset_id"
DATA_PACKAGE_ID_KEY = "omics.dms.datapackage_id"
_MAX_DUPLICATE_MESSAGES = 5

RemoteInventory = dict[str, list[RemoteFileVersion]]

_VERSION_LIST = TypeAdapter(list[RemoteFileVersion])


class RemoteInventoryClient:
    """Looks up archived files through the metadata service."""

    def __init__(self, transport: ArchiveTransport, settings: Settings) -> None:
        self._transport = transport
        self._settings = settings

    def files_for_keyvalue(self, key: str, value: str | int) -> list[RemoteFileVersion]:
        """Return every archived file version tagged with ``key`` = ``value``.

        Raises:
            RemoteInventoryError: If the listing is empty, fails, or cannot be parsed.
        """
        url = (
            f"{self._settings.metadata_base_url}/fileinfo/files_for_keyvalue/"
            f"{quote(key)}/{quote(str(value))}"
        )
        try:
            response = self._transport.get(url)
        except TransportError as exc:
            raise RemoteInventoryError(
                f"Error retrieving files for {key}={value}: {exc.message}"
            ) from exc

        body = response.text.strip()
        if not body:
            raise RemoteInventoryError(f"No results returned from {url}")
        try:
            return _VERSION_LIST.validate_json(body)
        except ValidationError as exc:
            logger.debug("Unparseable file listing from %s: %s", url, body[:1250])
            raise RemoteInventoryError(f"Unable to parse file listing from {url}") from exc

    def dataset_files(self, dataset_id: int, subdir_filter: str = "") -> RemoteInventory:
        """Archived files for a dataset, grouped by relative path."""
        return self.group_versions(
            self.files_for_keyvalue(DATASET_ID_KEY, dataset_id), subdir_filter
        )

    def data_package_files(self, data_package_id: int, subdir_filter: str = "") -> RemoteInventory:
        """Archived files for a data package, grouped by relative path."""
        return self.group_versions(
            self.files_for_keyvalue(DATA_PACKAGE_ID_KEY, data_package_id), subdir_filter
        )

    def group_versions(
        self, versions: list[RemoteFileVersion], subdir_filter: str = ""
    ) -> RemoteInventory:
        """Group file versions by relative path.

        A version repeating a hash already seen for the same path is dropped.
        Versions created inside the corrupt ingestion window are dropped too,
        but their path is still recorded so the local copy is re-uploaded.
        """
        inventory: RemoteInventory = {}
        duplicates = 0
        wanted_subdir = subdir_filter.strip("/").lower()

        for version in versions:
            if wanted_subdir and version.subdir.strip("/").lower() != wanted_subdir:
                continue

            path = version.relative_path
            known = inventory.setdefault(path, [])

            if version.created is not None and within_window(
                version.created,
                self._settings.corrupt_window_start,
                self._settings.corrupt_window_end,
            ):
                logger.debug("Ignoring %s ingested during the corrupt window", path)
                continue

            if any(v.hashsum == version.hashsum for v in known):
                if version.hashsum.lower() != "none":
                    duplicates += 1
                    if duplicates <= _MAX_DUPLICATE_MESSAGES:
                        logger.debug(
                            "Skipping duplicate file version %s (%s)", path, version.hashsum
                        )
                continue
            known.append(version)

        if duplicates > _MAX_DUPLICATE_MESSAGES:
            logger.debug("Skipped %d duplicate file versions", duplicates)
        return inventory

    def file_exists(self, sha1: str) -> bool:
        """True when the archive holds any file with this SHA-1 hash."""
        url = f"{self._settings.metadata_base_url}/files"
        try:
            response = self._transport.get(url, params={"hashsum": sha1})
        except TransportError as exc:
            logger.warning("Hash lookup for %s failed: %s", sha1, exc.message)
            return False
        try:
            versions = _VERSION_LIST.validate_json(response.text or "[]")
        except ValidationError:
            logger.warning("Unparseable hash lookup response for %s", sha1)
            return False
        return any(v.hashsum == sha1 for v in versions)
