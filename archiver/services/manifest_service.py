"""Manifest builder: the ordered metadata document sent with each upload."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from pydantic import ValidationError

from archiver.events import ArchiveObserver, LoggingObserver
from archiver.exceptions import ManifestError, MissingIdentificationError
from archiver.models.files import FileRecord
from archiver.models.manifest import (
    MANIFEST_ADAPTER,
    FileEntryItem,
    KeyValueItem,
    ManifestItem,
    ScalarValue,
    TransactionValueItem,
)

logger = logging.getLogger(__name__)

DEFAULT_OPERATOR_ID = 43428
DEFAULT_PROJECT_ID = "51287"
UNKNOWN_INSTRUMENT_ID = 34127
DATA_SUBDIR = "data/"

# Instruments without an archive instrument id of their own
_INSTRUMENT_ID_OVERRIDES = (
    ("LCQ", 1163),
    ("Exact02", 34111),
    ("IMS07_AgTOF04", 34155),
)


@dataclass
class UploadMetadata:
    """Descriptive metadata for one dataset or data package upload.

    Exactly one of ``dataset_id`` and ``data_package_id`` should be positive.
    """

    dataset_id: int = 0
    data_package_id: int = 0
    dataset_name: str = ""
    date_code: str = ""
    instrument_name: str = ""
    campaign_name: str = ""
    campaign_id: int = 0
    experiment_name: str = ""
    experiment_id: int = 0
    organism_name: str = ""
    organism_id: int = 0
    ncbi_taxonomy_id: int = 0
    separation_type: str = ""
    dataset_type: str = ""
    acquisition_length_min: float = 0.0
    instrument_id: int = 0
    project_id: str = ""
    operator_id: int = 0
    users_of_record: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class ArchiveIdentity:
    """Instrument, project and submitter ids actually sent to the archive."""

    instrument_id: int
    project_id: str
    operator_id: int


def resolve_identity(
    metadata: UploadMetadata, observer: ArchiveObserver | None = None
) -> ArchiveIdentity:
    """Fill in fallback instrument, project and operator ids."""
    observer = observer or LoggingObserver()

    instrument_id = metadata.instrument_id
    if instrument_id <= 0:
        for marker, override in _INSTRUMENT_ID_OVERRIDES:
            if marker.lower() in metadata.instrument_name.lower():
                instrument_id = override
                break
        else:
            instrument_id = UNKNOWN_INSTRUMENT_ID

    project_id = metadata.project_id.strip()
    if not project_id:
        project_id = DEFAULT_PROJECT_ID
    elif project_id.upper().startswith("EPR"):
        observer.on_warning(
            f"Project {project_id} is not a valid archive project; using {DEFAULT_PROJECT_ID}"
        )
        project_id = DEFAULT_PROJECT_ID

    operator_id = metadata.operator_id if metadata.operator_id > 0 else DEFAULT_OPERATOR_ID
    return ArchiveIdentity(instrument_id, project_id, operator_id)


def _add_key_value(items: list[ManifestItem], key: str, value: ScalarValue | None) -> None:
    if not key.strip() or value is None or (isinstance(value, str) and not value.strip()):
        return
    items.append(KeyValueItem(key=key, value=value))


def _add_value(items: list[ManifestItem], column: str, value: ScalarValue | None) -> None:
    if not column.strip() or value is None or (isinstance(value, str) and not value.strip()):
        return
    items.append(TransactionValueItem.for_column(column, value))


def archive_subdir(relative_dir: str) -> str:
    """Manifest ``subdir`` for a file's relative directory.

    Root files get ``data/``; others ``data/<dir>`` without a trailing slash.
    """
    relative_dir = relative_dir.strip("/")
    if not relative_dir:
        return DATA_SUBDIR
    subdir = DATA_SUBDIR + relative_dir
    if "//" in subdir:
        raise ManifestError(f"Subdirectory path has an empty component: {subdir}")
    return subdir


def file_entry(record: FileRecord) -> FileEntryItem:
    return FileEntryItem(
        name=record.name,
        absolutelocalpath=str(record.source_path),
        subdir=archive_subdir(record.relative_dir),
        size=record.size,
        hashsum=record.sha1,
        ctime=record.ctime,
        mtime=record.mtime,
    )


def check_identification(metadata: UploadMetadata) -> None:
    if metadata.dataset_id <= 0 and metadata.data_package_id <= 0:
        raise MissingIdentificationError(
            "Dataset ID and Data Package ID are both 0; cannot build manifest"
        )


def build_manifest(
    metadata: UploadMetadata,
    files: Sequence[FileRecord],
    observer: ArchiveObserver | None = None,
) -> list[ManifestItem]:
    """Assemble the manifest: key/values, transaction values, then files.

    Raises:
        MissingIdentificationError: If neither a dataset id nor a data package
            id is set.
    """
    check_identification(metadata)
    identity = resolve_identity(metadata, observer)
    items: list[ManifestItem] = []

    if metadata.dataset_id > 0:
        _add_key_value(items, "omics.dms.instrument", metadata.instrument_name)
        _add_key_value(items, "omics.dms.instrument_id", identity.instrument_id)
        _add_key_value(items, "omics.dms.date_code", metadata.date_code)
        _add_key_value(items, "omics.dms.dataset", metadata.dataset_name)
        _add_key_value(items, "omics.dms.campaign_name", metadata.campaign_name)
        _add_key_value(items, "omics.dms.experiment_name", metadata.experiment_name)
        _add_key_value(items, "omics.dms.dataset_name", metadata.dataset_name)
        _add_key_value(items, "omics.dms.campaign_id", metadata.campaign_id)
        _add_key_value(items, "omics.dms.experiment_id", metadata.experiment_id)
        _add_key_value(items, "omics.dms.dataset_id", metadata.dataset_id)

        if metadata.organism_name:
            _add_key_value(items, "organism_name", metadata.organism_name)
        if metadata.organism_id != 0:
            _add_key_value(items, "omics.dms.organism_id", metadata.organism_id)
        if metadata.ncbi_taxonomy_id != 0:
            _add_key_value(items, "ncbi_taxonomy_id", metadata.ncbi_taxonomy_id)
        if metadata.separation_type:
            _add_key_value(items, "omics.dms.separation_type", metadata.separation_type)
        if metadata.dataset_type:
            _add_key_value(items, "omics.dms.dataset_type", metadata.dataset_type)

        _add_key_value(
            items, "omics.dms.run_acquisition_length_min", metadata.acquisition_length_min
        )
        for user_id in metadata.users_of_record:
            _add_key_value(items, "User of Record", str(user_id))
            _add_key_value(items, "user_of_record", str(user_id))

    else:
        _add_key_value(items, "omics.dms.instrument", metadata.instrument_name)
        _add_key_value(items, "omics.dms.instrument_id", identity.instrument_id)
        _add_key_value(items, "omics.dms.datapackage_id", metadata.data_package_id)

    _add_value(items, "instrument", identity.instrument_id)
    _add_value(items, "project", identity.project_id)
    _add_value(items, "submitter", identity.operator_id)

    items.extend(file_entry(record) for record in files)
    return items


def file_entries(items: Sequence[ManifestItem]) -> list[FileEntryItem]:
    return [item for item in items if isinstance(item, FileEntryItem)]


def _lookup(items: Sequence[ManifestItem], key: str) -> str:
    for item in items:
        if isinstance(item, KeyValueItem) and item.key == key:
            return str(item.value)
        if isinstance(item, TransactionValueItem) and item.column == key:
            return str(item.value)
    return ""


def describe_manifest(items: Sequence[ManifestItem]) -> str:
    """One-line summary of a manifest for logs and status messages."""
    parts: list[str] = []
    dataset_id = _lookup(items, "omics.dms.dataset_id")
    if dataset_id:
        parts.append(f"Dataset_ID={dataset_id}")
    data_package_id = _lookup(items, "omics.dms.datapackage_id")
    if data_package_id:
        parts.append(f"DataPackage_ID={data_package_id}")
    instrument = _lookup(items, "omics.dms.instrument")
    if instrument:
        parts.append(f"DMS_Instrument={instrument}")
    parts.append(f"EUS_Instrument_ID={_lookup(items, 'instrument')}")
    parts.append(f"EUS_Project_ID={_lookup(items, 'project')}")
    parts.append(f"EUS_User_ID={_lookup(items, 'submitter')}")
    parts.append(f"FileCount={len(file_entries(items))}")
    return "; ".join(parts)


def manifest_to_json(items: Sequence[ManifestItem], file_limit: int = 0) -> str:
    """Serialize a manifest, optionally keeping only the first ``file_limit`` files."""
    kept: list[ManifestItem] = []
    file_count = 0
    for item in items:
        if isinstance(item, FileEntryItem):
            file_count += 1
            if 0 < file_limit < file_count:
                continue
        kept.append(item)
    data = MANIFEST_ADAPTER.dump_python(kept, mode="json", by_alias=True)
    return json.dumps(data)


def parse_manifest(text: str) -> list[ManifestItem]:
    """Parse a serialized manifest back into typed items.

    Raises:
        ManifestError: If the document is not a valid manifest.
    """
    try:
        return MANIFEST_ADAPTER.validate_json(text)
    except ValidationError as exc:
        raise ManifestError(f"Invalid manifest: {exc.error_count()} error(s)") from exc


def deduplicate_files(items: Sequence[ManifestItem]) -> list[ManifestItem]:
    """Drop file entries whose absolute source path was already listed."""
    seen: set[str] = set()
    result: list[ManifestItem] = []
    for item in items:
        if isinstance(item, FileEntryItem):
            if item.absolutelocalpath in seen:
                logger.debug("Skipping duplicate file %s", item.absolutelocalpath)
                continue
            seen.add(item.absolutelocalpath)
        result.append(item)
    return result
