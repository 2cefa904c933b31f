"""Local and remote file records."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from archiver.services.datetime_service import parse_optional_datetime


def join_relative_path(relative_dir: str, name: str) -> str:
    """Join an archive-relative directory and a file name with a forward slash."""
    relative_dir = relative_dir.strip("/")
    if not relative_dir:
        return name
    return f"{relative_dir}/{name}"


@dataclass(frozen=True)
class FileRecord:
    """A local file staged for upload.

    ``relative_dir`` is the destination directory inside the dataset, using
    forward slashes and never rooted; it is empty for files at the dataset root.
    ``name`` is the destination file name, which may differ from the name of
    ``source_path``.
    """

    source_path: Path
    relative_dir: str
    name: str
    sha1: str
    size: int
    ctime: datetime
    mtime: datetime

    def __post_init__(self) -> None:
        if self.relative_dir.startswith("/") or "\\" in self.relative_dir:
            raise ValueError(f"Relative directory must not be rooted: {self.relative_dir!r}")
        if len(self.sha1) != 40:
            raise ValueError(f"SHA-1 hash must be 40 hex characters: {self.sha1!r}")

    @property
    def relative_path(self) -> str:
        return join_relative_path(self.relative_dir, self.name)


class RemoteFileVersion(BaseModel):
    """One archived version of a file, as listed by the metadata service."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    file_id: int = Field(default=0, alias="_id")
    name: str
    subdir: str = ""
    hashsum: str = ""
    hashtype: str = "sha1"
    size: int = 0
    transaction_id: int | None = None
    created: datetime | None = None
    updated: datetime | None = None
    deleted: datetime | None = None
    ctime: datetime | None = None
    mtime: datetime | None = None

    @field_validator("created", "updated", "deleted", "ctime", "mtime", mode="before")
    @classmethod
    def _parse_timestamp(cls, value: object) -> object:
        if value is None or isinstance(value, (str, datetime)):
            return parse_optional_datetime(value)
        return value

    @field_validator("subdir", "hashsum", "hashtype", mode="before")
    @classmethod
    def _normalize_text(cls, value: object) -> object:
        if value is None:
            return ""
        if isinstance(value, str):
            return value.replace("\\", "/")
        return value

    @property
    def relative_path(self) -> str:
        return join_relative_path(self.subdir, self.name)
