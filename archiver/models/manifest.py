"""Upload manifest items: the ordered metadata list sent with every upload."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    field_serializer,
    field_validator,
)

from archiver.services.datetime_service import format_archive_timestamp, parse_datetime, to_utc

KEY_VALUE_TABLE = "TransactionKeyValue"
FILES_TABLE = "Files"
TRANSACTIONS_PREFIX = "Transactions."

ScalarValue = Union[int, float, str]


class KeyValueItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    destination_table: Literal["TransactionKeyValue"] = Field(
        default=KEY_VALUE_TABLE, alias="destinationTable"
    )
    key: str
    value: ScalarValue


class TransactionValueItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    destination_table: str = Field(alias="destinationTable")
    value: ScalarValue

    @classmethod
    def for_column(cls, column: str, value: ScalarValue) -> TransactionValueItem:
        return cls(destination_table=f"{TRANSACTIONS_PREFIX}{column}", value=value)

    @property
    def column(self) -> str:
        return self.destination_table.removeprefix(TRANSACTIONS_PREFIX)


class FileEntryItem(BaseModel):
    """A file to upload; ``subdir`` is ``data/`` or ``data/<relative dir>``."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    destination_table: Literal["Files"] = Field(default=FILES_TABLE, alias="destinationTable")
    name: str
    absolutelocalpath: str
    subdir: str
    size: int = Field(ge=0)
    hashsum: str
    mimetype: str = "application/octet-stream"
    hashtype: str = "sha1"
    ctime: datetime
    mtime: datetime

    @field_validator("ctime", "mtime", mode="before")
    @classmethod
    def _whole_utc_seconds(cls, value: Any) -> Any:
        if isinstance(value, (str, datetime)):
            return to_utc(parse_datetime(value)).replace(microsecond=0)
        return value

    @field_serializer("size")
    def _serialize_size(self, size: int) -> str:
        return str(size)

    @field_serializer("ctime", "mtime")
    def _serialize_timestamp(self, dt: datetime) -> str:
        return format_archive_timestamp(dt)

    @property
    def archive_path(self) -> str:
        """Path of this file inside the tar stream."""
        return f"{self.subdir.rstrip('/')}/{self.name}"


def _item_kind(value: Any) -> str:
    if isinstance(value, dict):
        table = value.get("destinationTable", value.get("destination_table"))
    else:
        table = getattr(value, "destination_table", None)
    if table == FILES_TABLE:
        return "file"
    if table == KEY_VALUE_TABLE:
        return "key_value"
    return "value"


ManifestItem = Annotated[
    Union[
        Annotated[FileEntryItem, Tag("file")],
        Annotated[KeyValueItem, Tag("key_value")],
        Annotated[TransactionValueItem, Tag("value")],
    ],
    Discriminator(_item_kind),
]

MANIFEST_ADAPTER: TypeAdapter[list[ManifestItem]] = TypeAdapter(list[ManifestItem])
