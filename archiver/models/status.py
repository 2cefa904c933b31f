"""Ingest job status as reported by the ingest service."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from archiver.services.datetime_service import parse_optional_datetime


class IngestState(StrEnum):
    OK = "ok"
    FAILED = "failed"
    ERROR = "error"
    UNKNOWN = "unknown"


class IngestJobStatus(BaseModel):
    """Task status returned by ``/upload`` and ``/get_state``.

    ``state`` keeps the raw text from the service; ``ingest_state`` classifies it.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    job_id: int = -1
    state: str = ""
    task: str = ""
    task_percent: float = 0.0
    complete: bool = False
    exception: str = ""
    created: datetime | None = None
    updated: datetime | None = None
    lookup_error: bool = Field(default=False, exclude=True)

    @field_validator("job_id", mode="before")
    @classmethod
    def _lax_int(cls, value: Any) -> Any:
        if value is None or value == "":
            return -1
        return value

    @field_validator("task_percent", mode="before")
    @classmethod
    def _lax_percent(cls, value: Any) -> float:
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0.0

    @field_validator("state", "task", "exception", mode="before")
    @classmethod
    def _lax_text(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("created", "updated", mode="before")
    @classmethod
    def _lax_timestamp(cls, value: Any) -> Any:
        if value is None or isinstance(value, (str, datetime)):
            return parse_optional_datetime(value)
        return value

    @property
    def is_valid(self) -> bool:
        return self.job_id > 0 and bool(self.state.strip())

    @property
    def ingest_state(self) -> IngestState:
        state = self.state.strip().lower()
        if state == IngestState.OK:
            return IngestState.OK
        if state == IngestState.FAILED:
            return IngestState.FAILED
        if "error" in state:
            return IngestState.ERROR
        return IngestState.UNKNOWN

    @property
    def is_terminal(self) -> bool:
        """True once the job will not change state again."""
        state = self.ingest_state
        if state in (IngestState.FAILED, IngestState.ERROR):
            return True
        if state == IngestState.OK:
            return self.complete or self.task_percent >= 100
        return False

    @classmethod
    def lookup_failed(cls, job_id: int, message: str) -> IngestJobStatus:
        """Placeholder status for a status request that could not be completed."""
        return cls(job_id=job_id, exception=message, lookup_error=True)
