"""Ingest status: query and interpret the state of an ingest job."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass

from pydantic import ValidationError

from archiver.config import Settings
from archiver.events import ArchiveObserver, LoggingObserver
from archiver.exceptions import ArchiveError, TransportError, TransportTimeoutError
from archiver.models.status import IngestJobStatus, IngestState
from archiver.transport.http_client import ArchiveTransport

logger = logging.getLogger(__name__)

TOTAL_STEPS = 7
_TASK_STEPS = {
    "open tar": 2,
    "policy validation": 3,
    "uploading": 4,
    "ingest files": 5,
    "ingest metadata": 6,
}

_JOB_ID_PATTERN = re.compile(r"job_id=(\d+)")
_LEGACY_JOB_ID_PATTERN = re.compile(r"(\d+)/xml")
_TRACEBACK_PATTERN = re.compile(r"Traceback \(most recent call last\):\s+File")
_KEY_ERROR_PATTERN = re.compile(r"(KeyError:\s.+[^\n])")
_TRUNCATE_PATTERN = re.compile(r"((?:.|[\r\n]){50,}?)(?=(?:  )|[\r\n\t])")

_SUMMARY_MAX_CHARS = 150
_SHORT_EXCEPTION_CHARS = 80
_EXCEPTION_PREFIX_CHARS = 75


def steps_completed(status: IngestJobStatus, previous: int = 0) -> int:
    """Number of the seven ingest steps finished, from percent or task name."""
    if status.task_percent > 0:
        return round(TOTAL_STEPS * status.task_percent / 100)
    return _TASK_STEPS.get(status.task.strip().lower(), previous)


def summarize_exception(exception: str) -> str:
    """Compact, single-line-friendly form of an ingest exception report."""
    if "Traceback" in exception:
        cleaned = _TRACEBACK_PATTERN.sub("in", exception)
        key_error = _KEY_ERROR_PATTERN.search(cleaned)
        truncated = _TRUNCATE_PATTERN.search(cleaned)
        head = truncated.group(1) if truncated else cleaned
        tail = f" ... {key_error.group(1)}" if key_error else ""
        return (head + tail).rstrip()[:_SUMMARY_MAX_CHARS]
    if len(exception) < _SHORT_EXCEPTION_CHARS:
        return exception
    return exception[:_EXCEPTION_PREFIX_CHARS] + " ..."


def job_id_from_url(status_url: str) -> int:
    """Extract the job id from a status URL (``...?job_id=N`` or legacy ``.../N/xml``).

    Raises:
        ValueError: If no positive job id is present.
    """
    match = _JOB_ID_PATTERN.search(status_url) or _LEGACY_JOB_ID_PATTERN.search(status_url)
    if match is None:
        raise ValueError(f"Could not find a job id in status URL: {status_url}")
    job_id = int(match.group(1))
    if job_id == 0:
        raise ValueError(f"Status URL has job id 0: {status_url}")
    return job_id


@dataclass
class StatusReport:
    """Interpretation of one status check."""

    status: IngestJobStatus
    message: str = ""
    steps: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status.ingest_state == IngestState.OK and not self.status.exception

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal and not self.status.lookup_error


def interpret_status(status: IngestJobStatus, previous_steps: int = 0) -> StatusReport:
    """Build the user-facing message for a job status."""
    steps = steps_completed(status, previous_steps)
    state = status.ingest_state
    task = status.task

    if status.lookup_error:
        message = f"Status lookup failed: {status.exception}"
    elif state == IngestState.OK:
        if status.exception:
            message = (
                f'Upload state is OK, but an exception was reported for task "{task}"; '
                f'exception "{summarize_exception(status.exception)}"'
            )
        else:
            message = f'Upload state is OK, task "{task}" at {status.task_percent:.0f}%'
    elif state == IngestState.FAILED:
        message = f'Upload failed, task "{task}"'
        if "connectiontimeout" in status.exception.lower():
            message += "; ConnectionTimeout exception"
        elif status.exception:
            message += f"; exception {summarize_exception(status.exception)}"
    elif state == IngestState.ERROR:
        message = f"Status server is offline or having issues; state is {status.state}"
    else:
        message = f"Unrecognized ingest state: {status.state!r}"
    return StatusReport(status, message, steps)


class IngestStatusPoller:
    """Queries ``get_state`` for an ingest job.

    Polling cadence belongs to the caller; each ``check`` makes one request.
    """

    def __init__(
        self,
        transport: ArchiveTransport,
        settings: Settings,
        observer: ArchiveObserver | None = None,
    ) -> None:
        self._transport = transport
        self._settings = settings
        self._observer = observer or LoggingObserver()

    def status_url(self, job_id: int) -> str:
        return f"{self._settings.ingest_base_url}/get_state?job_id={job_id}"

    def fetch(self, job: int | str) -> IngestJobStatus:
        """Fetch the status of ``job`` (a job id or a status URL).

        Transport and parse failures are reported as a warning and returned
        as a status with ``lookup_error`` set.
        """
        job_id = job if isinstance(job, int) else job_id_from_url(job)
        try:
            response = self._transport.get(self.status_url(job_id))
        except TransportTimeoutError as exc:
            self._observer.on_warning(f"Timeout checking status of ingest job {job_id}")
            return IngestJobStatus.lookup_failed(job_id, exc.message)
        except TransportError as exc:
            self._observer.on_warning(
                f"Error checking status of ingest job {job_id}: {exc.message}"
            )
            return IngestJobStatus.lookup_failed(job_id, exc.message)

        try:
            status = IngestJobStatus.model_validate_json(response.text)
        except ValidationError:
            logger.debug("Unparseable status for job %d: %s", job_id, response.text[:500])
            self._observer.on_warning(f"Unparseable status response for ingest job {job_id}")
            return IngestJobStatus.lookup_failed(job_id, "Unparseable status response")
        if status.job_id <= 0:
            status = status.model_copy(update={"job_id": job_id})
        return status

    def check(self, job: int | str, previous_steps: int = 0) -> StatusReport:
        """Fetch and interpret the current status of ``job``."""
        report = interpret_status(self.fetch(job), previous_steps)
        if report.status.lookup_error:
            return report
        if report.status.ingest_state == IngestState.OK and not report.status.exception:
            self._observer.on_debug(report.message)
        else:
            self._observer.on_error(report.message)
        return report

    def wait(
        self,
        job: int | str,
        *,
        poll_seconds: float = 30.0,
        max_checks: int = 120,
        sleep: Callable[[float], None] = time.sleep,
    ) -> StatusReport:
        """Check ``job`` until it reaches a terminal state or ``max_checks`` runs out.

        Raises:
            ArchiveError: If the job is still running after ``max_checks`` checks.
        """
        steps = 0
        for attempt in range(max_checks):
            report = self.check(job, steps)
            steps = report.steps
            if report.is_terminal:
                return report
            if attempt + 1 < max_checks:
                sleep(poll_seconds)
        raise ArchiveError(f"Ingest job {job} did not finish after {max_checks} status checks")
