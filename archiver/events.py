"""Observer protocol for archive task notifications."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass
class ProgressUpdate:
    """Progress of a long-running step (hashing, uploading, downloading)."""

    message: str
    percent: float
    bytes_done: int = 0
    bytes_total: int = 0


@runtime_checkable
class ArchiveObserver(Protocol):
    """Receives status, warning, error and progress notifications."""

    def on_status(self, message: str) -> None: ...

    def on_debug(self, message: str) -> None: ...

    def on_warning(self, message: str) -> None: ...

    def on_error(self, message: str, exc: BaseException | None = None) -> None: ...

    def on_progress(self, update: ProgressUpdate) -> None: ...


class LoggingObserver:
    """Observer that forwards every notification to the module logger."""

    def on_status(self, message: str) -> None:
        logger.info(message)

    def on_debug(self, message: str) -> None:
        logger.debug(message)

    def on_warning(self, message: str) -> None:
        logger.warning(message)

    def on_error(self, message: str, exc: BaseException | None = None) -> None:
        if exc is not None:
            logger.error("%s: %s", message, exc)
        else:
            logger.error(message)

    def on_progress(self, update: ProgressUpdate) -> None:
        logger.debug("%s: %.1f%%", update.message, update.percent)


@dataclass
class RecordingObserver:
    """Observer that keeps every notification, used by the CLI summary and tests."""

    statuses: list[str] = field(default_factory=list)
    debug: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    progress: list[ProgressUpdate] = field(default_factory=list)

    def on_status(self, message: str) -> None:
        self.statuses.append(message)

    def on_debug(self, message: str) -> None:
        self.debug.append(message)

    def on_warning(self, message: str) -> None:
        self.warnings.append(message)

    def on_error(self, message: str, exc: BaseException | None = None) -> None:
        self.errors.append(message if exc is None else f"{message}: {exc}")

    def on_progress(self, update: ProgressUpdate) -> None:
        self.progress.append(update)
