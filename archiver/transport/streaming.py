"""Bridge a push-style writer (``tarfile``) to a pull-style request body."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable, Iterator
from typing import Any

from archiver.exceptions import UploadCancelledError

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.5
_END = object()


class BodyPipe:
    """Bounded hand-off between a writer thread and the HTTP request body.

    ``write`` blocks while the reader has not consumed the previous chunk, so
    at most ``max_chunks`` chunks are held in memory.  Setting ``cancel``
    unblocks both sides with ``UploadCancelledError``.
    """

    def __init__(self, cancel: threading.Event, max_chunks: int = 1) -> None:
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=max_chunks)
        self._cancel = cancel
        self._error: BaseException | None = None
        self.bytes_written = 0

    def _put(self, item: Any) -> None:
        while True:
            if self._cancel.is_set():
                raise UploadCancelledError("Upload cancelled while writing the request body")
            try:
                self._queue.put(item, timeout=_POLL_SECONDS)
                return
            except queue.Full:
                continue

    def write(self, data: bytes) -> int:
        if not data:
            return 0
        self._put(bytes(data))
        self.bytes_written += len(data)
        return len(data)

    def flush(self) -> None:
        pass

    def close(self, error: BaseException | None = None) -> None:
        """Signal end of body; ``error`` is re-raised on the reading side."""
        self._error = error
        self._put(_END)

    def __iter__(self) -> Iterator[bytes]:
        while True:
            try:
                item = self._queue.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                if self._cancel.is_set():
                    raise UploadCancelledError("Upload cancelled while sending the request body")
                continue
            if item is _END:
                if self._error is not None:
                    raise self._error
                return
            yield item


def start_writer(
    write_body: Callable[[BodyPipe], None], cancel: threading.Event
) -> tuple[BodyPipe, threading.Thread]:
    """Run ``write_body`` on a daemon thread feeding a new pipe."""
    pipe = BodyPipe(cancel)

    def _produce() -> None:
        try:
            write_body(pipe)
            pipe.close()
        except UploadCancelledError:
            logger.info("Request body writer stopped after cancellation")
        except Exception as exc:
            logger.error("Request body writer failed: %s", exc)
            try:
                pipe.close(exc)
            except UploadCancelledError:
                logger.info("Request body reader already cancelled")

    thread = threading.Thread(target=_produce, name="archive-body-writer", daemon=True)
    thread.start()
    return pipe, thread
