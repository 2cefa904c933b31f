"""HTTP transport for the archive services.

Every call runs on a worker thread and the caller waits at most the request
timeout plus a grace period.  When the deadline passes, the cancel event is
set and the caller gets ``TransportTimeoutError`` right away; a worker stuck
in a blocking socket call is left running detached until it notices the
cancellation or the socket times out.
"""

from __future__ import annotations

import getpass
import logging
import os
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from http import HTTPStatus
from pathlib import Path
from typing import Any, TypeVar

import httpx

from archiver.config import Settings
from archiver.exceptions import (
    ArchiveError,
    PreconditionFailedError,
    TransportError,
    TransportOfflineError,
    TransportTimeoutError,
)
from archiver.transport.credentials import CredentialProvider
from archiver.transport.streaming import BodyPipe, start_writer

logger = logging.getLogger(__name__)

T = TypeVar("T")

MIN_TIMEOUT_SECONDS = 3.0
MAX_TIMEOUT_HOURS = 24.0
MAX_HEAD_TIMEOUT_HOURS = 0.1
EXCERPT_MAX_LINES = 20
EXCERPT_MAX_CHARS = 1000
_DOWNLOAD_CHUNK_SIZE = 65536


@dataclass
class HttpResponse:
    """A successful response."""

    status_code: int
    text: str = ""
    headers: dict[str, str] = field(default_factory=dict)


def clamp_timeout(seconds: float, max_hours: float = MAX_TIMEOUT_HOURS) -> float:
    """Keep a timeout between 3 seconds and ``max_hours``."""
    return min(max(seconds, MIN_TIMEOUT_SECONDS), max_hours * 3600)


def response_excerpt(text: str) -> str:
    """First lines of a response body, for error messages."""
    lines = text.strip().splitlines()
    excerpt = "\n".join(lines[:EXCERPT_MAX_LINES])
    if len(lines) > EXCERPT_MAX_LINES:
        excerpt += "\n..."
    return excerpt[:EXCERPT_MAX_CHARS]


def classify_response(response: httpx.Response, url: str) -> HttpResponse:
    """Turn an ``httpx`` response into ``HttpResponse`` or raise ``TransportError``.

    Raises:
        PreconditionFailedError: On HTTP 412 or a body reporting "Precondition failed".
        TransportError: On any other non-success status.
    """
    text = response.text
    if response.is_success:
        return HttpResponse(response.status_code, text, dict(response.headers))

    excerpt = response_excerpt(text)
    if (
        response.status_code == HTTPStatus.PRECONDITION_FAILED
        or "precondition failed" in text.lower()
    ):
        raise PreconditionFailedError(f"Precondition failed for {url}: {excerpt}")
    raise TransportError(
        f"{url} returned {response.status_code} {response.reason_phrase}: {excerpt}",
        response.status_code,
    )


def run_with_deadline(
    func: Callable[[], T],
    deadline_seconds: float,
    cancel: threading.Event | None = None,
    description: str = "request",
) -> T:
    """Run ``func`` on a daemon thread, waiting at most ``deadline_seconds``.

    Raises:
        TransportTimeoutError: If ``func`` has not returned in time.  The
            thread is not killed; ``cancel`` is set so cooperative code can stop.
    """
    outcome: dict[str, Any] = {}
    done = threading.Event()

    def _worker() -> None:
        try:
            outcome["value"] = func()
        except Exception as exc:
            outcome["error"] = exc
        finally:
            done.set()

    thread = threading.Thread(target=_worker, name="archive-transport", daemon=True)
    thread.start()
    if not done.wait(deadline_seconds):
        if cancel is not None:
            cancel.set()
        logger.warning(
            "%s did not finish within %.1f seconds; abandoning it", description, deadline_seconds
        )
        raise TransportTimeoutError(f"{description} timed out after {deadline_seconds:.0f} seconds")
    if "error" in outcome:
        raise outcome["error"]
    result: T = outcome["value"]
    return result


def _current_user_name() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return os.environ.get("USERNAME", "")


class ArchiveTransport:
    """HTTP client for the ingest, policy, metadata and file services.

    Args:
        settings: Timeouts, proxy and credential settings.
        credentials: Credential provider; one is created from ``settings`` if omitted.
        transport: Optional ``httpx`` transport, e.g. ``httpx.MockTransport``.
            When given, no client certificate is loaded.
    """

    def __init__(
        self,
        settings: Settings,
        credentials: CredentialProvider | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._credentials = credentials or CredentialProvider(settings)
        self._transport = transport
        self._client: httpx.Client | None = None
        self._client_lock = threading.Lock()

    def _get_client(self) -> httpx.Client:
        with self._client_lock:
            if self._client is None:
                kwargs: dict[str, Any] = {
                    "auth": self._credentials.basic_auth(),
                    "cookies": {"user_name": _current_user_name()},
                    "follow_redirects": True,
                }
                if self._transport is not None:
                    kwargs["transport"] = self._transport
                else:
                    kwargs["verify"] = self._credentials.ssl_context()
                    if self._settings.http_proxy:
                        kwargs["proxy"] = self._settings.http_proxy
                self._client = httpx.Client(**kwargs)
            return self._client

    def close(self) -> None:
        """Close the HTTP client."""
        with self._client_lock:
            if self._client is not None:
                self._client.close()
                self._client = None

    def __enter__(self) -> ArchiveTransport:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _timeout(self, timeout: float | None, max_hours: float = MAX_TIMEOUT_HOURS) -> float:
        if timeout is None:
            timeout = self._settings.default_timeout_seconds
        return clamp_timeout(timeout, max_hours)

    def _send(self, method: str, url: str, timeout: float, **kwargs: Any) -> HttpResponse:
        try:
            response = self._get_client().request(
                method, url, timeout=httpx.Timeout(timeout), **kwargs
            )
        except ArchiveError:
            raise
        except httpx.ConnectError as exc:
            raise TransportOfflineError(f"Cannot reach {url}: {exc}") from exc
        except httpx.TimeoutException as exc:
            raise TransportTimeoutError(f"{method} {url} timed out: {exc}") from exc
        except (httpx.HTTPError, OSError) as exc:
            raise TransportError(f"{method} {url} failed: {exc}") from exc
        return classify_response(response, url)

    def request(
        self,
        method: str,
        url: str,
        *,
        timeout: float | None = None,
        max_hours: float = MAX_TIMEOUT_HOURS,
        cancel: threading.Event | None = None,
        **kwargs: Any,
    ) -> HttpResponse:
        """Send a request, classifying every failure as a ``TransportError``."""
        seconds = self._timeout(timeout, max_hours)
        logger.debug("%s %s (timeout %.0f s)", method, url, seconds)
        return run_with_deadline(
            lambda: self._send(method, url, seconds, **kwargs),
            seconds + self._settings.timeout_grace_seconds,
            cancel,
            f"{method} {url}",
        )

    def get(
        self, url: str, *, timeout: float | None = None, params: dict[str, str] | None = None
    ) -> HttpResponse:
        return self.request("GET", url, timeout=timeout, params=params)

    def head(self, url: str, *, timeout: float | None = None) -> HttpResponse:
        return self.request("HEAD", url, timeout=timeout, max_hours=MAX_HEAD_TIMEOUT_HOURS)

    def post_json(self, url: str, payload: str, *, timeout: float | None = None) -> HttpResponse:
        """POST a JSON document that has already been serialized."""
        return self.request(
            "POST",
            url,
            timeout=timeout,
            content=payload.encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )

    def put(
        self,
        url: str,
        content: bytes,
        *,
        content_type: str = "application/octet-stream",
        timeout: float | None = None,
    ) -> HttpResponse:
        return self.request(
            "PUT", url, timeout=timeout, content=content, headers={"Content-Type": content_type}
        )

    def post_stream(
        self,
        url: str,
        write_body: Callable[[BodyPipe], None],
        content_length: int,
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> HttpResponse:
        """POST a body produced incrementally by ``write_body``.

        ``write_body`` runs on its own thread and must write exactly
        ``content_length`` bytes to the pipe it receives.
        """
        cancel = cancel or threading.Event()
        pipe, _writer = start_writer(write_body, cancel)
        headers = {
            "Content-Type": "application/octet-stream",
            "Accept": "*/*",
            "Content-Length": str(content_length),
        }
        try:
            return self.request(
                "POST",
                url,
                timeout=timeout or self._settings.upload_timeout_seconds,
                cancel=cancel,
                content=pipe,
                headers=headers,
            )
        finally:
            # releases a writer still blocked on the pipe
            cancel.set()

    def download(self, url: str, destination: Path, *, timeout: float | None = None) -> int:
        """Stream ``url`` into ``destination``; returns the number of bytes written.

        The body is written to a temporary file beside ``destination`` and
        renamed into place only after the transfer completes.
        """
        seconds = self._timeout(timeout or self._settings.upload_timeout_seconds)
        cancel = threading.Event()
        return run_with_deadline(
            lambda: self._download(url, destination, seconds, cancel),
            seconds + self._settings.timeout_grace_seconds,
            cancel,
            f"GET {url}",
        )

    def _download(
        self, url: str, destination: Path, timeout: float, cancel: threading.Event
    ) -> int:
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(destination.name + ".partial")
        written = 0
        try:
            with self._get_client().stream("GET", url, timeout=httpx.Timeout(timeout)) as response:
                if not response.is_success:
                    response.read()
                    classify_response(response, url)
                with open(partial, "wb") as f:
                    for chunk in response.iter_bytes(_DOWNLOAD_CHUNK_SIZE):
                        if cancel.is_set():
                            raise TransportTimeoutError(f"Download of {url} cancelled")
                        f.write(chunk)
                        written += len(chunk)
        except ArchiveError:
            partial.unlink(missing_ok=True)
            raise
        except httpx.ConnectError as exc:
            partial.unlink(missing_ok=True)
            raise TransportOfflineError(f"Cannot reach {url}: {exc}") from exc
        except httpx.TimeoutException as exc:
            partial.unlink(missing_ok=True)
            raise TransportTimeoutError(f"GET {url} timed out: {exc}") from exc
        except (httpx.HTTPError, OSError) as exc:
            partial.unlink(missing_ok=True)
            raise TransportError(f"GET {url} failed: {exc}") from exc
        os.replace(partial, destination)
        return written
