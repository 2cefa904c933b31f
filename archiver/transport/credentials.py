"""Client credentials for the archive services."""

from __future__ import annotations

import logging
import ssl
import tempfile
import threading
from pathlib import Path

import httpx
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    pkcs12,
)

from archiver.config import Settings
from archiver.exceptions import CredentialError

logger = logging.getLogger(__name__)


def load_pkcs12_into_context(context: ssl.SSLContext, pfx_path: Path, password: str) -> None:
    """Load a ``.pfx`` client certificate into ``context``."""
    try:
        key, cert, extra_certs = pkcs12.load_key_and_certificates(
            pfx_path.read_bytes(), password.encode() if password else None
        )
    except ValueError as exc:
        raise CredentialError(f"Cannot read client certificate {pfx_path}: {exc}") from exc
    if key is None or cert is None:
        raise CredentialError(f"Client certificate {pfx_path} has no private key or certificate")

    chain = cert.public_bytes(Encoding.PEM)
    for extra in extra_certs or []:
        chain += extra.public_bytes(Encoding.PEM)
    key_pem = key.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption())

    # ssl only loads certificate chains from files
    with tempfile.TemporaryDirectory(prefix="archiver-cert-") as tmp:
        cert_file = Path(tmp) / "client.pem"
        key_file = Path(tmp) / "client.key"
        cert_file.write_bytes(chain)
        key_file.write_bytes(key_pem)
        key_file.chmod(0o600)
        context.load_cert_chain(certfile=cert_file, keyfile=key_file)


class CredentialProvider:
    """Resolves the client certificate once and hands out the cached result.

    The SSL context is built on first use and shared read-only by every
    request made through the owning transport.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._lock = threading.Lock()
        self._context: ssl.SSLContext | None = None

    def basic_auth(self) -> httpx.BasicAuth | None:
        if not self._settings.basic_auth_user:
            return None
        return httpx.BasicAuth(self._settings.basic_auth_user, self._settings.basic_auth_password)

    def ssl_context(self) -> ssl.SSLContext:
        with self._lock:
            if self._context is None:
                self._context = self._build_context()
            return self._context

    def _build_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        cert_path = self._settings.find_client_certificate()
        if cert_path is None:
            if self.basic_auth() is not None:
                return context
            raise CredentialError(
                "Client certificate not found; set ARCHIVER_CLIENT_CERT_PATH "
                "or place a .pfx file in one of ARCHIVER_CLIENT_CERT_DIRS"
            )

        logger.debug("Loading client certificate %s", cert_path)
        if cert_path.suffix.lower() in {".pfx", ".p12"}:
            load_pkcs12_into_context(context, cert_path, self._settings.client_cert_password)
        else:
            context.load_cert_chain(
                certfile=cert_path, password=self._settings.client_cert_password or None
            )
        return context
