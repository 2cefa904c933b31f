"""Archive client configuration loaded from environment variables."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_CERT_YEAR_PATTERN = re.compile(r"_(\d{4})\.pfx$", re.IGNORECASE)


class Settings(BaseSettings):
    """Archive client settings."""

    model_config = SettingsConfigDict(
        env_prefix="ARCHIVER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Service endpoints
    scheme: str = "https"
    use_test_instance: bool = False
    ingest_host: str = "ingestdms.my.emsl.pnl.gov"
    ingest_test_host: str = "ingestdmsdev.my.emsl.pnl.gov"
    policy_host: str = "policydms.my.emsl.pnl.gov"
    policy_test_host: str = "policydmsdev.my.emsl.pnl.gov"
    metadata_host: str = "metadata.my.emsl.pnl.gov"
    metadata_test_host: str = "metadatadev.my.emsl.pnl.gov"
    files_host: str = "files.my.emsl.pnl.gov"
    http_proxy: str = ""

    # Credentials
    client_cert_path: Path | None = None
    client_cert_password: str = ""
    client_cert_dirs: list[Path] = Field(default_factory=lambda: [Path("./certs")])
    client_cert_prefix: str = "svc-dms-cert"
    basic_auth_user: str = ""
    basic_auth_password: str = ""

    # Timeouts (seconds)
    default_timeout_seconds: float = Field(default=100.0, gt=0)
    upload_timeout_seconds: float = Field(default=3600.0, gt=0)
    timeout_grace_seconds: float = Field(default=5.0, ge=0)

    # Limits
    max_files_to_archive: int = Field(default=500, ge=1)
    large_dataset_threshold_gb: float = Field(default=15.0, gt=0)
    download_max_attempts: int = Field(default=5, ge=1)

    # Versions ingested inside this window were stored corrupt and never match
    corrupt_window_start: datetime = datetime(2023, 10, 31, 22, 13, 0, tzinfo=timezone.utc)
    corrupt_window_end: datetime = datetime(2023, 12, 19, 22, 0, 0, tzinfo=timezone.utc)

    local_temp_dir: Path = Path("./tmp")

    def _base_url(self, host: str) -> str:
        return f"{self.scheme}://{host}"

    @property
    def ingest_base_url(self) -> str:
        return self._base_url(self.ingest_test_host if self.use_test_instance else self.ingest_host)

    @property
    def policy_base_url(self) -> str:
        return self._base_url(self.policy_test_host if self.use_test_instance else self.policy_host)

    @property
    def metadata_base_url(self) -> str:
        host = self.metadata_test_host if self.use_test_instance else self.metadata_host
        return self._base_url(host)

    @property
    def files_base_url(self) -> str:
        return self._base_url(self.files_host)

    def validate_runtime(self) -> None:
        """Reject configurations that cannot talk to the archive."""
        violations: list[str] = []
        if self.scheme not in {"http", "https"}:
            violations.append(f"SCHEME must be http or https, not {self.scheme!r}")
        if self.corrupt_window_end < self.corrupt_window_start:
            violations.append("CORRUPT_WINDOW_END must not precede CORRUPT_WINDOW_START")
        if bool(self.basic_auth_user) != bool(self.basic_auth_password):
            violations.append("BASIC_AUTH_USER and BASIC_AUTH_PASSWORD must be set together")

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Invalid archive client configuration: {joined}")

    def find_client_certificate(self) -> Path | None:
        """Locate the client certificate to use.

        An explicit ``client_cert_path`` wins. Otherwise the newest
        ``<prefix>_<year>.pfx`` in the search directories is used, falling
        back to the most recently modified ``.pfx`` file.
        """
        if self.client_cert_path is not None:
            return self.client_cert_path if self.client_cert_path.is_file() else None

        candidates: list[Path] = []
        for cert_dir in self.client_cert_dirs:
            if cert_dir.is_dir():
                candidates.extend(p for p in cert_dir.glob("*.pfx") if p.is_file())
        if not candidates:
            return None

        by_year: list[tuple[int, Path]] = []
        for candidate in candidates:
            if not candidate.name.lower().startswith(self.client_cert_prefix.lower()):
                continue
            match = _CERT_YEAR_PATTERN.search(candidate.name)
            if match:
                by_year.append((int(match.group(1)), candidate))
        if by_year:
            return max(by_year, key=lambda item: item[0])[1]

        return max(candidates, key=lambda p: p.stat().st_mtime)


@lru_cache
def get_settings() -> Settings:
    return Settings()
