"""
Tenant source file retrieval.

The pipeline only needs ``(filename, content)`` for the newest matching file
in a tenant-scoped directory. :class:`LocalDirectoryFetcher` serves files from
a mounted drop directory; other transports implement the same protocol.
"""

from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Protocol

from audience_app.errors import CredentialError, NoSourceFileError, SourceFetchError
from audience_app.vault import CredentialVault

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceFile:
    filename: str
    content: str


@dataclass(frozen=True)
class SourceCredentials:
    host: str | None
    username: str | None
    password: str | None


class SourceFileFetcher(Protocol):
    def fetch_latest(self, tenant: Any, credentials: SourceCredentials) -> SourceFile: ...


class LocalDirectoryFetcher:
    """Pick the most recently modified file matching the tenant's pattern."""

    def __init__(self, root_dir: str | Path, *, encoding: str = "utf-8-sig") -> None:
        self.root_dir = Path(root_dir).resolve()
        self.encoding = encoding

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "LocalDirectoryFetcher":
        root = config.get("SOURCE_ROOT_DIR")
        if not root:
            raise SourceFetchError("SOURCE_ROOT_DIR is not configured")
        return cls(root)

    def _tenant_directory(self, tenant: Any) -> Path:
        relative = (getattr(tenant, "source_directory", None) or getattr(tenant, "slug", "") or "").strip("/")
        directory = (self.root_dir / relative).resolve()
        if directory != self.root_dir and self.root_dir not in directory.parents:
            raise SourceFetchError(f"Source directory for {tenant.name} escapes the source root")
        return directory

    def fetch_latest(self, tenant: Any, credentials: SourceCredentials) -> SourceFile:
        directory = self._tenant_directory(tenant)
        if not directory.is_dir():
            raise SourceFetchError(f"Source directory not found for {tenant.name}: {directory}")

        pattern = (getattr(tenant, "file_pattern", None) or "*.csv").lower()
        candidates = [
            path for path in directory.iterdir() if path.is_file() and fnmatch.fnmatch(path.name.lower(), pattern)
        ]
        if not candidates:
            raise NoSourceFileError(f"No CSV files found in {directory}")

        latest = max(candidates, key=lambda path: path.stat().st_mtime)
        try:
            content = latest.read_text(encoding=self.encoding)
        except (OSError, UnicodeDecodeError) as exc:
            raise SourceFetchError(f"Failed to read {latest.name} for {tenant.name}: {exc}") from exc

        logger.info(
            "Source file downloaded",
            extra={"event": "source_download_complete", "tenant": tenant.name, "file_name": latest.name},
        )
        return SourceFile(filename=latest.name, content=content)


def resolve_credentials(tenant: Any, vault: CredentialVault | None) -> SourceCredentials:
    """Decrypt the tenant's stored password; raises ``SourceFetchError`` when it cannot."""

    encrypted = getattr(tenant, "remote_password_encrypted", None)
    password = None
    if encrypted:
        if vault is None:
            raise SourceFetchError(f"No credential vault configured to decrypt credentials for {tenant.name}")
        try:
            password = vault.decrypt(encrypted)
        except CredentialError as exc:
            logger.error(
                "Stored credentials could not be decrypted",
                extra={"event": "source_decrypt_failed", "tenant": tenant.name},
            )
            raise SourceFetchError("Invalid client credentials") from exc
    return SourceCredentials(
        host=getattr(tenant, "remote_host", None),
        username=getattr(tenant, "remote_username", None),
        password=password,
    )


def fetch_for_tenant(tenant: Any, fetcher: SourceFileFetcher, vault: CredentialVault | None = None) -> SourceFile:
    """Decrypt credentials then fetch the newest source file for ``tenant``."""

    credentials = resolve_credentials(tenant, vault)
    return fetcher.fetch_latest(tenant, credentials)
