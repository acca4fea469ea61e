"""
Runtime wiring for the audience pipeline.

Collaborators (remote platform client, source fetcher, credential vault) are
built from Flask config on first use and cached inside
``app.extensions['audience_pipeline']`` so CLI commands, Celery tasks and
HTTP routes share one instance per app.
"""

from __future__ import annotations

from typing import Any

from flask import Flask

from audience_app.errors import CredentialError, RemoteError
from audience_app.pipeline.sync import AudienceSyncService, SyncSettings
from audience_app.platform import AudiencePlatform, MetaAudienceClient
from audience_app.sources import LocalDirectoryFetcher, SourceFileFetcher
from audience_app.vault import CredentialVault

EXTENSION_KEY = "audience_pipeline"


def ensure_extension_state(app: Flask) -> dict[str, Any]:
    return app.extensions.setdefault(
        EXTENSION_KEY,
        {
            "celery_app": None,
            "platform_client": None,
            "source_fetcher": None,
            "vault": None,
        },
    )


def get_platform_client(app: Flask) -> AudiencePlatform | None:
    """Return the configured platform client, or ``None`` when credentials are missing."""

    state = ensure_extension_state(app)
    client = state.get("platform_client")
    if client is None:
        try:
            client = MetaAudienceClient.from_config(app.config, logger=app.logger)
        except RemoteError as exc:
            app.logger.warning(
                "Remote audience platform is not configured; sync is disabled",
                extra={"event": "meta_not_configured", "error": str(exc)},
            )
            return None
        state["platform_client"] = client
    return client


def require_platform_client(app: Flask) -> AudiencePlatform:
    client = get_platform_client(app)
    if client is None:
        raise RemoteError("Meta API credentials not configured")
    return client


def build_sync_service(app: Flask, client: AudiencePlatform | None = None) -> AudienceSyncService | None:
    client = client or get_platform_client(app)
    if client is None:
        return None
    return AudienceSyncService(client, settings=SyncSettings.from_config(app.config), logger=app.logger)


def get_source_fetcher(app: Flask) -> SourceFileFetcher:
    state = ensure_extension_state(app)
    fetcher = state.get("source_fetcher")
    if fetcher is None:
        fetcher = LocalDirectoryFetcher.from_config(app.config)
        state["source_fetcher"] = fetcher
    return fetcher


def get_vault(app: Flask) -> CredentialVault | None:
    """Return the credential vault, or ``None`` when no key is configured."""

    state = ensure_extension_state(app)
    vault = state.get("vault")
    if vault is None:
        try:
            vault = CredentialVault.from_config(app.config)
        except CredentialError:
            return None
        state["vault"] = vault
    return vault


def require_vault(app: Flask) -> CredentialVault:
    vault = get_vault(app)
    if vault is None:
        raise CredentialError("CREDENTIAL_ENCRYPTION_KEY is not configured")
    return vault


__all__ = [
    "EXTENSION_KEY",
    "build_sync_service",
    "ensure_extension_state",
    "get_platform_client",
    "get_source_fetcher",
    "get_vault",
    "require_platform_client",
    "require_vault",
]
