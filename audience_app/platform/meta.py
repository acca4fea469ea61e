"""
Meta Marketing API client for customer-list custom audiences.

Talks to the Graph API over a ``requests.Session`` and raises
:class:`~audience_app.errors.RemoteError` (or its rate-limited
subclass) for every failed call so callers can classify failures uniformly.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence

import requests

from audience_app.errors import RemoteError

from .errors import format_remote_error, remote_error_from_response

DEFAULT_GRAPH_URL = "https://graph.facebook.com"
DEFAULT_API_VERSION = "v19.0"


@dataclass(frozen=True)
class AudienceStats:
    size: int
    status: str

    def as_dict(self) -> dict[str, object]:
        return {"size": self.size, "status": self.status}


class AudiencePlatform(Protocol):
    """Operations the pipeline needs from a remote audience platform."""

    def create_audience(self, name: str, description: str) -> str: ...

    def add_users(self, audience_id: str, schema: Sequence[str], rows: Sequence[Sequence[str]]) -> Mapping[str, Any]: ...

    def remove_users(
        self, audience_id: str, schema: Sequence[str], rows: Sequence[Sequence[str]]
    ) -> Mapping[str, Any]: ...

    def get_audience_stats(self, audience_id: str) -> AudienceStats: ...


class MetaAudienceClient:
    """Thin Graph API wrapper for custom audience management."""

    def __init__(
        self,
        *,
        access_token: str,
        ad_account_id: str,
        api_version: str = DEFAULT_API_VERSION,
        graph_url: str = DEFAULT_GRAPH_URL,
        timeout: float = 30,
        session: requests.Session | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if not access_token:
            raise RemoteError("Meta API credentials not configured: META_ACCESS_TOKEN missing")
        if not ad_account_id:
            raise RemoteError("Meta API credentials not configured: META_AD_ACCOUNT_ID missing")
        self.access_token = access_token
        self.ad_account_id = ad_account_id if ad_account_id.startswith("act_") else f"act_{ad_account_id}"
        self.api_version = api_version
        self.graph_url = graph_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config: Mapping[str, Any], **kwargs: Any) -> "MetaAudienceClient":
        return cls(
            access_token=config.get("META_ACCESS_TOKEN") or "",
            ad_account_id=config.get("META_AD_ACCOUNT_ID") or "",
            api_version=config.get("META_API_VERSION") or DEFAULT_API_VERSION,
            graph_url=config.get("META_GRAPH_URL") or DEFAULT_GRAPH_URL,
            timeout=config.get("META_REQUEST_TIMEOUT") or 30,
            **kwargs,
        )

    # Public API -----------------------------------------------------------------

    def create_audience(self, name: str, description: str) -> str:
        self.logger.info("Creating custom audience", extra={"event": "meta_create_audience_start"})
        try:
            payload = self._request(
                "POST",
                f"{self.ad_account_id}/customaudiences",
                data={
                    "name": name,
                    "description": description,
                    "subtype": "CUSTOM",
                    "customer_file_source": "USER_PROVIDED_ONLY",
                },
            )
        except RemoteError as exc:
            self.logger.error(
                "Custom audience creation failed",
                extra={"event": "meta_create_audience_failed", "error": format_remote_error(exc)},
            )
            raise
        audience_id = str(payload.get("id") or "")
        if not audience_id:
            raise RemoteError("Failed to create Custom Audience: response did not include an id")
        self.logger.info("Custom audience created", extra={"event": "meta_create_audience_complete"})
        return audience_id

    def add_users(self, audience_id: str, schema: Sequence[str], rows: Sequence[Sequence[str]]) -> Mapping[str, Any]:
        return self._request("POST", f"{audience_id}/users", data=self._users_payload(schema, rows))

    def remove_users(
        self, audience_id: str, schema: Sequence[str], rows: Sequence[Sequence[str]]
    ) -> Mapping[str, Any]:
        return self._request("DELETE", f"{audience_id}/users", data=self._users_payload(schema, rows))

    def get_audience_stats(self, audience_id: str) -> AudienceStats:
        payload = self._request(
            "GET",
            audience_id,
            params={"fields": "approximate_count,approximate_count_lower_bound,operation_status"},
        )
        size = payload.get("approximate_count")
        if size is None:
            size = payload.get("approximate_count_lower_bound")
        operation_status = payload.get("operation_status") or {}
        code = operation_status.get("code") if isinstance(operation_status, Mapping) else None
        return AudienceStats(size=int(size or 0), status=str(code) if code is not None else "unknown")

    # Internal helpers -----------------------------------------------------------

    def _url(self, path: str) -> str:
        return f"{self.graph_url}/{self.api_version}/{path.lstrip('/')}"

    @staticmethod
    def _users_payload(schema: Sequence[str], rows: Sequence[Sequence[str]]) -> dict[str, str]:
        return {"payload": json.dumps({"schema": list(schema), "data": [list(row) for row in rows]})}

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        data: Mapping[str, Any] | None = None,
    ) -> Mapping[str, Any]:
        query = {**(params or {}), "access_token": self.access_token}
        try:
            response = self.session.request(
                method,
                self._url(path),
                params=query,
                data=data,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise RemoteError(f"Request to remote platform failed: {exc}") from exc

        if not response.ok:
            error = remote_error_from_response(response)
            self.logger.warning(
                "Remote platform call failed",
                extra={
                    "event": "meta_request_failed",
                    "status_code": response.status_code,
                    "error_code": error.code,
                    "error": format_remote_error(error),
                },
            )
            raise error

        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteError(f"Remote platform returned a non-JSON response (HTTP {response.status_code})") from exc
        if isinstance(payload, Mapping) and "error" in payload:
            raise remote_error_from_response(response)
        return payload if isinstance(payload, Mapping) else {"data": payload}
