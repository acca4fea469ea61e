"""
Classification and rendering of remote audience platform failures.

Both helpers are pure so the sync engine can decide between backing off and
aborting without knowing the platform's error payload shape.
"""

from __future__ import annotations

from typing import Any, Mapping

import requests

from audience_app.errors import RemoteError, RemoteRateLimited

# Graph API throttling codes: app, user, page and custom-audience call limits.
RATE_LIMIT_CODES = frozenset({4, 17, 32, 613})
RATE_LIMIT_MARKERS = ("rate limit", "too many calls")
UNKNOWN_REMOTE_ERROR = "Unknown remote platform error"


def _mentions_rate_limit(text: str | None) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in RATE_LIMIT_MARKERS)


def is_retryable(exc: BaseException) -> bool:
    """Return True when ``exc`` is a rate-limit signal worth backing off for."""

    if isinstance(exc, RemoteRateLimited):
        return True
    if isinstance(exc, RemoteError):
        if exc.code in RATE_LIMIT_CODES or exc.status_code == 429:
            return True
        return _mentions_rate_limit(exc.message) or _mentions_rate_limit(exc.user_message)
    return _mentions_rate_limit(str(exc))


def format_remote_error(exc: BaseException) -> str:
    """Render ``exc`` as ``[code] message`` for logs and sync summaries."""

    if isinstance(exc, RemoteError):
        text = exc.user_message or exc.message
        if text:
            code = exc.code if exc.code is not None else "UNKNOWN"
            return f"[{code}] {text}"
    message = str(exc)
    return message or UNKNOWN_REMOTE_ERROR


def remote_error_from_payload(payload: Mapping[str, Any] | None, *, status_code: int | None = None) -> RemoteError:
    """Build a :class:`RemoteError` from a Graph API ``{"error": {...}}`` body."""

    error: Mapping[str, Any] = {}
    if isinstance(payload, Mapping):
        candidate = payload.get("error")
        if isinstance(candidate, Mapping):
            error = candidate
    message = str(error.get("message") or f"Remote platform returned HTTP {status_code}")
    code = error.get("code")
    subcode = error.get("error_subcode")
    kwargs = {
        "code": int(code) if isinstance(code, (int, str)) and str(code).isdigit() else None,
        "subcode": int(subcode) if isinstance(subcode, (int, str)) and str(subcode).isdigit() else None,
        "user_message": error.get("error_user_msg") or None,
        "status_code": status_code,
    }
    candidate_error = RemoteError(message, **kwargs)
    if is_retryable(candidate_error):
        return RemoteRateLimited(message, **kwargs)
    return candidate_error


def remote_error_from_response(response: requests.Response) -> RemoteError:
    try:
        payload = response.json()
    except ValueError:
        payload = {"error": {"message": response.text or f"Remote platform returned HTTP {response.status_code}"}}
    return remote_error_from_payload(payload, status_code=response.status_code)
