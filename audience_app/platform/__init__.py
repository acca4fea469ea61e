"""Remote audience platform integration."""

from .errors import RATE_LIMIT_CODES, format_remote_error, is_retryable, remote_error_from_payload
from .meta import AudiencePlatform, AudienceStats, MetaAudienceClient

__all__ = [
    "AudiencePlatform",
    "AudienceStats",
    "MetaAudienceClient",
    "RATE_LIMIT_CODES",
    "format_remote_error",
    "is_retryable",
    "remote_error_from_payload",
]
