"""
Exception hierarchy for the reconciliation and audience sync pipeline.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base exception for pipeline failures."""


class FormatError(PipelineError):
    """Raised when an input file cannot be parsed into contact records."""


class EmptyInputError(FormatError):
    """Raised when an input file is empty or holds no parseable rows."""


class SchemaError(FormatError):
    """Raised when the header row lacks the required name columns."""


class UnknownTenantError(PipelineError):
    def __init__(self, tenant_id: object) -> None:
        super().__init__(f"Tenant {tenant_id} does not exist.")
        self.tenant_id = tenant_id


class RecordError(PipelineError):
    """A single row failed; collected by the caller instead of aborting the run."""

    def __init__(self, row_number: int, message: str) -> None:
        super().__init__(f"Row {row_number}: {message}")
        self.row_number = row_number
        self.detail = message


class MemberNotFoundError(PipelineError):
    def __init__(self, record_id: object) -> None:
        super().__init__(f"Audience member {record_id} does not exist.")
        self.record_id = record_id


class InvalidFieldError(PipelineError):
    """Raised when an edited field fails normalization."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field


class PersistenceError(PipelineError):
    """Raised when a database write needed by the pipeline fails."""


class CredentialError(PipelineError):
    """Raised when stored credentials cannot be decrypted."""


class SourceFetchError(PipelineError):
    """Raised when a tenant source file cannot be retrieved."""


class NoSourceFileError(SourceFetchError):
    """Raised when the tenant directory holds no matching file."""


class RemoteError(PipelineError):
    """
    Structured failure reported by the remote audience platform.

    ``code``/``subcode`` carry the platform's error codes when present and
    ``user_message`` the human-facing text, which takes precedence over the
    technical message when rendering.
    """

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        subcode: int | None = None,
        user_message: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.subcode = subcode
        self.user_message = user_message
        self.status_code = status_code


class RemoteRateLimited(RemoteError):
    """Remote platform asked us to slow down; safe to retry after backing off."""


class SyncFailedError(PipelineError):
    """Raised when a sync run aborts; ``uploaded`` counts records already sent."""

    def __init__(
        self, *, uploaded: int, batch_number: int, remote_message: str, operation: str = "upload"
    ) -> None:
        super().__init__(f"Failed to {operation} batch {batch_number}: {remote_message}")
        self.operation = operation
        self.uploaded = uploaded
        self.batch_number = batch_number
        self.remote_message = remote_message
