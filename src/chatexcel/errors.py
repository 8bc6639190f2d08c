"""Exception hierarchy. Each error carries a stable code and maps to ErrorResponse."""

from __future__ import annotations

from chatexcel.models import ErrorResponse


class ChatExcelError(Exception):
    """Base class for every failure the analysis pipeline reports."""

    code = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(error=self.code, message=self.message)


# --- Validation ---


class UnsupportedFileType(ChatExcelError):
    code = "unsupported_file_type"


class TooManyFiles(ChatExcelError):
    code = "too_many_files"


class BatchTooLarge(ChatExcelError):
    code = "batch_too_large"


class EmptyColumnName(ChatExcelError):
    code = "empty_column_name"


class InvalidFilename(ChatExcelError):
    code = "invalid_filename"


class InvalidRequest(ChatExcelError):
    code = "invalid_request"


class NoFilesStaged(ChatExcelError):
    code = "no_files_staged"


# --- Parsing ---


class MalformedInput(ChatExcelError):
    code = "malformed_input"


# --- Services ---


class QuotaDenied(ChatExcelError):
    code = "quota_denied"


class QuotaCheckFailed(ChatExcelError):
    code = "quota_check_failed"


class ResolverError(ChatExcelError):
    """Non-2xx answer from the resolver endpoint."""

    code = "resolver_error"

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class ServiceUnavailable(ChatExcelError):
    """The resolver could not be reached at all."""

    code = "service_unavailable"


class ResolverTimeout(ServiceUnavailable):
    code = "resolver_timeout"


# --- Sandbox ---


class SandboxInitError(ChatExcelError):
    code = "sandbox_init_failed"


class SandboxFileNotFound(ChatExcelError):
    code = "file_not_found"


# --- Protocol / concurrency ---


class MalformedCommand(ChatExcelError):
    code = "malformed_command"


class WorkspaceBusy(ChatExcelError):
    code = "workspace_busy"
