"""Input validation — all validators return ErrorResponse or None."""

from __future__ import annotations

from chatexcel.config import ChatExcelConfig
from chatexcel.models import ErrorResponse

_FORBIDDEN_CHARS = ("/", "\\", "\x00")


def is_safe_filename(filename: str) -> bool:
    """A plain file name: no directories, no traversal, at most 255 characters."""
    if not filename or len(filename) > 255 or filename in (".", ".."):
        return False
    return not any(ch in filename for ch in _FORBIDDEN_CHARS)


def validate_filename(filename: str) -> ErrorResponse | None:
    """Validate an uploaded or requested file name."""
    if not is_safe_filename(filename):
        return ErrorResponse(
            error="invalid_filename",
            message=(
                f"Invalid filename '{filename}'. "
                "Use a plain file name without path separators (max 255 chars)."
            ),
        )
    return None


def validate_instruction(instruction: str, config: ChatExcelConfig) -> ErrorResponse | None:
    """Reject empty or oversized instructions before any I/O."""
    if not instruction.strip():
        return ErrorResponse(
            error="invalid_request",
            message="Please describe what you want to do with the data.",
        )
    if len(instruction) > config.max_instruction_chars:
        return ErrorResponse(
            error="invalid_request",
            message=(
                f"Instruction is {len(instruction)} characters, "
                f"exceeds {config.max_instruction_chars} character limit."
            ),
        )
    return None


def validate_upload_size(content_base64: str, config: ChatExcelConfig) -> ErrorResponse | None:
    """Reject upload exceeding max_upload_bytes (check base64 length before decoding)."""
    # Base64 encodes 3 bytes as 4 chars, so max base64 length is ceil(max_bytes * 4/3)
    max_b64_len = int(config.max_upload_bytes * 4 / 3) + 4  # padding
    if len(content_base64) > max_b64_len:
        return ErrorResponse(
            error="upload_too_large",
            message=f"Upload exceeds {config.max_upload_bytes // (1024 * 1024)}MB limit.",
        )
    return None
