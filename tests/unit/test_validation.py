"""Unit tests for input validation functions."""

import pytest

from chatexcel.config import ChatExcelConfig
from chatexcel.models import ErrorResponse
from chatexcel.validation import (
    is_safe_filename,
    validate_filename,
    validate_instruction,
    validate_upload_size,
)

# --- validate_filename ---


@pytest.mark.parametrize(
    "name",
    [
        "data.csv",
        "Q3 sales (final).xlsx",
        "销售数据.xls",
        "..hidden.csv",
        "a",
        "A" * 255,
    ],
)
def test_filename_valid(name: str) -> None:
    assert is_safe_filename(name)
    assert validate_filename(name) is None


@pytest.mark.parametrize(
    "name",
    [
        "",
        ".",
        "..",
        "A" * 256,
        "path/file.csv",
        "..\\file.csv",
        "nul\x00.csv",
    ],
)
def test_filename_invalid(name: str) -> None:
    assert not is_safe_filename(name)
    result = validate_filename(name)
    assert isinstance(result, ErrorResponse)
    assert result.error == "invalid_filename"


# --- validate_instruction ---


def test_instruction_valid() -> None:
    assert validate_instruction("average revenue by region", ChatExcelConfig()) is None


@pytest.mark.parametrize("instruction", ["", "   ", "\n\t"])
def test_instruction_blank(instruction: str) -> None:
    result = validate_instruction(instruction, ChatExcelConfig())
    assert isinstance(result, ErrorResponse)
    assert result.error == "invalid_request"


def test_instruction_too_long() -> None:
    config = ChatExcelConfig(max_instruction_chars=10)
    result = validate_instruction("x" * 11, config)
    assert isinstance(result, ErrorResponse)
    assert result.error == "invalid_request"
    assert "11 characters" in result.message


# --- validate_upload_size ---


def test_upload_size_within_limit() -> None:
    config = ChatExcelConfig(max_upload_bytes=1024)
    assert validate_upload_size("aGVsbG8=", config) is None


def test_upload_size_exceeds_limit() -> None:
    config = ChatExcelConfig(max_upload_bytes=10)
    big_b64 = "A" * 100
    result = validate_upload_size(big_b64, config)
    assert isinstance(result, ErrorResponse)
    assert result.error == "upload_too_large"
    assert "limit" in result.message.lower()
