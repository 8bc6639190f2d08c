"""Column-type inference from a header row and one sample row.

Delimited files are sniffed from their first few KiB only; spreadsheet
containers have to be decoded in full because their sheet data is not
line-addressable. Every function here is pure.
"""

from __future__ import annotations

import csv
import io
import math
import re
from datetime import date, datetime, time
from typing import Any

import numpy as np
import pandas as pd

from chatexcel.errors import EmptyColumnName, MalformedInput, UnsupportedFileType
from chatexcel.models import ColumnType, FileKind

_INVISIBLE_RE = re.compile(r"[\u200b-\u200d\ufeff]")
_EXCEL_ENGINES: dict[str, str] = {"xlsx": "openpyxl", "xls": "xlrd"}
SUPPORTED_KINDS: tuple[FileKind, ...] = ("csv", "xlsx", "xls")


def file_kind(filename: str, allowed: list[str] | None = None) -> FileKind:
    """Map a filename's extension to a FileKind, rejecting anything else."""
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    permitted = [e.lower().lstrip(".") for e in (allowed or SUPPORTED_KINDS)]
    if ext not in SUPPORTED_KINDS or ext not in permitted:
        raise UnsupportedFileType(
            f"Unsupported file '{filename}'. Only CSV or Excel files "
            f"({', '.join('.' + e for e in permitted)}) are accepted."
        )
    return ext  # type: ignore[return-value]


def clean_header(raw: Any) -> str:
    """Trim a column header and strip zero-width/BOM characters."""
    cleaned = _INVISIBLE_RE.sub("", _cell_text(raw)).strip()
    if not cleaned:
        raise EmptyColumnName("The file has an empty column name.")
    return cleaned


def infer_value_type(value: Any) -> ColumnType:
    """Infer a column type from a single sample value.

    Precedence: number with a decimal point, number, true/false, string.
    Missing and empty values default to string.
    """
    text = _cell_text(value).strip()
    if not text:
        return "string"
    if _is_number(text):
        return "float64" if "." in text else "int64"
    if text.lower() in ("true", "false"):
        return "bool"
    return "string"


def infer_csv_dtypes(data: bytes, sniff_bytes: int = 8192) -> dict[str, ColumnType]:
    """Infer column types from the header and first data line of a CSV file."""
    head = data[:sniff_bytes].decode("utf-8-sig", errors="replace")
    lines = [line for line in head.splitlines() if line.strip()]
    if len(lines) < 2:
        raise MalformedInput("CSV file is empty or has no data row after the header.")

    try:
        header, sample = list(csv.reader(io.StringIO("\n".join(lines[:2]))))[:2]
    except (csv.Error, ValueError) as exc:
        raise MalformedInput(f"CSV file could not be parsed: {exc}") from exc

    return _build_dtypes(header, sample)


def infer_excel_dtypes(data: bytes, kind: FileKind) -> dict[str, ColumnType]:
    """Infer column types from the first two non-blank rows of the first sheet."""
    engine = _EXCEL_ENGINES.get(kind)
    if engine is None:
        raise UnsupportedFileType(f"'{kind}' is not a spreadsheet format.")

    try:
        frame = pd.read_excel(
            io.BytesIO(data),
            sheet_name=0,
            header=None,
            dtype=object,
            engine=engine,
        )
    except Exception as exc:
        raise MalformedInput(f"Excel file could not be parsed: {exc}") from exc

    rows = frame.dropna(how="all")
    if len(rows) < 2:
        raise MalformedInput("Excel file is empty or has no data row after the header.")

    header = rows.iloc[0].tolist()
    # A header row may be shorter than the data; trailing blank headers are padding.
    while header and _is_missing(header[-1]):
        header.pop()
    sample = rows.iloc[1].tolist()
    return _build_dtypes(header, sample)


def infer_dtypes(data: bytes, kind: FileKind, sniff_bytes: int = 8192) -> dict[str, ColumnType]:
    """Dispatch schema inference by file kind."""
    if kind == "csv":
        return infer_csv_dtypes(data, sniff_bytes)
    return infer_excel_dtypes(data, kind)


def _build_dtypes(header: list[Any], sample: list[Any]) -> dict[str, ColumnType]:
    if not header:
        raise MalformedInput("The header row has no columns.")
    dtypes: dict[str, ColumnType] = {}
    for index, raw in enumerate(header):
        name = clean_header(raw)
        value = sample[index] if index < len(sample) else None
        dtypes[name] = infer_value_type(value)
    return dtypes


def _is_missing(value: Any) -> bool:
    if value is None or value is pd.NaT:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and not value.strip()


def _is_number(text: str) -> bool:
    if "_" in text:
        return False
    try:
        number = float(text)
    except ValueError:
        return False
    return math.isfinite(number)


def _cell_text(value: Any) -> str:
    """Render a native cell value the way it would read as text."""
    if _is_missing(value):
        return ""
    if isinstance(value, (bool, np.bool_)):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    return str(value)
