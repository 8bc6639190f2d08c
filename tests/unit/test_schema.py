"""Unit tests for header cleaning and column-type inference."""

import io

import openpyxl
import pytest

from chatexcel.errors import EmptyColumnName, MalformedInput, UnsupportedFileType
from chatexcel.schema import (
    clean_header,
    file_kind,
    infer_csv_dtypes,
    infer_dtypes,
    infer_excel_dtypes,
    infer_value_type,
)


def _xlsx(*rows: list) -> bytes:
    wb = openpyxl.Workbook()
    ws = wb.active
    for row in rows:
        ws.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


# --- file_kind ---


@pytest.mark.parametrize(
    ("filename", "kind"),
    [("a.csv", "csv"), ("Report.XLSX", "xlsx"), ("old.data.xls", "xls")],
)
def test_file_kind(filename: str, kind: str) -> None:
    assert file_kind(filename) == kind


@pytest.mark.parametrize("filename", ["notes.txt", "archive.csv.zip", "noextension", "data."])
def test_file_kind_unsupported(filename: str) -> None:
    with pytest.raises(UnsupportedFileType):
        file_kind(filename)


def test_file_kind_respects_allowed_list() -> None:
    with pytest.raises(UnsupportedFileType):
        file_kind("a.xls", ["csv", "xlsx"])


# --- infer_value_type ---


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("42", "int64"),
        ("-7", "int64"),
        ("42.0", "float64"),
        ("3.14", "float64"),
        ("true", "bool"),
        ("FALSE", "bool"),
        ("", "string"),
        ("   ", "string"),
        ("abc", "string"),
        ("nan", "string"),
        ("inf", "string"),
        ("1_000", "string"),
        (None, "string"),
        (30, "int64"),
        (2.5, "float64"),
        (True, "bool"),
    ],
)
def test_infer_value_type(value: object, expected: str) -> None:
    assert infer_value_type(value) == expected


@pytest.mark.parametrize("text", ["Infinity", "-inf", "NaN", "1e400", "0x1F"])
def test_non_finite_and_hex_text_is_string(text: str) -> None:
    assert infer_value_type(text) == "string"


# --- clean_header ---


def test_clean_header_strips_whitespace() -> None:
    assert clean_header("  revenue \t") == "revenue"


def test_clean_header_strips_invisible_characters() -> None:
    assert clean_header("\ufeffname\u200b") == "name"


@pytest.mark.parametrize("raw", ["", "   ", "\u200b\u200c\u200d", None])
def test_clean_header_empty(raw: object) -> None:
    with pytest.raises(EmptyColumnName):
        clean_header(raw)


# --- CSV ---


def test_csv_basic() -> None:
    assert infer_csv_dtypes(b"name,age\nAlice,30\n") == {"name": "string", "age": "int64"}


def test_csv_all_types() -> None:
    data = b"id,price,active,label\n1,9.99,true,widget\n2,1.5,false,gadget\n"
    assert infer_csv_dtypes(data) == {
        "id": "int64",
        "price": "float64",
        "active": "bool",
        "label": "string",
    }


def test_csv_is_idempotent() -> None:
    data = b"name,age\nAlice,30\n"
    assert infer_csv_dtypes(data) == infer_csv_dtypes(data)


def test_csv_bom_and_zero_width_headers() -> None:
    data = "\ufeffname,\u200bage\nAlice,30\n".encode()
    assert infer_csv_dtypes(data) == {"name": "string", "age": "int64"}


def test_csv_skips_blank_lines() -> None:
    assert infer_csv_dtypes(b"\n\nname,age\n\n\nBob,41\n") == {"name": "string", "age": "int64"}


def test_csv_quoted_fields() -> None:
    data = b'"city, state",population\n"Austin, TX",961855\n'
    assert infer_csv_dtypes(data) == {"city, state": "string", "population": "int64"}


def test_csv_short_sample_row_defaults_to_string() -> None:
    assert infer_csv_dtypes(b"a,b,c\n1\n") == {"a": "int64", "b": "string", "c": "string"}


def test_csv_empty_column_name() -> None:
    with pytest.raises(EmptyColumnName):
        infer_csv_dtypes(b"name,,age\nAlice,x,30\n")


@pytest.mark.parametrize("data", [b"", b"name,age\n", b"\n\n  \n"])
def test_csv_needs_two_lines(data: bytes) -> None:
    with pytest.raises(MalformedInput):
        infer_csv_dtypes(data)


def test_csv_only_reads_sniff_window() -> None:
    header = ",".join(f"c{i}" for i in range(5)).encode()
    data = header + b"\n" + b"1,2,3,4,5\n" + b"x" * 100_000
    assert infer_csv_dtypes(data, sniff_bytes=64) == {f"c{i}": "int64" for i in range(5)}


# --- Excel ---


def test_xlsx_basic() -> None:
    data = _xlsx(["name", "age", "score", "active"], ["Alice", 30, 1.5, True])
    assert infer_excel_dtypes(data, "xlsx") == {
        "name": "string",
        "age": "int64",
        "score": "float64",
        "active": "bool",
    }


def test_xlsx_numeric_text_cells() -> None:
    data = _xlsx(["qty", "ratio"], ["12", "0.25"])
    assert infer_excel_dtypes(data, "xlsx") == {"qty": "int64", "ratio": "float64"}


def test_xlsx_header_with_invisible_characters() -> None:
    data = _xlsx(["\u200bregion ", "\ufeffsales"], ["EMEA", 100])
    assert infer_excel_dtypes(data, "xlsx") == {"region": "string", "sales": "int64"}


def test_xlsx_missing_sample_cell_is_string() -> None:
    data = _xlsx(["a", "b"], [1, None])
    assert infer_excel_dtypes(data, "xlsx") == {"a": "int64", "b": "string"}


def test_xlsx_header_only() -> None:
    with pytest.raises(MalformedInput):
        infer_excel_dtypes(_xlsx(["a", "b"]), "xlsx")


def test_xlsx_corrupt_bytes() -> None:
    with pytest.raises(MalformedInput):
        infer_excel_dtypes(b"this is not a workbook", "xlsx")


def test_infer_dtypes_dispatch() -> None:
    assert infer_dtypes(b"x\n1\n", "csv") == {"x": "int64"}
    assert infer_dtypes(_xlsx(["x"], ["y"]), "xlsx") == {"x": "string"}
