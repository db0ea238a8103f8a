"""Spreadsheet reader for generic entity imports.

Reads CSV or XLSX uploads fully into memory: the first row is the header and
the remaining non-blank rows are data. Headers are kept exactly as uploaded;
matching them to template fields is the column mapper's job.
"""

from __future__ import annotations

import csv
import io
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, Iterable, Sequence

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

from ..errors import FileParseError

CSV_EXTENSIONS: tuple[str, ...] = ("csv",)
XLSX_EXTENSIONS: tuple[str, ...] = ("xlsx", "xlsm")
SUPPORTED_EXTENSIONS: tuple[str, ...] = CSV_EXTENSIONS + XLSX_EXTENSIONS


@dataclass(frozen=True)
class ParsedSheet:
    """Headers plus data rows keyed by the original header text."""

    file_name: str
    headers: tuple[str, ...]
    rows: tuple[dict[str, Any], ...]
    blank_rows_skipped: int = 0

    @property
    def row_count(self) -> int:
        return len(self.rows)


@dataclass
class _SheetBuilder:
    file_name: str
    headers: tuple[str, ...] = ()
    rows: list[dict[str, Any]] = field(default_factory=list)
    blank_rows: int = 0

    def set_headers(self, raw_headers: Sequence[Any]) -> None:
        headers = tuple("" if value is None else str(value).strip() for value in raw_headers)
        # Trailing empty header cells are common in exported workbooks.
        while headers and not headers[-1]:
            headers = headers[:-1]
        if not any(headers):
            raise FileParseError(f"{self.file_name} has no header row.")
        self.headers = headers

    def add_row(self, values: Sequence[Any]) -> None:
        if _row_is_blank(values):
            self.blank_rows += 1
            return
        row: dict[str, Any] = {}
        for index, header in enumerate(self.headers):
            if not header:
                continue
            value = values[index] if index < len(values) else None
            row[header] = value.strip() if isinstance(value, str) else value
        self.rows.append(row)

    def build(self) -> ParsedSheet:
        if not self.rows:
            raise FileParseError("File contains no data rows")
        return ParsedSheet(
            file_name=self.file_name,
            headers=self.headers,
            rows=tuple(self.rows),
            blank_rows_skipped=self.blank_rows,
        )


def _row_is_blank(values: Iterable[Any]) -> bool:
    return all(value is None or (isinstance(value, str) and not value.strip()) for value in values)


def file_extension(file_name: str) -> str:
    if not file_name or "." not in file_name:
        return ""
    return file_name.rsplit(".", 1)[1].lower()


def read_csv(stream: IO[str], *, file_name: str = "upload.csv") -> ParsedSheet:
    builder = _SheetBuilder(file_name=file_name)
    try:
        reader = csv.reader(stream)
        header_row = next(reader, None)
        if header_row is None:
            raise FileParseError(f"{file_name} is empty.")
        builder.set_headers(header_row)
        for values in reader:
            builder.add_row(values)
    except csv.Error as exc:
        raise FileParseError(f"Could not read {file_name}: {exc}") from exc
    return builder.build()


def read_xlsx(payload: bytes, *, file_name: str = "upload.xlsx") -> ParsedSheet:
    """Read the first worksheet of an XLSX workbook."""

    try:
        workbook = openpyxl.load_workbook(io.BytesIO(payload), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError, ValueError) as exc:
        raise FileParseError(f"Could not read {file_name}: {exc}") from exc

    builder = _SheetBuilder(file_name=file_name)
    try:
        sheet = workbook.worksheets[0] if workbook.worksheets else None
        if sheet is None:
            raise FileParseError(f"{file_name} has no worksheets.")
        rows = sheet.iter_rows(values_only=True)
        header_row = next(rows, None)
        if header_row is None:
            raise FileParseError(f"{file_name} is empty.")
        builder.set_headers(header_row)
        for values in rows:
            builder.add_row(values)
    finally:
        workbook.close()
    return builder.build()


def read_upload(payload: bytes, file_name: str) -> ParsedSheet:
    """
    Parse an uploaded file by extension.

    CSV payloads are decoded as UTF-8, tolerating a byte-order mark.
    """

    if not payload:
        raise FileParseError(f"{file_name} is empty.")
    extension = file_extension(file_name)
    if extension in XLSX_EXTENSIONS:
        return read_xlsx(payload, file_name=file_name)
    if extension in CSV_EXTENSIONS:
        try:
            text = payload.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise FileParseError(f"{file_name} is not valid UTF-8 text.") from exc
        return read_csv(io.StringIO(text, newline=""), file_name=file_name)
    raise FileParseError(
        f"Unsupported file type '.{extension}' for {file_name}. Use one of: {', '.join(SUPPORTED_EXTENSIONS)}."
    )


def read_path(path: str | Path) -> ParsedSheet:
    path = Path(path)
    try:
        payload = path.read_bytes()
    except OSError as exc:
        raise FileParseError(f"Could not open {path}: {exc}") from exc
    return read_upload(payload, path.name)
