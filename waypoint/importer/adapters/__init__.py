"""File readers for importer uploads."""

from __future__ import annotations

from .spreadsheet import (
    SUPPORTED_EXTENSIONS,
    ParsedSheet,
    file_extension,
    read_csv,
    read_path,
    read_upload,
    read_xlsx,
)

__all__ = [
    "SUPPORTED_EXTENSIONS",
    "ParsedSheet",
    "file_extension",
    "read_csv",
    "read_path",
    "read_upload",
    "read_xlsx",
]
