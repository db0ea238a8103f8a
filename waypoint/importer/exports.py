"""
Downloadable artifacts: the per-entity template workbook and the error CSV.
"""

from __future__ import annotations

import csv
import io
import json
from typing import Any, Iterable, Mapping

from openpyxl import Workbook
from openpyxl.styles import Font

from waypoint.models import ImportRowError

from .contracts.templates import ImportTemplate

DATA_SHEET_TITLE = "Data"
INSTRUCTIONS_SHEET_TITLE = "Instructions"
INSTRUCTION_HEADERS = ("Field", "Required", "Description", "Example")
ERROR_CSV_HEADERS = ("Row Number", "Errors", "Raw Data")


def build_template_workbook(template: ImportTemplate) -> bytes:
    """
    Render the two-sheet XLSX template for an entity type.

    ``Data`` holds the target headers followed by the sample rows;
    ``Instructions`` documents each field.
    """

    workbook = Workbook()
    bold = Font(bold=True)

    data_sheet = workbook.active
    data_sheet.title = DATA_SHEET_TITLE
    data_sheet.append(list(template.target_fields))
    for row in template.sample_rows:
        data_sheet.append(list(row))
    for cell in data_sheet[1]:
        cell.font = bold
    data_sheet.freeze_panes = "A2"

    instructions = workbook.create_sheet(INSTRUCTIONS_SHEET_TITLE)
    instructions.append(list(INSTRUCTION_HEADERS))
    for field_spec in template.fields:
        required = "Yes" if field_spec.required else "No"
        instructions.append([field_spec.name, required, field_spec.description, field_spec.example])
    for cell in instructions[1]:
        cell.font = bold

    for sheet in (data_sheet, instructions):
        for column in sheet.columns:
            width = max(len(str(cell.value or "")) for cell in column)
            sheet.column_dimensions[column[0].column_letter].width = min(max(width + 2, 12), 60)

    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def template_filename(template: ImportTemplate) -> str:
    return f"{template.entity_type}_import_template.xlsx"


def _error_fields(error: ImportRowError | Mapping[str, Any]) -> tuple[int | None, str, Any]:
    if isinstance(error, Mapping):
        return error.get("row_number"), error.get("error_message") or error.get("message", ""), error.get("row_data")
    return error.row_number, error.error_message, error.row_data


def build_error_csv(errors: Iterable[ImportRowError | Mapping[str, Any]]) -> str:
    """
    Serialize stored row errors as CSV.

    Messages recorded for the same row are merged into one line joined by
    ``"; "``; rows keep the order in which they were first seen.
    """

    grouped: dict[Any, dict[str, Any]] = {}
    for index, error in enumerate(errors):
        row_number, message, row_data = _error_fields(error)
        key = row_number if row_number is not None else f"unnumbered-{index}"
        entry = grouped.setdefault(key, {"row_number": row_number, "messages": [], "row_data": row_data})
        if message:
            entry["messages"].append(message)
        if entry["row_data"] is None and row_data is not None:
            entry["row_data"] = row_data

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(ERROR_CSV_HEADERS)
    for entry in grouped.values():
        writer.writerow(
            [
                "" if entry["row_number"] is None else entry["row_number"],
                "; ".join(entry["messages"]),
                json.dumps(entry["row_data"] or {}, sort_keys=True, default=str),
            ]
        )
    return buffer.getvalue()


def error_csv_filename(session_id: int) -> str:
    return f"import_{session_id}_errors.csv"


__all__ = [
    "ERROR_CSV_HEADERS",
    "INSTRUCTION_HEADERS",
    "build_error_csv",
    "build_template_workbook",
    "error_csv_filename",
    "template_filename",
]
