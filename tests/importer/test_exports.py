from __future__ import annotations

import csv
import io
import json

from openpyxl import load_workbook

from waypoint.importer.contracts.templates import get_template_registry
from waypoint.importer.exports import (
    ERROR_CSV_HEADERS,
    build_error_csv,
    build_template_workbook,
    error_csv_filename,
    template_filename,
)
from waypoint.models import ImportRowError


def test_student_template_workbook():
    template = get_template_registry().get("students")

    workbook = load_workbook(io.BytesIO(build_template_workbook(template)))

    assert workbook.sheetnames == ["Data", "Instructions"]
    data = list(workbook["Data"].iter_rows(values_only=True))
    assert data[0] == tuple(template.target_fields)
    assert len(data) == 1 + len(template.sample_rows)
    assert all(len(row) == len(template.target_fields) for row in data)

    instructions = list(workbook["Instructions"].iter_rows(values_only=True))
    assert instructions[0] == ("Field", "Required", "Description", "Example")
    by_field = {row[0]: row for row in instructions[1:]}
    assert set(by_field) == set(template.target_fields)
    assert by_field["student_id_number"][1] == "Yes"
    assert by_field["race"][1] == "No"


def test_every_builtin_template_renders():
    for template in get_template_registry():
        payload = build_template_workbook(template)
        assert payload[:2] == b"PK"
        assert template_filename(template) == f"{template.entity_type}_import_template.xlsx"


def test_error_csv_merges_messages_per_row():
    lee = {"last_name": "Lee", "first_name": ""}
    errors = [
        ImportRowError(
            row_number=3, error_type="validation_error", error_message="First name is required", row_data=lee
        ),
        ImportRowError(row_number=5, error_type="insert_error", error_message="boom", row_data=None),
        ImportRowError(
            row_number=3, error_type="foreign_key_unresolved", error_message='Campus "X" not found', row_data=lee
        ),
    ]

    rows = list(csv.reader(io.StringIO(build_error_csv(errors))))

    assert rows[0] == list(ERROR_CSV_HEADERS)
    assert rows[1][0] == "3"
    assert rows[1][1] == 'First name is required; Campus "X" not found'
    assert json.loads(rows[1][2]) == {"first_name": "", "last_name": "Lee"}
    assert rows[1][2].index("first_name") < rows[1][2].index("last_name")
    assert rows[2] == ["5", "boom", "{}"]
    assert len(rows) == 3


def test_error_csv_accepts_mappings_and_unnumbered_rows():
    payload = build_error_csv(
        [
            {"row_number": None, "message": "Import cancelled"},
            {"row_number": None, "error_message": "Second problem"},
            {"row_number": 2, "message": "bad", "row_data": {"a": 1}},
        ]
    )

    rows = list(csv.reader(io.StringIO(payload)))

    assert rows[1:] == [
        ["", "Import cancelled", "{}"],
        ["", "Second problem", "{}"],
        ["2", "bad", '{"a": 1}'],
    ]


def test_empty_error_csv_is_just_the_header():
    assert build_error_csv([]).splitlines() == ["Row Number,Errors,Raw Data"]
    assert error_csv_filename(17) == "import_17_errors.csv"
