from __future__ import annotations

import io
from datetime import date, datetime

import pytest
from openpyxl import Workbook

from waypoint.importer.adapters import read_path, read_upload
from waypoint.importer.adapters.laserfiche import (
    LaserficheRow,
    parse_date,
    read_laserfiche_upload,
    rows_from_mappings,
)
from waypoint.importer.contracts import laserfiche as columns
from waypoint.importer.errors import FileParseError, MissingRequiredColumnsError


def _xlsx_bytes(rows) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    for row in rows:
        sheet.append(list(row))
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def test_csv_with_bom_and_blank_rows():
    payload = "\ufeffStudent ID,First Name\n S1 ,Ann\n\n,\nS2,Bob\n".encode("utf-8")

    sheet = read_upload(payload, "students.csv")

    assert sheet.headers == ("Student ID", "First Name")
    assert sheet.rows == ({"Student ID": "S1", "First Name": "Ann"}, {"Student ID": "S2", "First Name": "Bob"})
    assert sheet.row_count == 2
    assert sheet.blank_rows_skipped == 2


def test_csv_short_rows_pad_missing_cells_with_none():
    sheet = read_upload(b"a,b,c\n1,2\n", "short.csv")

    assert sheet.rows == ({"a": "1", "b": "2", "c": None},)


def test_header_only_file_has_no_data_rows():
    with pytest.raises(FileParseError, match="File contains no data rows"):
        read_upload(b"name,tea_campus_id\n", "campuses.csv")


def test_empty_payload_is_rejected():
    with pytest.raises(FileParseError, match="is empty"):
        read_upload(b"", "campuses.csv")


def test_unsupported_extension_is_rejected():
    with pytest.raises(FileParseError, match="Unsupported file type '.txt'"):
        read_upload(b"a,b\n1,2\n", "campuses.txt")


def test_non_utf8_csv_is_rejected():
    with pytest.raises(FileParseError, match="not valid UTF-8"):
        read_upload("name\nCafé\n".encode("utf-16"), "campuses.csv")


def test_xlsx_reads_first_sheet_and_keeps_dates():
    payload = _xlsx_bytes(
        [
            ("Student ID", "DOB", "Grade", None),
            ("S1", datetime(2010, 3, 15), 8, None),
            (None, None, None, None),
            ("S2", datetime(2011, 1, 2), 7, None),
        ]
    )

    sheet = read_upload(payload, "students.xlsx")

    assert sheet.headers == ("Student ID", "DOB", "Grade")
    assert sheet.rows[0] == {"Student ID": "S1", "DOB": datetime(2010, 3, 15), "Grade": 8}
    assert sheet.row_count == 2
    assert sheet.blank_rows_skipped == 1


def test_corrupt_xlsx_is_a_parse_error():
    with pytest.raises(FileParseError, match="Could not read broken.xlsx"):
        read_upload(b"definitely not a zip archive", "broken.xlsx")


def test_read_path_missing_file(tmp_path):
    with pytest.raises(FileParseError, match="Could not open"):
        read_path(tmp_path / "missing.csv")


def test_read_path_uses_file_name(tmp_path):
    path = tmp_path / "campuses.csv"
    path.write_text("name\nLincoln\n", encoding="utf-8")

    sheet = read_path(path)

    assert sheet.file_name == "campuses.csv"
    assert sheet.rows == ({"name": "Lincoln"},)


# Laserfiche export -------------------------------------------------------------


def test_laserfiche_missing_key_columns_fail_before_rows():
    payload = b"First_Name,Last_Name,Status\nMaria,Garcia,In progress\n"

    with pytest.raises(MissingRequiredColumnsError) as excinfo:
        read_laserfiche_upload(payload, "daep.csv")

    assert excinfo.value.missing == (columns.INSTANCE_ID,)
    assert str(excinfo.value) == "Missing required columns: Instance ID"


def test_laserfiche_rows_from_xlsx():
    header = list(columns.LASERFICHE_COLUMNS)
    values = {
        columns.INSTANCE_ID: 42,
        columns.FIRST_NAME: "Maria",
        columns.LAST_NAME: "Garcia",
        columns.CAMPUS: "Lincoln Middle School",
        columns.STATUS: "In progress",
        columns.CURRENT_STEP: "DAEP",
        columns.DATE_OF_VIOLATION: datetime(2024, 9, 10),
        columns.GRADE: 8,
        columns.DURATION_DAYS: 30.0,
        columns.DAEP_LAST_DATE: "10/25/2024",
    }
    payload = _xlsx_bytes([header, [values.get(column) for column in header]])

    (row,) = read_laserfiche_upload(payload, "daep.xlsx")

    assert isinstance(row, LaserficheRow)
    assert row.row_number == 2
    assert row.instance_id == "42"
    assert row.grade == "8"
    assert row.duration_days == "30"
    assert row.date_of_violation == date(2024, 9, 10)
    assert row.daep_last_date == date(2024, 10, 25)
    assert row.first_day_iss is None
    assert row.raw[columns.DATE_OF_VIOLATION] == "2024-09-10 00:00:00"


def test_rows_from_mappings_numbers_rows_like_a_sheet():
    rows = rows_from_mappings(
        [
            {columns.INSTANCE_ID: "INST-1", columns.FIRST_NAME: "A", columns.LAST_NAME: "B"},
            {columns.INSTANCE_ID: "INST-2", columns.FIRST_NAME: "C", columns.LAST_NAME: "D"},
        ]
    )

    assert [row.row_number for row in rows] == [2, 3]
    assert rows[1].status == ""


@pytest.mark.parametrize(
    "value, expected",
    [
        ("2024-09-10", date(2024, 9, 10)),
        ("09/10/2024", date(2024, 9, 10)),
        ("9/10/24", date(2024, 9, 10)),
        ("09/10/2024 02:15:00 PM", date(2024, 9, 10)),
        (date(2024, 9, 10), date(2024, 9, 10)),
        ("", None),
        (None, None),
        ("next tuesday", None),
    ],
)
def test_parse_date_formats(value, expected):
    assert parse_date(value) == expected
