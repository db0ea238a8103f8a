"""Reader for the Laserfiche DAEP placement export.

The export is read through the generic spreadsheet reader and then projected
onto :class:`LaserficheRow`. Dates arrive either as real workbook dates or as
text in whichever format the report was saved with.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any, Mapping, Sequence, Tuple

from ..contracts import laserfiche as columns
from ..errors import MissingRequiredColumnsError
from .spreadsheet import ParsedSheet, read_path, read_upload

_DATE_FORMATS: Tuple[str, ...] = (
    "%Y-%m-%d",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%m/%d/%Y",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %I:%M %p",
    "%m/%d/%y",
)


def parse_date(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _json_safe(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    return _text(value)


@dataclass(frozen=True)
class LaserficheRow:
    row_number: int
    instance_id: str
    first_name: str
    last_name: str
    campus: str
    status: str
    current_step: str
    current_stage: str
    grade: str
    gender: str
    duration_days: str
    date_of_violation: date | None
    referral_date: date | None
    first_day_iss: date | None
    first_day_oss: date | None
    daep_last_date: date | None
    raw: Mapping[str, str]

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any], *, row_number: int) -> "LaserficheRow":
        return cls(
            row_number=row_number,
            instance_id=_text(row.get(columns.INSTANCE_ID)),
            first_name=_text(row.get(columns.FIRST_NAME)),
            last_name=_text(row.get(columns.LAST_NAME)),
            campus=_text(row.get(columns.CAMPUS)),
            status=_text(row.get(columns.STATUS)),
            current_step=_text(row.get(columns.CURRENT_STEP)),
            current_stage=_text(row.get(columns.CURRENT_STAGE)),
            grade=_text(row.get(columns.GRADE)),
            gender=_text(row.get(columns.GENDER)),
            duration_days=_text(row.get(columns.DURATION_DAYS)),
            date_of_violation=parse_date(row.get(columns.DATE_OF_VIOLATION)),
            referral_date=parse_date(row.get(columns.REFERRAL_DATE)),
            first_day_iss=parse_date(row.get(columns.FIRST_DAY_ISS)),
            first_day_oss=parse_date(row.get(columns.FIRST_DAY_OSS)),
            daep_last_date=parse_date(row.get(columns.DAEP_LAST_DATE)),
            raw={str(key): _json_safe(value) for key, value in row.items()},
        )


def rows_from_sheet(sheet: ParsedSheet) -> Tuple[LaserficheRow, ...]:
    """
    Project a parsed export onto typed rows.

    Raises :class:`MissingRequiredColumnsError` when a key column is absent
    from the header, before any row is looked at.
    """

    missing = columns.missing_key_columns(sheet.headers)
    if missing:
        raise MissingRequiredColumnsError(missing)
    return tuple(LaserficheRow.from_mapping(row, row_number=index + 2) for index, row in enumerate(sheet.rows))


def rows_from_mappings(rows: Sequence[Mapping[str, Any]]) -> Tuple[LaserficheRow, ...]:
    headers = list(rows[0].keys()) if rows else []
    missing = columns.missing_key_columns(headers)
    if missing:
        raise MissingRequiredColumnsError(missing)
    return tuple(LaserficheRow.from_mapping(row, row_number=index + 2) for index, row in enumerate(rows))


def read_laserfiche_upload(payload: bytes, file_name: str) -> Tuple[LaserficheRow, ...]:
    return rows_from_sheet(read_upload(payload, file_name))


def read_laserfiche_path(path: str | Path) -> Tuple[LaserficheRow, ...]:
    return rows_from_sheet(read_path(path))


__all__ = [
    "LaserficheRow",
    "parse_date",
    "read_laserfiche_path",
    "read_laserfiche_upload",
    "rows_from_mappings",
    "rows_from_sheet",
]
