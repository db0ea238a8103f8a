"""
Row validation for generic entity imports.

Rows arrive already projected onto template fields (see
``waypoint.importer.mapping.apply_mapping``). Every check runs for every row
so a single pass reports all problems; a row with any error is excluded from
ingestion while warnings only annotate it. The typed records produced here are
the only input the batch ingestor accepts.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any, Callable, ClassVar, Iterable, Mapping, Sequence, Tuple

from waypoint.models import CampusType, ConsequenceType, IncidentStatus, StaffRole

from ..errors import ForeignKeyUnresolvedError, RowValidationError, UnknownEntityType
from .context import ValidationContext

VALIDATION_ERROR = RowValidationError.category
FOREIGN_KEY_UNRESOLVED = ForeignKeyUnresolvedError.category

VALID_GENDERS: Tuple[str, ...] = ("M", "F", "X")
SPED_ELIGIBILITY_CODES: Tuple[str, ...] = (
    "AU",
    "DB",
    "ED",
    "HI",
    "ID",
    "LD",
    "MD",
    "NCI",
    "OHI",
    "OI",
    "SI",
    "TBI",
    "VI",
)
DAYS_REQUIRED_CONSEQUENCES = frozenset({ConsequenceType.ISS, ConsequenceType.OSS, ConsequenceType.DAEP})
MIN_GRADE_LEVEL = -1
MAX_GRADE_LEVEL = 12

_TRUE_VALUES = frozenset({"true", "yes", "1", "y"})
_EMAIL_REGEX = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_ISO_DATE_REGEX = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class RowStatus(str, enum.Enum):
    VALID = "valid"
    WARNED = "warned"
    ERRORED = "errored"


@dataclass(frozen=True)
class CampusRecord:
    entity_type: ClassVar[str] = "campuses"

    name: str
    tea_campus_id: str
    campus_type: CampusType
    address: str | None = None
    phone: str | None = None

    def column_values(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "tea_campus_id": self.tea_campus_id,
            "campus_type": self.campus_type.value,
            "address": self.address,
            "phone": self.phone,
        }


@dataclass(frozen=True)
class StudentRecord:
    entity_type: ClassVar[str] = "students"

    student_id_number: str
    first_name: str
    last_name: str
    date_of_birth: date
    grade_level: int
    campus_id: int | None = None
    gender: str | None = None
    race: str | None = None
    is_sped: bool = False
    sped_eligibility: str | None = None
    is_504: bool = False
    is_ell: bool = False
    is_homeless: bool = False
    is_foster: bool = False
    is_migrant: bool = False

    def column_values(self) -> dict[str, Any]:
        return {
            "student_id_number": self.student_id_number,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "date_of_birth": self.date_of_birth,
            "grade_level": self.grade_level,
            "campus_id": self.campus_id,
            "gender": self.gender,
            "race": self.race,
            "is_sped": self.is_sped,
            "sped_eligibility": self.sped_eligibility,
            "is_504": self.is_504,
            "is_ell": self.is_ell,
            "is_homeless": self.is_homeless,
            "is_foster": self.is_foster,
            "is_migrant": self.is_migrant,
            "is_active": True,
        }


@dataclass(frozen=True)
class ProfileRecord:
    """A staff profile plus the campuses it should be assigned to."""

    entity_type: ClassVar[str] = "profiles"

    email: str
    full_name: str
    role: StaffRole
    campus_ids: Tuple[int, ...] = ()
    phone: str | None = None

    def column_values(self) -> dict[str, Any]:
        return {
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role.value,
            "phone": self.phone,
            "is_active": True,
        }


@dataclass(frozen=True)
class IncidentRecord:
    entity_type: ClassVar[str] = "incidents"

    student_id: int
    incident_date: date
    offense_code_id: int
    description: str
    consequence_type: ConsequenceType
    reported_by_id: int
    consequence_days: int | None = None
    location: str | None = None
    status: IncidentStatus = IncidentStatus.SUBMITTED

    def column_values(self) -> dict[str, Any]:
        return {
            "student_id": self.student_id,
            "incident_date": self.incident_date,
            "offense_code_id": self.offense_code_id,
            "description": self.description,
            "consequence_type": self.consequence_type.value,
            "consequence_days": self.consequence_days,
            "location": self.location,
            "reported_by_id": self.reported_by_id,
            "status": self.status,
        }


EntityRecord = CampusRecord | StudentRecord | ProfileRecord | IncidentRecord


@dataclass(frozen=True)
class RowFailure:
    """A row that will be recorded as an ``ImportRowError``."""

    row_number: int | None
    category: str
    message: str
    row_data: Mapping[str, Any] | None = None


@dataclass(frozen=True)
class RowResult:
    row_number: int
    raw: Mapping[str, str]
    record: EntityRecord | None
    errors: Tuple[str, ...] = ()
    error_categories: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()

    @property
    def status(self) -> RowStatus:
        if self.errors or self.record is None:
            return RowStatus.ERRORED
        if self.warnings:
            return RowStatus.WARNED
        return RowStatus.VALID

    @property
    def category(self) -> str:
        return self.error_categories[0] if self.error_categories else VALIDATION_ERROR

    def to_failure(self) -> RowFailure:
        return RowFailure(
            row_number=self.row_number,
            category=self.category,
            message="; ".join(self.errors),
            row_data=dict(self.raw),
        )


@dataclass(frozen=True)
class ValidationSummary:
    """
    Partition of validated rows.

    ``valid`` includes warned rows, which are also listed in ``warnings``;
    ``errors`` holds every row excluded from ingestion.
    """

    valid: Tuple[RowResult, ...]
    errors: Tuple[RowResult, ...]
    warnings: Tuple[RowResult, ...]
    total: int

    @property
    def records(self) -> Tuple[EntityRecord, ...]:
        return tuple(result.record for result in self.valid if result.record is not None)

    def failures(self) -> Tuple[RowFailure, ...]:
        return tuple(result.to_failure() for result in self.errors)

    def as_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "valid": len(self.valid),
            "errors": len(self.errors),
            "warnings": len(self.warnings),
        }


@dataclass
class _RowChecks:
    row: Mapping[str, Any]
    errors: list[str] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def text(self, name: str) -> str:
        value = self.row.get(name)
        return "" if value is None else str(value).strip()

    def optional(self, name: str) -> str | None:
        return self.text(name) or None

    def error(self, message: str, category: str = VALIDATION_ERROR) -> None:
        self.errors.append(message)
        self.categories.append(category)

    def unresolved(self, message: str) -> None:
        self.error(message, FOREIGN_KEY_UNRESOLVED)

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def date_value(
        self,
        name: str,
        *,
        today: date,
        required_message: str,
        invalid_message: str,
        future_message: str,
    ) -> date | None:
        raw = self.text(name)
        if not raw:
            self.error(required_message)
            return None
        parsed = parse_iso_date(raw)
        if parsed is None:
            self.error(invalid_message)
            return None
        if parsed > today:
            self.error(future_message)
            return None
        return parsed


def parse_bool(value: object | None) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in _TRUE_VALUES


def parse_iso_date(value: str) -> date | None:
    """Parse a strict ``YYYY-MM-DD`` string, returning ``None`` when invalid."""
    value = value.strip()
    if not _ISO_DATE_REGEX.match(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def _parse_int(value: str) -> int | None:
    try:
        return int(value)
    except ValueError:
        try:
            as_float = float(value)
        except ValueError:
            return None
        return int(as_float) if as_float.is_integer() else None


def _enum_choices(enum_cls: type[enum.Enum]) -> str:
    return ", ".join(member.value for member in enum_cls)


def _coerce_enum(enum_cls, value: str):
    try:
        return enum_cls(value)
    except ValueError:
        return None


def _validate_campus(checks: _RowChecks, context: ValidationContext, today: date) -> CampusRecord | None:
    name = checks.text("name")
    tea_campus_id = checks.text("tea_campus_id")
    campus_type = _coerce_enum(CampusType, checks.text("campus_type").lower())

    if not name or len(name) < 2 or len(name) > 100:
        checks.error("Name is required (2-100 characters)")

    if not tea_campus_id:
        checks.error("TEA campus ID is required")
    elif tea_campus_id in context.existing_tea_ids:
        checks.warn(f'TEA campus ID "{tea_campus_id}" already exists')

    if campus_type is None:
        checks.error(f"Campus type must be one of: {_enum_choices(CampusType)}")

    if checks.errors:
        return None
    return CampusRecord(
        name=name,
        tea_campus_id=tea_campus_id,
        campus_type=campus_type,
        address=checks.optional("address"),
        phone=checks.optional("phone"),
    )


def _validate_student(checks: _RowChecks, context: ValidationContext, today: date) -> StudentRecord | None:
    student_id = checks.text("student_id_number")
    first_name = checks.text("first_name")
    last_name = checks.text("last_name")
    grade_raw = checks.text("grade_level")
    campus_name = checks.text("campus_name")
    gender = checks.text("gender").upper()
    is_sped = parse_bool(checks.row.get("is_sped"))
    sped_eligibility = checks.text("sped_eligibility").upper()

    if not student_id:
        checks.error("Student ID is required")
    elif student_id in context.existing_student_ids:
        checks.warn(f'Student ID "{student_id}" already exists')

    if not first_name:
        checks.error("First name is required")
    if not last_name:
        checks.error("Last name is required")

    date_of_birth = checks.date_value(
        "date_of_birth",
        today=today,
        required_message="Date of birth is required",
        invalid_message="Date of birth is not a valid date (use YYYY-MM-DD)",
        future_message="Date of birth cannot be a future date",
    )

    grade_level: int | None = None
    if not grade_raw:
        checks.error("Grade level is required")
    else:
        grade_level = _parse_int(grade_raw)
        if grade_level is None or not MIN_GRADE_LEVEL <= grade_level <= MAX_GRADE_LEVEL:
            checks.error("Grade level must be between -1 (Pre-K) and 12")

    campus_id: int | None = None
    if campus_name:
        campus_id = context.campus_id(campus_name)
        if campus_id is None:
            checks.unresolved(f'Campus "{campus_name}" not found')

    if gender and gender not in VALID_GENDERS:
        checks.warn(f'Gender "{gender}" is not standard (M/F/X)')

    if is_sped and not sped_eligibility:
        checks.error("SPED eligibility code is required when is_sped is TRUE")
    if sped_eligibility and sped_eligibility not in SPED_ELIGIBILITY_CODES:
        checks.error(f"Invalid SPED eligibility code. Valid: {', '.join(SPED_ELIGIBILITY_CODES)}")

    if checks.errors:
        return None
    return StudentRecord(
        student_id_number=student_id,
        first_name=first_name,
        last_name=last_name,
        date_of_birth=date_of_birth,
        grade_level=grade_level,
        campus_id=campus_id,
        gender=gender or None,
        race=checks.optional("race"),
        is_sped=is_sped,
        sped_eligibility=sped_eligibility if is_sped else None,
        is_504=parse_bool(checks.row.get("is_504")),
        is_ell=parse_bool(checks.row.get("is_ell")),
        is_homeless=parse_bool(checks.row.get("is_homeless")),
        is_foster=parse_bool(checks.row.get("is_foster")),
        is_migrant=parse_bool(checks.row.get("is_migrant")),
    )


def _validate_profile(checks: _RowChecks, context: ValidationContext, today: date) -> ProfileRecord | None:
    email = checks.text("email").lower()
    full_name = checks.text("full_name")
    role = _coerce_enum(StaffRole, checks.text("role").lower())

    if not email:
        checks.error("Email is required")
    elif not _EMAIL_REGEX.match(email):
        checks.error("Invalid email format")
    elif email in context.existing_emails:
        checks.warn(f'Email "{email}" already exists')

    if not full_name:
        checks.error("Full name is required")

    if role is None:
        checks.error(f"Role must be one of: {_enum_choices(StaffRole)}")

    campus_ids: list[int] = []
    for name in (part.strip() for part in checks.text("campus_names").split(";")):
        if not name:
            continue
        campus_id = context.campus_id(name)
        if campus_id is None:
            checks.unresolved(f'Campus "{name}" not found')
        elif campus_id not in campus_ids:
            campus_ids.append(campus_id)

    if checks.errors:
        return None
    return ProfileRecord(
        email=email,
        full_name=full_name,
        role=role,
        campus_ids=tuple(campus_ids),
        phone=checks.optional("phone"),
    )


def _validate_incident(checks: _RowChecks, context: ValidationContext, today: date) -> IncidentRecord | None:
    student_number = checks.text("student_id_number")
    offense_code = checks.text("offense_code")
    description = checks.text("description")
    consequence_type = _coerce_enum(ConsequenceType, checks.text("consequence_type").lower())
    days_raw = checks.text("consequence_days")
    reporter_email = checks.text("reported_by_email").lower()

    student_id: int | None = None
    if not student_number:
        checks.error("Student ID is required")
    else:
        student_id = context.student_id(student_number)
        if student_id is None:
            checks.unresolved(f'Student "{student_number}" not found')

    incident_date = checks.date_value(
        "incident_date",
        today=today,
        required_message="Incident date is required",
        invalid_message="Invalid date format (use YYYY-MM-DD)",
        future_message="Incident date cannot be in the future",
    )

    offense_code_id: int | None = None
    if not offense_code:
        checks.error("Offense code is required")
    else:
        offense_code_id = context.offense_id(offense_code)
        if offense_code_id is None:
            checks.unresolved(f'Offense code "{offense_code}" not found')

    if not description:
        checks.error("Description is required")

    if consequence_type is None:
        checks.error(f"Consequence type must be one of: {_enum_choices(ConsequenceType)}")

    consequence_days = _parse_int(days_raw) if days_raw else None
    if days_raw and consequence_days is None:
        checks.error("Consequence days must be a whole number")
    elif consequence_type in DAYS_REQUIRED_CONSEQUENCES and (consequence_days is None or consequence_days < 1):
        checks.error("Consequence days required for ISS, OSS, and DAEP")

    reporter_id: int | None = None
    if not reporter_email:
        checks.error("Reported by email is required")
    else:
        reporter_id = context.staff_id(reporter_email)
        if reporter_id is None:
            checks.unresolved(f'Staff member "{reporter_email}" not found')

    if checks.errors:
        return None
    return IncidentRecord(
        student_id=student_id,
        incident_date=incident_date,
        offense_code_id=offense_code_id,
        description=description,
        consequence_type=consequence_type,
        reported_by_id=reporter_id,
        consequence_days=consequence_days,
        location=checks.optional("location"),
    )


RowValidator = Callable[[_RowChecks, ValidationContext, date], "EntityRecord | None"]

VALIDATORS: Mapping[str, RowValidator] = {
    "campuses": _validate_campus,
    "students": _validate_student,
    "profiles": _validate_profile,
    "incidents": _validate_incident,
}

# Natural key attribute and its label, for entities that have one.
FILE_KEYS: Mapping[str, Tuple[str, str]] = {
    "campuses": ("tea_campus_id", "TEA campus ID"),
    "students": ("student_id_number", "Student ID"),
    "profiles": ("email", "Email"),
}


def validate_row(
    entity_type: str,
    row: Mapping[str, Any],
    context: ValidationContext,
    *,
    row_number: int,
    today: date | None = None,
) -> RowResult:
    validator = VALIDATORS.get(entity_type)
    if validator is None:
        raise UnknownEntityType(entity_type, available=VALIDATORS)
    checks = _RowChecks(row=row)
    record = validator(checks, context, today or date.today())
    return RowResult(
        row_number=row_number,
        raw={key: "" if value is None else str(value) for key, value in row.items()},
        record=None if checks.errors else record,
        errors=tuple(checks.errors),
        error_categories=tuple(checks.categories),
        warnings=tuple(checks.warnings),
    )


def validate(
    entity_type: str,
    rows: Sequence[Mapping[str, Any]] | Iterable[Mapping[str, Any]],
    context: ValidationContext,
    *,
    today: date | None = None,
) -> ValidationSummary:
    """
    Validate mapped rows against a fixed context snapshot.

    Row numbers are ``index + 2`` so they line up with spreadsheet rows once
    the header is counted. ``len(valid) + len(errors) == total`` always holds.
    A natural key repeated within the file warns on every repeat after the
    first; ingestion then resolves it by the duplicate strategy.
    """

    if entity_type not in VALIDATORS:
        raise UnknownEntityType(entity_type, available=VALIDATORS)
    today = today or date.today()

    valid: list[RowResult] = []
    errors: list[RowResult] = []
    warnings: list[RowResult] = []
    total = 0
    file_key = FILE_KEYS.get(entity_type)
    seen_keys: set[str] = set()
    for index, row in enumerate(rows):
        total += 1
        result = validate_row(entity_type, row, context, row_number=index + 2, today=today)
        if result.status is RowStatus.ERRORED:
            errors.append(result)
            continue
        if file_key is not None:
            attribute, label = file_key
            key = getattr(result.record, attribute)
            if key in seen_keys:
                message = f'{label} "{key}" appears more than once in this file'
                result = replace(result, warnings=result.warnings + (message,))
            seen_keys.add(key)
        valid.append(result)
        if result.status is RowStatus.WARNED:
            warnings.append(result)

    return ValidationSummary(valid=tuple(valid), errors=tuple(errors), warnings=tuple(warnings), total=total)


__all__ = [
    "CampusRecord",
    "EntityRecord",
    "IncidentRecord",
    "ProfileRecord",
    "RowFailure",
    "RowResult",
    "RowStatus",
    "StudentRecord",
    "ValidationSummary",
    "VALIDATORS",
    "parse_bool",
    "parse_iso_date",
    "validate",
    "validate_row",
]
