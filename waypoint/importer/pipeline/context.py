"""
Read-only reference snapshot used to validate one import session.

The context is fetched once before validation starts and is never refreshed,
so a long-running import validates against the data as it was at fetch time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from waypoint.models import Campus, OffenseCode, StaffProfile, Student, db


def _frozen(mapping: dict) -> Mapping:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class ValidationContext:
    district_id: int
    campus_ids_by_name: Mapping[str, int] = field(default_factory=lambda: _frozen({}))
    existing_tea_ids: frozenset[str] = frozenset()
    existing_student_ids: frozenset[str] = frozenset()
    student_ids_by_number: Mapping[str, int] = field(default_factory=lambda: _frozen({}))
    existing_emails: frozenset[str] = frozenset()
    staff_ids_by_email: Mapping[str, int] = field(default_factory=lambda: _frozen({}))
    offense_ids_by_code: Mapping[str, int] = field(default_factory=lambda: _frozen({}))

    def campus_id(self, name: str) -> int | None:
        return self.campus_ids_by_name.get(name.strip().lower())

    def student_id(self, student_id_number: str) -> int | None:
        return self.student_ids_by_number.get(student_id_number.strip())

    def staff_id(self, email: str) -> int | None:
        return self.staff_ids_by_email.get(email.strip().lower())

    def offense_id(self, code: str) -> int | None:
        return self.offense_ids_by_code.get(code.strip().upper())


def fetch_validation_context(
    entity_type: str,
    district_id: int,
    *,
    session: Session | None = None,
) -> ValidationContext:
    """
    Snapshot the reference data needed to validate ``entity_type`` rows.

    Campuses are always loaded; the remaining lookups are only fetched for the
    entity types that consult them.
    """

    session = session or db.session
    campus_rows = session.execute(
        select(Campus.id, Campus.name, Campus.tea_campus_id).where(Campus.district_id == district_id)
    ).all()
    campus_ids_by_name = {name.strip().lower(): campus_id for campus_id, name, _ in campus_rows}
    existing_tea_ids = frozenset(tea_id for _, _, tea_id in campus_rows)

    student_ids_by_number: dict[str, int] = {}
    if entity_type in {"students", "incidents"}:
        student_ids_by_number = {
            number: student_id
            for student_id, number in session.execute(
                select(Student.id, Student.student_id_number).where(Student.district_id == district_id)
            ).all()
        }

    staff_ids_by_email: dict[str, int] = {}
    if entity_type in {"profiles", "incidents"}:
        staff_ids_by_email = {
            email.lower(): profile_id
            for profile_id, email in session.execute(
                select(StaffProfile.id, StaffProfile.email).where(StaffProfile.district_id == district_id)
            ).all()
        }

    offense_ids_by_code: dict[str, int] = {}
    if entity_type == "incidents":
        offense_ids_by_code = {
            code.upper(): offense_id
            for offense_id, code in session.execute(
                select(OffenseCode.id, OffenseCode.code).where(OffenseCode.district_id == district_id)
            ).all()
        }

    return ValidationContext(
        district_id=district_id,
        campus_ids_by_name=_frozen(campus_ids_by_name),
        existing_tea_ids=existing_tea_ids,
        existing_student_ids=frozenset(student_ids_by_number),
        student_ids_by_number=_frozen(student_ids_by_number),
        existing_emails=frozenset(staff_ids_by_email),
        staff_ids_by_email=_frozen(staff_ids_by_email),
        offense_ids_by_code=_frozen(offense_ids_by_code),
    )
