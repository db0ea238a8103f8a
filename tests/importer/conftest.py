from __future__ import annotations

from datetime import date
from typing import Iterable

import pytest

from waypoint.importer import init_importer
from waypoint.models import (
    Campus,
    CampusType,
    District,
    OffenseCode,
    StaffProfile,
    StaffRole,
    Student,
    db,
)


@pytest.fixture
def importer_app(app):
    app.config.update(
        {
            "IMPORTER_ENABLED": True,
            "IMPORTER_ADAPTERS": ("spreadsheet", "laserfiche"),
            "IMPORTER_WORKER_ENABLED": True,
        }
    )
    init_importer(app)
    yield app


@pytest.fixture
def importer_client(importer_app):
    return importer_app.test_client()


@pytest.fixture
def importer_runner(importer_app):
    return importer_app.test_cli_runner()


@pytest.fixture
def district(app):
    district = District(name="Riverbend ISD", slug="riverbend")
    db.session.add(district)
    db.session.commit()
    return district


@pytest.fixture
def campus_factory(district):
    def _factory(name: str = "Lincoln Middle School", tea_campus_id: str = "101901041", **overrides) -> Campus:
        campus = Campus(
            district_id=overrides.pop("district_id", district.id),
            name=name,
            tea_campus_id=tea_campus_id,
            campus_type=overrides.pop("campus_type", CampusType.MIDDLE).value,
            **overrides,
        )
        db.session.add(campus)
        db.session.commit()
        return campus

    return _factory


@pytest.fixture
def student_factory(district):
    def _factory(
        student_id_number: str = "STU001",
        first_name: str = "Maria",
        last_name: str = "Garcia",
        **overrides,
    ) -> Student:
        student = Student(
            district_id=overrides.pop("district_id", district.id),
            student_id_number=student_id_number,
            first_name=first_name,
            last_name=last_name,
            date_of_birth=overrides.pop("date_of_birth", date(2010, 3, 15)),
            grade_level=overrides.pop("grade_level", 8),
            **overrides,
        )
        db.session.add(student)
        db.session.commit()
        return student

    return _factory


@pytest.fixture
def staff_factory(district):
    def _factory(
        email: str = "jane.smith@district.edu",
        full_name: str = "Jane Smith",
        role: StaffRole = StaffRole.TEACHER,
    ) -> StaffProfile:
        profile = StaffProfile(district_id=district.id, email=email, full_name=full_name, role=role.value)
        db.session.add(profile)
        db.session.commit()
        return profile

    return _factory


@pytest.fixture
def offense_factory(district):
    def _factory(code: str = "FIG01", description: str = "Fighting") -> OffenseCode:
        offense = OffenseCode(district_id=district.id, code=code, description=description)
        db.session.add(offense)
        db.session.commit()
        return offense

    return _factory


def write_csv(path, headers: Iterable[str], rows: Iterable[Iterable[object]]) -> str:
    """Write a small CSV fixture file and return its path as a string."""
    lines = [",".join(headers)]
    lines.extend(",".join("" if value is None else str(value) for value in row) for row in rows)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return str(path)


@pytest.fixture
def csv_writer(tmp_path):
    def _write(name: str, headers: Iterable[str], rows: Iterable[Iterable[object]]) -> str:
        return write_csv(tmp_path / name, headers, rows)

    return _write
