"""
District reference and discipline tables populated by the importer.

Natural keys are enforced with unique constraints; the ingestor relies on them
as the only guard against duplicate creation.
"""

from __future__ import annotations

import enum
from datetime import date

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db


class CampusType(str, enum.Enum):
    ELEMENTARY = "elementary"
    MIDDLE = "middle"
    HIGH = "high"
    DAEP = "daep"
    JJAEP = "jjaep"
    OTHER = "other"


class StaffRole(str, enum.Enum):
    ADMIN = "admin"
    PRINCIPAL = "principal"
    AP = "ap"
    COUNSELOR = "counselor"
    SPED_COORDINATOR = "sped_coordinator"
    TEACHER = "teacher"


class ConsequenceType(str, enum.Enum):
    WARNING = "warning"
    DETENTION = "detention"
    ISS = "iss"
    OSS = "oss"
    DAEP = "daep"
    EXPULSION = "expulsion"


class IncidentStatus(str, enum.Enum):
    """Internal lifecycle of a discipline incident."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    COMPLIANCE_HOLD = "compliance_hold"
    APPROVED = "approved"
    ACTIVE = "active"
    COMPLETED = "completed"
    APPEALED = "appealed"
    OVERTURNED = "overturned"
    PENDING_APPROVAL = "pending_approval"
    DENIED = "denied"
    RETURNED = "returned"


class District(BaseModel):
    __tablename__ = "districts"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(db.String(200), nullable=False)
    slug: Mapped[str] = mapped_column(db.String(100), unique=True, nullable=False, index=True)

    campuses = relationship("Campus", back_populates="district", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<District {self.slug}>"


class Campus(BaseModel):
    __tablename__ = "campuses"

    id: Mapped[int] = mapped_column(primary_key=True)
    district_id: Mapped[int] = mapped_column(ForeignKey("districts.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(db.String(100), nullable=False)
    tea_campus_id: Mapped[str] = mapped_column(db.String(50), nullable=False)
    campus_type: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    address: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)

    district = relationship("District", back_populates="campuses")

    __table_args__ = (
        UniqueConstraint("district_id", "tea_campus_id", name="uq_campuses_district_tea_id"),
        Index("idx_campuses_district_name", "district_id", "name"),
    )

    def __repr__(self):
        return f"<Campus {self.tea_campus_id} {self.name}>"


class Student(BaseModel):
    __tablename__ = "students"

    id: Mapped[int] = mapped_column(primary_key=True)
    district_id: Mapped[int] = mapped_column(ForeignKey("districts.id", ondelete="CASCADE"), nullable=False)
    campus_id: Mapped[int | None] = mapped_column(ForeignKey("campuses.id"), nullable=True)
    student_id_number: Mapped[str] = mapped_column(db.String(64), nullable=False)
    first_name: Mapped[str] = mapped_column(db.String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(db.String(100), nullable=False)
    date_of_birth: Mapped[date | None] = mapped_column(db.Date, nullable=True)
    grade_level: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    gender: Mapped[str | None] = mapped_column(db.String(10), nullable=True)
    race: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    is_sped: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    sped_eligibility: Mapped[str | None] = mapped_column(db.String(10), nullable=True)
    is_504: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    is_ell: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    is_homeless: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    is_foster: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    is_migrant: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)

    campus = relationship("Campus")

    __table_args__ = (
        UniqueConstraint("district_id", "student_id_number", name="uq_students_district_student_id"),
        Index("idx_students_district_name", "district_id", "last_name", "first_name"),
    )

    def __repr__(self):
        return f"<Student {self.student_id_number}>"


class StaffProfile(BaseModel):
    __tablename__ = "staff_profiles"

    id: Mapped[int] = mapped_column(primary_key=True)
    district_id: Mapped[int] = mapped_column(ForeignKey("districts.id", ondelete="CASCADE"), nullable=False)
    email: Mapped[str] = mapped_column(db.String(255), nullable=False)
    full_name: Mapped[str] = mapped_column(db.String(200), nullable=False)
    role: Mapped[str] = mapped_column(db.String(30), nullable=False)
    phone: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)

    campus_assignments = relationship(
        "CampusAssignment",
        back_populates="profile",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (UniqueConstraint("district_id", "email", name="uq_staff_profiles_district_email"),)

    def __repr__(self):
        return f"<StaffProfile {self.email}>"


class CampusAssignment(BaseModel):
    __tablename__ = "campus_assignments"

    id: Mapped[int] = mapped_column(primary_key=True)
    profile_id: Mapped[int] = mapped_column(ForeignKey("staff_profiles.id", ondelete="CASCADE"), nullable=False)
    campus_id: Mapped[int] = mapped_column(ForeignKey("campuses.id", ondelete="CASCADE"), nullable=False)

    profile = relationship("StaffProfile", back_populates="campus_assignments")
    campus = relationship("Campus")

    __table_args__ = (UniqueConstraint("profile_id", "campus_id", name="uq_campus_assignments_profile_campus"),)


class OffenseCode(BaseModel):
    __tablename__ = "offense_codes"

    id: Mapped[int] = mapped_column(primary_key=True)
    district_id: Mapped[int] = mapped_column(ForeignKey("districts.id", ondelete="CASCADE"), nullable=False)
    code: Mapped[str] = mapped_column(db.String(20), nullable=False)
    description: Mapped[str | None] = mapped_column(db.String(255), nullable=True)

    __table_args__ = (UniqueConstraint("district_id", "code", name="uq_offense_codes_district_code"),)


class Incident(BaseModel):
    __tablename__ = "incidents"

    id: Mapped[int] = mapped_column(primary_key=True)
    district_id: Mapped[int] = mapped_column(ForeignKey("districts.id", ondelete="CASCADE"), nullable=False)
    student_id: Mapped[int] = mapped_column(ForeignKey("students.id"), nullable=False, index=True)
    campus_id: Mapped[int | None] = mapped_column(ForeignKey("campuses.id"), nullable=True)
    reported_by_id: Mapped[int | None] = mapped_column(ForeignKey("staff_profiles.id"), nullable=True)
    offense_code_id: Mapped[int | None] = mapped_column(ForeignKey("offense_codes.id"), nullable=True)
    incident_date: Mapped[date] = mapped_column(db.Date, nullable=False)
    description: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    consequence_type: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    consequence_days: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    consequence_start: Mapped[date | None] = mapped_column(db.Date, nullable=True)
    consequence_end: Mapped[date | None] = mapped_column(db.Date, nullable=True)
    location: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    status: Mapped[IncidentStatus] = mapped_column(
        Enum(IncidentStatus, name="incident_status_enum"),
        nullable=False,
        default=IncidentStatus.SUBMITTED,
        index=True,
    )
    laserfiche_instance_id: Mapped[str | None] = mapped_column(db.String(100), nullable=True, index=True)
    laserfiche_step: Mapped[str | None] = mapped_column(db.String(255), nullable=True)

    student = relationship("Student")

    def __repr__(self):
        return f"<Incident {self.id} {self.status}>"
