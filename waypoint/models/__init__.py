# waypoint/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .district import (
    Campus,
    CampusAssignment,
    CampusType,
    ConsequenceType,
    District,
    Incident,
    IncidentStatus,
    OffenseCode,
    StaffProfile,
    StaffRole,
    Student,
)
from .importer import (
    DuplicateStrategy,
    ExternalRecord,
    ImportRowError,
    ImportSession,
    ImportSessionStatus,
)

__all__ = [
    "db",
    "BaseModel",
    # District models
    "District",
    "Campus",
    "Student",
    "StaffProfile",
    "CampusAssignment",
    "OffenseCode",
    "Incident",
    # District enums
    "CampusType",
    "StaffRole",
    "ConsequenceType",
    "IncidentStatus",
    # Importer ledger
    "ImportSession",
    "ImportSessionStatus",
    "ImportRowError",
    "DuplicateStrategy",
    "ExternalRecord",
]
