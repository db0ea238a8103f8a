"""
Importer ledger models.
"""

from .schema import (
    DuplicateStrategy,
    ExternalRecord,
    ImportRowError,
    ImportSession,
    ImportSessionStatus,
)

__all__ = [
    "DuplicateStrategy",
    "ExternalRecord",
    "ImportRowError",
    "ImportSession",
    "ImportSessionStatus",
]
