"""Importer pipeline: validation, batched ingestion, ledger and reconciliation."""

from __future__ import annotations

from .context import ValidationContext, fetch_validation_context
from .flow import FlowState, ImportFlow, ImportOutcome, run_import
from .ingest import BatchIngestor, IngestResult, is_uniqueness_violation
from .ledger import ImportSessionLedger, ImportSessionService, SessionFilters, resolve_status
from .reconciliation import (
    LaserficheReconciler,
    ReconciliationResult,
    map_consequence_type,
    map_status,
    reconcile_laserfiche,
    synthetic_student_id,
)
from .validation import (
    CampusRecord,
    IncidentRecord,
    ProfileRecord,
    RowFailure,
    RowResult,
    RowStatus,
    StudentRecord,
    ValidationSummary,
    validate,
)

__all__ = [
    "BatchIngestor",
    "CampusRecord",
    "FlowState",
    "ImportFlow",
    "ImportOutcome",
    "ImportSessionLedger",
    "ImportSessionService",
    "IncidentRecord",
    "IngestResult",
    "LaserficheReconciler",
    "ProfileRecord",
    "ReconciliationResult",
    "RowFailure",
    "RowResult",
    "RowStatus",
    "SessionFilters",
    "StudentRecord",
    "ValidationContext",
    "ValidationSummary",
    "fetch_validation_context",
    "is_uniqueness_violation",
    "map_consequence_type",
    "map_status",
    "reconcile_laserfiche",
    "resolve_status",
    "run_import",
    "synthetic_student_id",
    "validate",
]
