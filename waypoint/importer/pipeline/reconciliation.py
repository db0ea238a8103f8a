"""
Reconciliation of the Laserfiche DAEP export against district incidents.

Each export row describes one placement case keyed by its Laserfiche instance
id. The case is matched to a student by name (creating the student under a
deterministic synthetic id when needed) and upserted as an incident. The
instance id -> incident link is remembered in ``ExternalRecord`` so repeated
imports of the same report update the same incident instead of duplicating it.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Mapping, Sequence, Tuple

from flask import current_app, has_app_context
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from waypoint.models import (
    Campus,
    ConsequenceType,
    DuplicateStrategy,
    ExternalRecord,
    Incident,
    IncidentStatus,
    Student,
    db,
)

from .. import metrics
from ..adapters.laserfiche import LaserficheRow
from ..contracts.laserfiche import EXTERNAL_SYSTEM, IMPORT_TYPE
from ..errors import ImporterError
from .ingest import DEFAULT_BATCH_SIZE, commit_batch
from .ledger import ImportSessionLedger
from .validation import RowFailure

INCIDENT_ENTITY = "incidents"
VALID_GENDERS = frozenset({"M", "F", "X"})
_WHITESPACE = re.compile(r"\s+")


def map_status(status: str | None, current_step: str | None) -> IncidentStatus:
    """
    Translate a Laserfiche status and workflow step into an incident status.

    Rules are evaluated top to bottom; the first match wins. Anything still in
    progress that no rule recognises is ``under_review``.
    """

    status_text = (status or "").strip().lower()
    step = (current_step or "").strip().lower()

    if "terminate" in status_text:
        return IncidentStatus.OVERTURNED
    if status_text == "completed":
        return IncidentStatus.COMPLETED
    if step == "daep":
        return IncidentStatus.ACTIVE
    if "correction" in step or "cbc" in step:
        return IncidentStatus.RETURNED
    return IncidentStatus.UNDER_REVIEW


def map_consequence_type(row: LaserficheRow) -> ConsequenceType:
    """Infer the consequence from the populated date columns (DAEP > OSS > ISS)."""

    step = row.current_step.lower()
    stage = row.current_stage.lower()
    if row.daep_last_date is not None or "daep" in step or "daep" in stage:
        return ConsequenceType.DAEP
    if row.first_day_oss is not None:
        return ConsequenceType.OSS
    if row.first_day_iss is not None:
        return ConsequenceType.ISS
    return ConsequenceType.DAEP


def parse_grade(value: str | None) -> int:
    try:
        grade = int(float((value or "").strip()))
    except (ValueError, OverflowError):
        return 0
    return max(-1, min(12, grade))


def parse_gender(value: str | None) -> str | None:
    gender = (value or "").strip().upper()
    return gender if gender in VALID_GENDERS else None


def parse_days(value: str | None) -> int | None:
    try:
        days = int(float((value or "").strip()))
    except (ValueError, OverflowError):
        return None
    return days or None


def synthetic_student_id(first_name: str, last_name: str, grade: int | None) -> str:
    """Stable student id for students first seen in the Laserfiche export."""

    first = _WHITESPACE.sub("_", (first_name or "").strip().upper())
    last = _WHITESPACE.sub("_", (last_name or "").strip().upper())
    return f"LF-{last}-{first}-G{grade if grade is not None else 0}"


def _name_key(first_name: str, last_name: str) -> str:
    return f"{first_name.strip().lower()}|{last_name.strip().lower()}"


@dataclass(frozen=True)
class ReconciliationResult:
    success_count: int
    error_count: int
    skipped_count: int
    errors: Tuple[RowFailure, ...] = ()
    batches_attempted: int = 0
    degraded_batches: Tuple[int, ...] = ()
    cancelled: bool = False
    students_created: int = 0
    incidents_created: int = 0
    incidents_updated: int = 0
    session_id: int | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "skipped_count": self.skipped_count,
            "batches_attempted": self.batches_attempted,
            "cancelled": self.cancelled,
            "students_created": self.students_created,
            "incidents_created": self.incidents_created,
            "incidents_updated": self.incidents_updated,
        }


@dataclass
class _Tally:
    success: int = 0
    skipped: int = 0
    errors: list[RowFailure] = field(default_factory=list)
    students_created: int = 0
    incidents_created: int = 0
    incidents_updated: int = 0


class _RowRejected(ImporterError):
    """A row cannot be reconciled; recorded as a per-row error."""


class LaserficheReconciler:
    """
    Apply Laserfiche rows for one district.

    Lookup maps are fetched once per run and extended as students and
    incidents are created, so a name appearing twice in one export resolves
    to the same student.
    """

    def __init__(
        self,
        district_id: int,
        *,
        session: Session | None = None,
        logger: logging.Logger | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.district_id = district_id
        self.session = session or db.session
        self.logger = logger or (current_app.logger if has_app_context() else logging.getLogger(__name__))
        self.today = today
        self._campus_ids: dict[str, int] = {}
        self._student_ids: dict[str, int] = {}
        self._external_records: dict[str, ExternalRecord] = {}
        self._legacy_incident_ids: dict[str, int] = {}

    def reconcile(
        self,
        rows: Sequence[LaserficheRow],
        *,
        session_id: int | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        on_progress: Callable[[int, int], None] | None = None,
        should_cancel: Callable[[], bool] | None = None,
    ) -> ReconciliationResult:
        self._prefetch()
        tally = _Tally()
        total = len(rows)
        batch_size = max(1, int(batch_size))
        batches = 0
        cancelled = False

        for index, row in enumerate(rows):
            if index % batch_size == 0:
                if should_cancel is not None and should_cancel():
                    cancelled = True
                    break
                batches += 1
            self._reconcile_row(row, tally, session_id=session_id)
            if (index + 1) % batch_size == 0 or index + 1 == total:
                commit_batch()
            if on_progress is not None:
                on_progress(index + 1, total)

        return ReconciliationResult(
            success_count=tally.success,
            error_count=len(tally.errors),
            skipped_count=tally.skipped,
            errors=tuple(tally.errors),
            batches_attempted=batches,
            cancelled=cancelled,
            students_created=tally.students_created,
            incidents_created=tally.incidents_created,
            incidents_updated=tally.incidents_updated,
            session_id=session_id,
        )

    # Lookups -------------------------------------------------------------------

    def _prefetch(self) -> None:
        district_id = self.district_id
        self._campus_ids = {
            name.strip().lower(): campus_id
            for campus_id, name in self.session.execute(
                select(Campus.id, Campus.name).where(Campus.district_id == district_id)
            ).all()
        }
        self._student_ids = {}
        for student_id, first_name, last_name in self.session.execute(
            select(Student.id, Student.first_name, Student.last_name)
            .where(Student.district_id == district_id)
            .order_by(Student.id)
        ).all():
            self._student_ids.setdefault(_name_key(first_name, last_name), student_id)
        self._external_records = {
            record.external_id: record
            for record in self.session.scalars(
                select(ExternalRecord).where(
                    ExternalRecord.district_id == district_id,
                    ExternalRecord.external_system == EXTERNAL_SYSTEM,
                    ExternalRecord.entity_type == INCIDENT_ENTITY,
                )
            )
        }
        self._legacy_incident_ids = {
            instance_id: incident_id
            for incident_id, instance_id in self.session.execute(
                select(Incident.id, Incident.laserfiche_instance_id).where(
                    Incident.district_id == district_id,
                    Incident.laserfiche_instance_id.is_not(None),
                )
            ).all()
        }

    # Rows ----------------------------------------------------------------------

    def _reconcile_row(self, row: LaserficheRow, tally: _Tally, *, session_id: int | None) -> None:
        if not row.instance_id:
            tally.skipped += 1
            metrics.record_reconciliation_row(EXTERNAL_SYSTEM, "skipped")
            return

        try:
            with self.session.begin_nested():
                created, student_created = self._apply(row, session_id=session_id)
        except _RowRejected as exc:
            self._record_error(row, tally, str(exc))
            return
        except SQLAlchemyError as exc:
            message = str(getattr(exc, "orig", None) or exc)
            self.logger.warning(
                "Laserfiche row %s failed: %s",
                row.row_number,
                message,
                extra={"importer_session_id": session_id, "importer_external_id": row.instance_id},
            )
            self._record_error(row, tally, message)
            # Identity maps may point at rows rolled back with the savepoint.
            self._prefetch()
            return
        except Exception as exc:
            self.logger.error(
                "Laserfiche row %s raised an unexpected error",
                row.row_number,
                exc_info=True,
                extra={"importer_session_id": session_id, "importer_external_id": row.instance_id},
            )
            self._record_error(row, tally, f"Unexpected error: {exc}")
            self._prefetch()
            return

        tally.success += 1
        if student_created:
            tally.students_created += 1
        if created:
            tally.incidents_created += 1
        else:
            tally.incidents_updated += 1
        metrics.record_reconciliation_row(EXTERNAL_SYSTEM, "created" if created else "updated")

    def _record_error(self, row: LaserficheRow, tally: _Tally, message: str) -> None:
        tally.errors.append(
            RowFailure(
                row_number=row.row_number,
                category=ImporterError.category,
                message=message,
                row_data=dict(row.raw),
            )
        )
        metrics.record_reconciliation_row(EXTERNAL_SYSTEM, "error")

    def _apply(self, row: LaserficheRow, *, session_id: int | None) -> tuple[bool, bool]:
        if not row.first_name or not row.last_name:
            raise _RowRejected("Missing student name")

        campus_id = self._campus_ids.get(row.campus.lower()) if row.campus else None
        student_id, student_created = self._resolve_student(row, campus_id)

        status = map_status(row.status, row.current_step)
        values = {
            "student_id": student_id,
            "campus_id": campus_id,
            "laserfiche_instance_id": row.instance_id,
            "laserfiche_step": row.current_step or None,
            "incident_date": row.date_of_violation or row.referral_date or self.today(),
            "status": status,
            "consequence_type": map_consequence_type(row).value,
            "consequence_days": parse_days(row.duration_days),
            "consequence_start": row.first_day_iss or row.first_day_oss,
            "consequence_end": row.daep_last_date,
            "description": f"Imported from Laserfiche: Instance {row.instance_id}",
        }

        incident = self._existing_incident(row.instance_id)
        created = incident is None
        if incident is None:
            incident = Incident(district_id=self.district_id, **values)
            self.session.add(incident)
            self.session.flush()
        else:
            for attribute, value in values.items():
                setattr(incident, attribute, value)

        record = self._external_records.get(row.instance_id)
        if record is None:
            record = ExternalRecord(
                district_id=self.district_id,
                external_system=EXTERNAL_SYSTEM,
                external_id=row.instance_id,
                entity_type=INCIDENT_ENTITY,
                entity_id=incident.id,
            )
            self.session.add(record)
            self._external_records[row.instance_id] = record
        record.subject_id = student_id
        record.mark_seen(session_id=session_id, status=row.status or None, step=row.current_step or None)
        self.session.flush()
        return created, student_created

    def _existing_incident(self, instance_id: str) -> Incident | None:
        record = self._external_records.get(instance_id)
        incident_id = record.entity_id if record is not None else self._legacy_incident_ids.get(instance_id)
        if incident_id is None:
            return None
        return self.session.get(Incident, incident_id)

    def _resolve_student(self, row: LaserficheRow, campus_id: int | None) -> tuple[int, bool]:
        key = _name_key(row.first_name, row.last_name)
        student_id = self._student_ids.get(key)
        if student_id is not None:
            return student_id, False

        if campus_id is None:
            raise _RowRejected(f'Campus "{row.campus}" not found; cannot create student. Add the campus first.')

        grade = parse_grade(row.grade)
        student_number = synthetic_student_id(row.first_name, row.last_name, grade)
        student = self.session.scalars(
            select(Student).where(
                Student.district_id == self.district_id,
                Student.student_id_number == student_number,
            )
        ).first()
        created = student is None
        if student is None:
            student = Student(
                district_id=self.district_id,
                student_id_number=student_number,
                is_active=True,
            )
            self.session.add(student)
        student.campus_id = campus_id
        student.first_name = row.first_name
        student.last_name = row.last_name
        student.grade_level = grade
        student.gender = parse_gender(row.gender)
        self.session.flush()

        self._student_ids[key] = student.id
        return student.id, created


def reconcile_laserfiche(
    rows: Sequence[LaserficheRow],
    *,
    district_id: int,
    file_name: str | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    on_progress: Callable[[int, int], None] | None = None,
    should_cancel: Callable[[], bool] | None = None,
    ledger: ImportSessionLedger | None = None,
    session: Session | None = None,
) -> ReconciliationResult:
    """
    Run a full reconciliation for already-parsed rows under one ledger session.

    Column-contract failures surface while the rows are parsed, so by the time
    this runs a session can always be opened.
    """

    ledger = ledger or ImportSessionLedger(session)
    session_id = ledger.open(
        INCIDENT_ENTITY,
        file_name,
        len(rows),
        DuplicateStrategy.UPSERT,
        None,
        district_id,
        import_type=IMPORT_TYPE,
    )
    reconciler = LaserficheReconciler(district_id, session=session)
    try:
        result = reconciler.reconcile(
            rows,
            session_id=session_id,
            batch_size=batch_size,
            on_progress=on_progress,
            should_cancel=should_cancel,
        )
    except Exception as exc:
        ledger.fail(session_id, str(exc))
        raise

    ledger.close(
        session_id,
        result.success_count,
        result.error_count,
        result.skipped_count,
        errors=result.errors,
        cancelled=result.cancelled,
        metrics_payload=_metrics_payload(result),
    )
    return result


def _metrics_payload(result: ReconciliationResult) -> Mapping[str, Any]:
    payload = result.as_dict()
    payload.pop("session_id", None)
    return {"reconciliation": payload}


__all__ = [
    "LaserficheReconciler",
    "ReconciliationResult",
    "map_consequence_type",
    "map_status",
    "parse_gender",
    "parse_grade",
    "synthetic_student_id",
    "reconcile_laserfiche",
]
