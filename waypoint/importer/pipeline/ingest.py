"""
Batched, idempotent writes of validated records into the district tables.

Each batch is one bulk statement inside a savepoint. Under ``upsert`` the
statement is a dialect ``INSERT ... ON CONFLICT DO UPDATE`` keyed on the
entity's natural key. Under ``skip`` it is a plain insert; when that insert
trips a uniqueness constraint the batch is retried row by row so only the
colliding rows are skipped. Any other failure errors the whole batch.
Committed batches are never rolled back.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence, Tuple

from flask import current_app, has_app_context
from sqlalchemy import delete, insert, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from waypoint.models import Campus, CampusAssignment, DuplicateStrategy, Incident, StaffProfile, Student, db

from .. import metrics
from ..errors import BatchWriteError, UnknownEntityType
from .validation import (
    CampusRecord,
    EntityRecord,
    IncidentRecord,
    ProfileRecord,
    RowFailure,
    RowResult,
    StudentRecord,
)

DEFAULT_BATCH_SIZE = 500

ProgressCallback = Callable[[int, int], None]
CancelCheck = Callable[[], bool]
AfterWrite = Callable[[Session, int, Sequence[EntityRecord]], None]


def commit_batch() -> None:
    if has_app_context() and current_app.config.get("TESTING"):
        db.session.flush()
    else:
        db.session.commit()


def is_uniqueness_violation(exc: BaseException) -> bool:
    """True when ``exc`` is a unique-constraint failure on SQLite or PostgreSQL."""

    orig = getattr(exc, "orig", None) or exc
    if getattr(orig, "pgcode", None) == "23505" or getattr(orig, "sqlstate", None) == "23505":
        return True
    return "UNIQUE constraint failed" in str(orig)


def _replace_campus_assignments(session: Session, district_id: int, records: Sequence[EntityRecord]) -> None:
    # The last row for an email decides its campuses, as with the upserted columns.
    latest = {record.email: record for record in records if isinstance(record, ProfileRecord)}
    profiles = list(latest.values())
    if not profiles:
        return
    ids_by_email = dict(
        session.execute(
            select(StaffProfile.email, StaffProfile.id).where(
                StaffProfile.district_id == district_id,
                StaffProfile.email.in_([profile.email for profile in profiles]),
            )
        ).all()
    )
    profile_ids = [ids_by_email[profile.email] for profile in profiles if profile.email in ids_by_email]
    if not profile_ids:
        return
    session.execute(delete(CampusAssignment).where(CampusAssignment.profile_id.in_(profile_ids)))
    assignments = [
        {"profile_id": ids_by_email[profile.email], "campus_id": campus_id}
        for profile in profiles
        if profile.email in ids_by_email
        for campus_id in profile.campus_ids
    ]
    if assignments:
        session.execute(insert(CampusAssignment.__table__), assignments)


@dataclass(frozen=True)
class EntityWriter:
    """
    Describes how records of one entity type land in their table.

    ``natural_key`` names the unique columns (besides ``district_id``) used for
    conflict detection; an empty key means rows are always inserted.
    """

    entity_type: str
    model: type
    record_type: type
    natural_key: Tuple[str, ...] = ()
    after_write: AfterWrite | None = None

    @property
    def conflict_columns(self) -> Tuple[str, ...]:
        if not self.natural_key:
            return ()
        return ("district_id",) + self.natural_key

    def values(self, record: EntityRecord, district_id: int) -> dict[str, Any]:
        if not isinstance(record, self.record_type):
            raise TypeError(
                f"{self.entity_type} ingestion expects {self.record_type.__name__}, got {type(record).__name__}."
            )
        payload = record.column_values()
        payload["district_id"] = district_id
        return payload

    def key_of(self, values: Mapping[str, Any]) -> Tuple[Any, ...]:
        return tuple(values[column] for column in self.conflict_columns)


WRITERS: Mapping[str, EntityWriter] = {
    "campuses": EntityWriter("campuses", Campus, CampusRecord, ("tea_campus_id",)),
    "students": EntityWriter("students", Student, StudentRecord, ("student_id_number",)),
    "profiles": EntityWriter(
        "profiles",
        StaffProfile,
        ProfileRecord,
        ("email",),
        after_write=_replace_campus_assignments,
    ),
    "incidents": EntityWriter("incidents", Incident, IncidentRecord),
}


def get_writer(entity_type: str) -> EntityWriter:
    try:
        return WRITERS[entity_type]
    except KeyError:
        raise UnknownEntityType(entity_type, available=WRITERS) from None


@dataclass(frozen=True)
class IngestResult:
    success_count: int
    error_count: int
    skipped_count: int
    errors: Tuple[RowFailure, ...] = ()
    batches_attempted: int = 0
    degraded_batches: Tuple[int, ...] = ()
    cancelled: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "success_count": self.success_count,
            "error_count": self.error_count,
            "skipped_count": self.skipped_count,
            "batches_attempted": self.batches_attempted,
            "degraded_batches": list(self.degraded_batches),
            "cancelled": self.cancelled,
        }


@dataclass
class _BatchOutcome:
    success: int = 0
    skipped: int = 0
    errors: list[RowFailure] = field(default_factory=list)
    degraded: bool = False


class BatchIngestor:
    """
    Write validated rows for a single district in fixed-size batches.

    One ingestor processes one run sequentially; it holds no state between
    calls to :meth:`ingest`.
    """

    def __init__(
        self,
        district_id: int,
        *,
        session: Session | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.district_id = district_id
        self.session = session or db.session
        self.logger = logger or (current_app.logger if has_app_context() else logging.getLogger(__name__))

    def ingest(
        self,
        entity_type: str,
        rows: Sequence[RowResult],
        strategy: DuplicateStrategy | str = DuplicateStrategy.SKIP,
        batch_size: int = DEFAULT_BATCH_SIZE,
        on_progress: ProgressCallback | None = None,
        should_cancel: CancelCheck | None = None,
    ) -> IngestResult:
        writer = get_writer(entity_type)
        strategy = DuplicateStrategy(strategy)
        batch_size = max(1, int(batch_size))
        rows = [row for row in rows if row.record is not None]
        total = len(rows)

        success = skipped = 0
        errors: list[RowFailure] = []
        degraded: list[int] = []
        batches_attempted = 0
        cancelled = False

        for batch_number, start in enumerate(range(0, total, batch_size), start=1):
            if should_cancel is not None and should_cancel():
                cancelled = True
                self.logger.info(
                    "Import cancelled before batch %s",
                    batch_number,
                    extra={"importer_entity_type": entity_type, "importer_rows_remaining": total - start},
                )
                break

            batch = rows[start : start + batch_size]
            batches_attempted += 1
            started = time.perf_counter()
            outcome = self._write_batch(writer, batch, strategy, batch_number)
            commit_batch()
            elapsed = time.perf_counter() - started

            success += outcome.success
            skipped += outcome.skipped
            errors.extend(outcome.errors)
            if outcome.degraded:
                degraded.append(batch_number)
            metrics.record_batch(entity_type=entity_type, duration_seconds=elapsed, degraded=outcome.degraded)
            self.logger.debug(
                "Import batch %s written",
                batch_number,
                extra={
                    "importer_entity_type": entity_type,
                    "importer_batch_rows": len(batch),
                    "importer_batch_success": outcome.success,
                    "importer_batch_skipped": outcome.skipped,
                    "importer_batch_errors": len(outcome.errors),
                    "importer_batch_degraded": outcome.degraded,
                },
            )
            if on_progress is not None:
                on_progress(min(start + len(batch), total), total)

        metrics.record_rows(entity_type, "success", success)
        metrics.record_rows(entity_type, "skipped", skipped)
        metrics.record_rows(entity_type, "error", len(errors))

        return IngestResult(
            success_count=success,
            error_count=len(errors),
            skipped_count=skipped,
            errors=tuple(errors),
            batches_attempted=batches_attempted,
            degraded_batches=tuple(degraded),
            cancelled=cancelled,
        )

    # Batch writes -------------------------------------------------------------

    def _write_batch(
        self,
        writer: EntityWriter,
        batch: Sequence[RowResult],
        strategy: DuplicateStrategy,
        batch_number: int,
    ) -> _BatchOutcome:
        values = [writer.values(row.record, self.district_id) for row in batch]
        records = [row.record for row in batch]
        try:
            with self.session.begin_nested():
                self._execute(writer, values, strategy)
                if writer.after_write is not None:
                    writer.after_write(self.session, self.district_id, records)
            return _BatchOutcome(success=len(batch))
        except BatchWriteError as exc:
            return self._fail_batch(batch, batch_number, exc)
        except IntegrityError as exc:
            if strategy is DuplicateStrategy.SKIP and writer.natural_key and is_uniqueness_violation(exc):
                self.logger.info(
                    "Batch %s hit a uniqueness conflict; retrying row by row",
                    batch_number,
                    extra={"importer_entity_type": writer.entity_type},
                )
                return self._write_rows(writer, batch, values)
            return self._fail_batch(batch, batch_number, exc)
        except SQLAlchemyError as exc:
            return self._fail_batch(batch, batch_number, exc)

    def _execute(self, writer: EntityWriter, values: Sequence[Mapping[str, Any]], strategy: DuplicateStrategy) -> None:
        table = writer.model.__table__
        if strategy is DuplicateStrategy.SKIP or not writer.natural_key:
            self.session.execute(insert(table), list(values))
            return

        # Later rows win when a file repeats a natural key within one batch.
        deduplicated = list({writer.key_of(row): row for row in values}.values())
        dialect = self._dialect_name()
        if dialect == "postgresql":
            stmt = postgresql.insert(table)
        elif dialect == "sqlite":
            stmt = sqlite.insert(table)
        else:
            raise BatchWriteError(f"Upsert is not supported on the '{dialect}' database dialect.")
        update_columns = {
            column: stmt.excluded[column]
            for column in deduplicated[0]
            if column not in writer.conflict_columns
        }
        update_columns["updated_at"] = datetime.now(timezone.utc)
        stmt = stmt.on_conflict_do_update(index_elements=list(writer.conflict_columns), set_=update_columns)
        self.session.execute(stmt, deduplicated)

    def _dialect_name(self) -> str:
        return self.session.get_bind().dialect.name

    def _write_rows(
        self,
        writer: EntityWriter,
        batch: Sequence[RowResult],
        values: Sequence[Mapping[str, Any]],
    ) -> _BatchOutcome:
        outcome = _BatchOutcome(degraded=True)
        table = writer.model.__table__
        for row, row_values in zip(batch, values):
            try:
                with self.session.begin_nested():
                    self.session.execute(insert(table), [dict(row_values)])
                    if writer.after_write is not None:
                        writer.after_write(self.session, self.district_id, [row.record])
            except IntegrityError as exc:
                if is_uniqueness_violation(exc):
                    outcome.skipped += 1
                    continue
                outcome.errors.append(_row_failure(row, exc))
            except SQLAlchemyError as exc:
                outcome.errors.append(_row_failure(row, exc))
            else:
                outcome.success += 1
        return outcome

    def _fail_batch(self, batch: Sequence[RowResult], batch_number: int, exc: Exception) -> _BatchOutcome:
        error = BatchWriteError(
            _short_message(exc),
            batch_number=batch_number,
            row_numbers=[row.row_number for row in batch],
        )
        self.logger.warning(
            "Import batch %s failed: %s",
            batch_number,
            error,
            extra={"importer_batch_rows": len(batch)},
        )
        return _BatchOutcome(errors=[_row_failure(row, error) for row in batch])


def _short_message(exc: BaseException) -> str:
    orig = getattr(exc, "orig", None)
    return str(orig) if orig is not None else str(exc)


def _row_failure(row: RowResult, exc: BaseException) -> RowFailure:
    return RowFailure(
        row_number=row.row_number,
        category=BatchWriteError.category,
        message=_short_message(exc),
        row_data=dict(row.raw),
    )


__all__ = [
    "BatchIngestor",
    "DEFAULT_BATCH_SIZE",
    "EntityWriter",
    "IngestResult",
    "WRITERS",
    "commit_batch",
    "get_writer",
    "is_uniqueness_violation",
]
