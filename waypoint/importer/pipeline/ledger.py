"""
Import session ledger and history queries.

Every run (generic or reconciliation) opens exactly one ``ImportSession`` before
touching domain tables and closes it with final counts. The audit row is always
committed so it survives a rollback of the data it describes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Sequence

from flask import current_app, has_app_context
from sqlalchemy import and_, func
from sqlalchemy.exc import NoResultFound, SQLAlchemyError
from sqlalchemy.orm import Session

from waypoint.models import DuplicateStrategy, ImportRowError, ImportSession, ImportSessionStatus, db

from .. import metrics
from ..errors import SessionLedgerError
from .validation import RowFailure

GENERIC_IMPORT_TYPE = "generic"
ERROR_SUMMARY_LIMIT = 5


def resolve_status(success_count: int, error_count: int, *, cancelled: bool = False) -> ImportSessionStatus:
    """
    Terminal status for a run's final counts.

    A cancelled run is ``partial`` when anything was written, else ``failed``.
    """

    if cancelled:
        return ImportSessionStatus.PARTIAL if success_count > 0 else ImportSessionStatus.FAILED
    if error_count == 0:
        return ImportSessionStatus.COMPLETED
    if success_count > 0:
        return ImportSessionStatus.PARTIAL
    return ImportSessionStatus.FAILED


def _summarize_errors(failures: Sequence[RowFailure]) -> str | None:
    if not failures:
        return None
    lines = []
    for failure in failures[:ERROR_SUMMARY_LIMIT]:
        prefix = f"Row {failure.row_number}: " if failure.row_number is not None else ""
        lines.append(f"{prefix}{failure.message}")
    remaining = len(failures) - ERROR_SUMMARY_LIMIT
    if remaining > 0:
        lines.append(f"... and {remaining} more")
    return "\n".join(lines)


class ImportSessionLedger:
    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def open(
        self,
        entity_type: str,
        file_name: str | None,
        total_rows: int,
        strategy: DuplicateStrategy | str,
        mapping: Mapping[str, str | None] | None,
        district_id: int,
        import_type: str = GENERIC_IMPORT_TYPE,
    ) -> int:
        """Create a ``processing`` session and return its id."""

        import_session = ImportSession(
            district_id=district_id,
            entity_type=entity_type,
            import_type=import_type,
            file_name=file_name,
            duplicate_strategy=DuplicateStrategy(strategy),
            column_mapping=dict(mapping) if mapping is not None else None,
            total_rows=total_rows,
            status=ImportSessionStatus.PROCESSING,
        )
        try:
            self.session.add(import_session)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise SessionLedgerError(f"Could not create import session: {exc}") from exc

        if has_app_context():
            current_app.logger.info(
                "Import session %s opened",
                import_session.id,
                extra={
                    "importer_session_id": import_session.id,
                    "importer_entity_type": entity_type,
                    "importer_import_type": import_type,
                    "importer_total_rows": total_rows,
                },
            )
        return import_session.id

    def close(
        self,
        session_id: int,
        success_count: int,
        error_count: int,
        skipped_count: int,
        errors: Iterable[RowFailure] = (),
        validation_errors: Iterable[RowFailure] = (),
        *,
        cancelled: bool = False,
        metrics_payload: Mapping[str, Any] | None = None,
    ) -> ImportSession:
        """
        Finalize a session with its counts and per-row failures.

        ``error_count`` is the ingest-time count; validation failures are added
        to it so the stored count matches the recorded error rows.
        """

        import_session = self._load(session_id)
        if import_session.status.is_terminal:
            raise SessionLedgerError(
                f"Import session {session_id} is already {import_session.status.value} and cannot be closed again."
            )

        validation_errors = tuple(validation_errors)
        failures = sorted(
            validation_errors + tuple(errors),
            key=lambda item: (item.row_number is None, item.row_number or 0),
        )
        stored_errors = error_count + len(validation_errors)
        status = resolve_status(success_count, stored_errors, cancelled=cancelled)

        for failure in failures:
            self.session.add(
                ImportRowError(
                    session_id=import_session.id,
                    row_number=failure.row_number,
                    error_type=failure.category,
                    error_message=failure.message,
                    row_data=dict(failure.row_data) if failure.row_data is not None else None,
                )
            )

        import_session.success_count = success_count
        import_session.error_count = stored_errors
        import_session.skipped_count = skipped_count
        import_session.status = status
        import_session.completed_at = datetime.now(timezone.utc)
        summary = _summarize_errors(failures)
        if cancelled:
            summary = "Import cancelled before all rows were processed." + (f"\n{summary}" if summary else "")
        import_session.error_summary = summary
        if metrics_payload is not None:
            import_session.metrics_json = dict(metrics_payload)

        self._commit(session_id)
        metrics.record_session_closed(import_session.entity_type, status.value)
        if has_app_context():
            current_app.logger.info(
                "Import session %s closed as %s",
                session_id,
                status.value,
                extra={
                    "importer_session_id": session_id,
                    "importer_success_count": success_count,
                    "importer_error_count": stored_errors,
                    "importer_skipped_count": skipped_count,
                },
            )
        return import_session

    def fail(self, session_id: int, message: str) -> ImportSession:
        """
        Mark a session ``failed`` after an unexpected exception.

        Pending work in the database session is rolled back first. A session
        that already reached a terminal state is returned unchanged.
        """

        self.session.rollback()
        import_session = self._load(session_id)
        if import_session.status.is_terminal:
            if has_app_context():
                current_app.logger.warning(
                    "Import session %s already %s; not marking failed",
                    session_id,
                    import_session.status.value,
                    extra={"importer_session_id": session_id},
                )
            return import_session

        import_session.status = ImportSessionStatus.FAILED
        import_session.completed_at = datetime.now(timezone.utc)
        import_session.error_summary = message
        self._commit(session_id)
        metrics.record_session_closed(import_session.entity_type, ImportSessionStatus.FAILED.value)
        if has_app_context():
            current_app.logger.error(
                "Import session %s failed: %s",
                session_id,
                message,
                extra={"importer_session_id": session_id},
            )
        return import_session

    def _load(self, session_id: int) -> ImportSession:
        import_session = self.session.get(ImportSession, session_id)
        if import_session is None:
            raise SessionLedgerError(f"Import session {session_id} not found.")
        return import_session

    def _commit(self, session_id: int) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise SessionLedgerError(f"Could not update import session {session_id}: {exc}") from exc


# History queries ---------------------------------------------------------------

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100
DEFAULT_SORT = "-created_at"

VALID_SORT_FIELDS = {
    "id": ImportSession.id,
    "entity_type": ImportSession.entity_type,
    "status": ImportSession.status,
    "created_at": ImportSession.created_at,
    "completed_at": ImportSession.completed_at,
    "total_rows": ImportSession.total_rows,
}


@dataclass(frozen=True)
class SessionFilters:
    """Canonical filter options for import history queries."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    sort: str = DEFAULT_SORT
    statuses: tuple[ImportSessionStatus, ...] = field(default_factory=tuple)
    entity_types: tuple[str, ...] = field(default_factory=tuple)
    import_types: tuple[str, ...] = field(default_factory=tuple)
    district_id: int | None = None

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        sort: str | None = None,
        statuses: Iterable[str] | None = None,
        entity_types: Iterable[str] | None = None,
        import_types: Iterable[str] | None = None,
        district_id: int | str | None = None,
    ) -> "SessionFilters":
        """Coerce mixed user input (query strings, CLI options) into filters."""

        resolved_page = _coerce_positive_int(page, fallback=DEFAULT_PAGE)
        resolved_size = min(_coerce_positive_int(page_size, fallback=DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE)

        resolved_sort = sort or DEFAULT_SORT
        if resolved_sort.lstrip("-") not in VALID_SORT_FIELDS:
            raise ValueError(f"Unsupported sort field '{resolved_sort.lstrip('-')}'.")

        resolved_statuses = tuple(_coerce_status(value) for value in (statuses or ()) if value not in (None, ""))
        resolved_entities = tuple(sorted({value.strip().lower() for value in (entity_types or ()) if value}))
        resolved_imports = tuple(sorted({value.strip().lower() for value in (import_types or ()) if value}))
        resolved_district = (
            _coerce_positive_int(district_id, fallback=0) if district_id not in (None, "") else None
        )

        return cls(
            page=resolved_page,
            page_size=resolved_size,
            sort=resolved_sort,
            statuses=resolved_statuses,
            entity_types=resolved_entities,
            import_types=resolved_imports,
            district_id=resolved_district,
        )


@dataclass(slots=True)
class SessionSummary:
    id: int
    district_id: int
    entity_type: str
    import_type: str
    file_name: str | None
    duplicate_strategy: str
    status: str
    total_rows: int
    success_count: int
    error_count: int
    skipped_count: int
    created_at: datetime | None
    completed_at: datetime | None
    duration_seconds: float | None
    error_summary: str | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "district_id": self.district_id,
            "entity_type": self.entity_type,
            "import_type": self.import_type,
            "file_name": self.file_name,
            "duplicate_strategy": self.duplicate_strategy,
            "status": self.status,
            "total_rows": self.total_rows,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "skipped_count": self.skipped_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "error_summary": self.error_summary,
        }


@dataclass(slots=True)
class SessionListResult:
    items: list[SessionSummary]
    total: int
    page: int
    page_size: int
    total_pages: int


@dataclass(slots=True)
class SessionStats:
    total: int
    statuses: Mapping[str, int]
    entity_types: Mapping[str, int]
    rows: Mapping[str, int]


class ImportSessionService:
    """Facade for querying import history with consistent filtering semantics."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def list_sessions(self, filters: SessionFilters) -> SessionListResult:
        query = self._apply_filters(self.session.query(ImportSession), filters)
        total = query.count()
        if total == 0:
            return SessionListResult(items=[], total=0, page=filters.page, page_size=filters.page_size, total_pages=0)

        page = (
            query.order_by(_resolve_sort_expression(filters.sort), ImportSession.id.desc())
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
            .all()
        )
        total_pages = (total + filters.page_size - 1) // filters.page_size
        return SessionListResult(
            items=[self.summarize(item) for item in page],
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            total_pages=total_pages,
        )

    def get_session(self, session_id: int) -> ImportSession:
        import_session = self.session.get(ImportSession, session_id)
        if import_session is None:
            raise NoResultFound(f"Import session {session_id} not found.")
        return import_session

    def get_errors(self, session_id: int) -> list[ImportRowError]:
        self.get_session(session_id)
        return (
            self.session.query(ImportRowError)
            .filter(ImportRowError.session_id == session_id)
            .order_by(ImportRowError.row_number.asc(), ImportRowError.id.asc())
            .all()
        )

    def get_stats(self, filters: SessionFilters) -> SessionStats:
        query = self._apply_filters(self.session.query(ImportSession), filters)
        status_counts = {
            status.value if isinstance(status, ImportSessionStatus) else str(status): count
            for status, count in query.with_entities(ImportSession.status, func.count())
            .group_by(ImportSession.status)
            .all()
        }
        entity_counts = {
            entity_type: count
            for entity_type, count in query.with_entities(ImportSession.entity_type, func.count())
            .group_by(ImportSession.entity_type)
            .all()
        }
        totals = query.with_entities(
            func.coalesce(func.sum(ImportSession.total_rows), 0),
            func.coalesce(func.sum(ImportSession.success_count), 0),
            func.coalesce(func.sum(ImportSession.error_count), 0),
            func.coalesce(func.sum(ImportSession.skipped_count), 0),
        ).one()
        return SessionStats(
            total=sum(status_counts.values()),
            statuses=status_counts,
            entity_types=entity_counts,
            rows={
                "total": int(totals[0]),
                "success": int(totals[1]),
                "error": int(totals[2]),
                "skipped": int(totals[3]),
            },
        )

    def summarize(self, import_session: ImportSession) -> SessionSummary:
        duration_seconds: float | None = None
        if import_session.created_at and import_session.completed_at:
            duration_seconds = (
                _as_aware(import_session.completed_at) - _as_aware(import_session.created_at)
            ).total_seconds()
        return SessionSummary(
            id=import_session.id,
            district_id=import_session.district_id,
            entity_type=import_session.entity_type,
            import_type=import_session.import_type,
            file_name=import_session.file_name,
            duplicate_strategy=import_session.duplicate_strategy.value,
            status=import_session.status.value,
            total_rows=import_session.total_rows,
            success_count=import_session.success_count,
            error_count=import_session.error_count,
            skipped_count=import_session.skipped_count,
            created_at=import_session.created_at,
            completed_at=import_session.completed_at,
            duration_seconds=duration_seconds,
            error_summary=import_session.error_summary,
        )

    def _apply_filters(self, query, filters: SessionFilters):
        predicates = []
        if filters.statuses:
            predicates.append(ImportSession.status.in_(filters.statuses))
        if filters.entity_types:
            predicates.append(ImportSession.entity_type.in_(filters.entity_types))
        if filters.import_types:
            predicates.append(ImportSession.import_type.in_(filters.import_types))
        if filters.district_id is not None:
            predicates.append(ImportSession.district_id == filters.district_id)
        if predicates:
            query = query.filter(and_(*predicates))
        return query


def _as_aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on round trip.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _coerce_positive_int(candidate: int | str | None, *, fallback: int) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.strip().isdigit():
        return max(1, int(candidate.strip()))
    raise ValueError(f"Expected positive integer, received '{candidate}'.")


def _coerce_status(value: str | ImportSessionStatus) -> ImportSessionStatus:
    if isinstance(value, ImportSessionStatus):
        return value
    try:
        return ImportSessionStatus(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unsupported status filter '{value}'.") from None


def _resolve_sort_expression(sort: str):
    descending = sort.startswith("-")
    expression = VALID_SORT_FIELDS[sort.lstrip("-")]
    return expression.desc() if descending else expression.asc()


__all__ = [
    "ImportSessionLedger",
    "ImportSessionService",
    "SessionFilters",
    "SessionListResult",
    "SessionStats",
    "SessionSummary",
    "resolve_status",
]
