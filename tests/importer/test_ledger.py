from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import NoResultFound, OperationalError

from waypoint.importer.errors import SessionLedgerError
from waypoint.importer.pipeline import ImportSessionLedger, ImportSessionService, SessionFilters, resolve_status
from waypoint.importer.pipeline.validation import RowFailure
from waypoint.models import DuplicateStrategy, ImportRowError, ImportSession, ImportSessionStatus, db


@pytest.fixture
def ledger():
    return ImportSessionLedger()


def _open(ledger, district, entity_type="students", **overrides):
    return ledger.open(
        entity_type,
        overrides.pop("file_name", f"{entity_type}.csv"),
        overrides.pop("total_rows", 10),
        overrides.pop("strategy", "skip"),
        overrides.pop("mapping", {"student_id_number": "Student ID"}),
        district.id,
        **overrides,
    )


@pytest.mark.parametrize(
    "success, errors, cancelled, expected",
    [
        (10, 0, False, ImportSessionStatus.COMPLETED),
        (0, 0, False, ImportSessionStatus.COMPLETED),
        (9, 1, False, ImportSessionStatus.PARTIAL),
        (0, 3, False, ImportSessionStatus.FAILED),
        (4, 0, True, ImportSessionStatus.PARTIAL),
        (0, 0, True, ImportSessionStatus.FAILED),
    ],
)
def test_resolve_status(success, errors, cancelled, expected):
    assert resolve_status(success, errors, cancelled=cancelled) is expected


def test_open_creates_processing_session(ledger, district):
    session_id = _open(ledger, district, strategy=DuplicateStrategy.UPSERT)

    import_session = db.session.get(ImportSession, session_id)
    assert import_session.status is ImportSessionStatus.PROCESSING
    assert import_session.duplicate_strategy is DuplicateStrategy.UPSERT
    assert import_session.column_mapping == {"student_id_number": "Student ID"}
    assert import_session.import_type == "generic"
    assert import_session.total_rows == 10
    assert import_session.completed_at is None


def test_close_records_counts_and_sorted_errors(ledger, district):
    session_id = _open(ledger, district)
    write_failure = RowFailure(row_number=9, category="insert_error", message="boom", row_data={"a": "1"})
    validation_failures = [
        RowFailure(row_number=4, category="validation_error", message="Grade level must be between -1 (Pre-K) and 12"),
        RowFailure(row_number=2, category="foreign_key_unresolved", message='Campus "X" not found'),
    ]

    closed = ledger.close(
        session_id,
        7,
        1,
        0,
        errors=[write_failure],
        validation_errors=validation_failures,
        metrics_payload={"ingest": {"batches_attempted": 1}},
    )

    assert closed.status is ImportSessionStatus.PARTIAL
    assert (closed.success_count, closed.error_count, closed.skipped_count) == (7, 3, 0)
    assert closed.completed_at is not None
    assert closed.metrics_json == {"ingest": {"batches_attempted": 1}}
    assert closed.error_summary.splitlines() == [
        "Row 2: Campus \"X\" not found",
        "Row 4: Grade level must be between -1 (Pre-K) and 12",
        "Row 9: boom",
    ]
    stored = ImportRowError.query.filter_by(session_id=session_id).order_by(ImportRowError.id).all()
    assert [error.row_number for error in stored] == [2, 4, 9]
    assert stored[2].row_data == {"a": "1"}
    assert stored[0].error_type == "foreign_key_unresolved"


def test_error_summary_is_truncated(ledger, district):
    session_id = _open(ledger, district)
    failures = [RowFailure(row_number=index, category="validation_error", message="bad") for index in range(2, 10)]

    closed = ledger.close(session_id, 0, 0, 0, validation_errors=failures)

    assert closed.status is ImportSessionStatus.FAILED
    lines = closed.error_summary.splitlines()
    assert len(lines) == 6
    assert lines[-1] == "... and 3 more"


def test_terminal_session_cannot_be_closed_again(ledger, district):
    session_id = _open(ledger, district)
    ledger.close(session_id, 10, 0, 0)

    with pytest.raises(SessionLedgerError, match="already completed"):
        ledger.close(session_id, 0, 5, 0)

    import_session = db.session.get(ImportSession, session_id)
    assert import_session.status is ImportSessionStatus.COMPLETED
    assert import_session.error_count == 0
    assert ImportRowError.query.filter_by(session_id=session_id).count() == 0


def test_cancelled_close_is_partial_or_failed(ledger, district):
    partial_id = _open(ledger, district)
    failed_id = _open(ledger, district)

    partial = ledger.close(partial_id, 3, 0, 0, cancelled=True)
    failed = ledger.close(failed_id, 0, 0, 0, cancelled=True)

    assert partial.status is ImportSessionStatus.PARTIAL
    assert failed.status is ImportSessionStatus.FAILED
    assert partial.error_summary.startswith("Import cancelled before all rows were processed.")


def test_fail_marks_session_and_is_noop_when_terminal(ledger, district):
    session_id = _open(ledger, district)

    failed = ledger.fail(session_id, "database went away")
    assert failed.status is ImportSessionStatus.FAILED
    assert failed.error_summary == "database went away"

    completed_id = _open(ledger, district)
    ledger.close(completed_id, 1, 0, 0)
    unchanged = ledger.fail(completed_id, "late failure")
    assert unchanged.status is ImportSessionStatus.COMPLETED
    assert unchanged.error_summary is None


def test_open_failure_raises_ledger_error(ledger, district, monkeypatch):
    def broken_commit():
        raise OperationalError("INSERT INTO import_sessions", {}, Exception("database is locked"))

    with monkeypatch.context() as patch:
        patch.setattr(ledger.session, "commit", broken_commit)
        with pytest.raises(SessionLedgerError, match="Could not create import session"):
            _open(ledger, district)

    assert ImportSession.query.count() == 0


def test_close_unknown_session(ledger):
    with pytest.raises(SessionLedgerError, match="not found"):
        ledger.close(999, 0, 0, 0)


# History queries ---------------------------------------------------------------


@pytest.fixture
def history(ledger, district):
    completed = _open(ledger, district, "students")
    ledger.close(completed, 10, 0, 0)
    partial = _open(ledger, district, "campuses")
    ledger.close(
        partial,
        2,
        1,
        0,
        errors=[RowFailure(row_number=3, category="insert_error", message="boom", row_data={"name": "X"})],
    )
    reconciliation = _open(ledger, district, "incidents", import_type="laserfiche_daep", mapping=None)
    ledger.close(reconciliation, 0, 0, 4)
    processing = _open(ledger, district, "profiles")
    return {"completed": completed, "partial": partial, "reconciliation": reconciliation, "processing": processing}


def test_list_sessions_filters_and_sorts(history, district):
    service = ImportSessionService()

    everything = service.list_sessions(SessionFilters())
    assert everything.total == 4
    assert [item.id for item in everything.items] == sorted(history.values(), reverse=True)

    partial_only = service.list_sessions(SessionFilters.coerce(statuses=["partial"]))
    assert [item.id for item in partial_only.items] == [history["partial"]]

    reconciliations = service.list_sessions(SessionFilters.coerce(import_types=["LASERFICHE_DAEP"]))
    assert [item.entity_type for item in reconciliations.items] == ["incidents"]

    paged = service.list_sessions(SessionFilters.coerce(page="2", page_size="3", sort="id"))
    assert paged.total_pages == 2
    assert [item.id for item in paged.items] == [max(history.values())]

    elsewhere = service.list_sessions(SessionFilters.coerce(district_id=district.id + 1))
    assert elsewhere.total == 0
    assert elsewhere.items == []


def test_session_summary_serializes(history):
    service = ImportSessionService()
    summary = service.summarize(service.get_session(history["completed"])).as_dict()

    assert summary["status"] == "completed"
    assert summary["duplicate_strategy"] == "skip"
    assert summary["success_count"] == 10
    assert summary["duration_seconds"] is not None
    assert summary["completed_at"]


def test_session_duration_handles_naive_timestamps(history):
    service = ImportSessionService()
    import_session = service.get_session(history["completed"])
    import_session.created_at = datetime(2024, 1, 1, 12, 0)
    import_session.completed_at = datetime(2024, 1, 1, 12, 0, 30, tzinfo=timezone.utc)

    assert service.summarize(import_session).duration_seconds == timedelta(seconds=30).total_seconds()


def test_get_errors_and_missing_session(history):
    service = ImportSessionService()

    errors = service.get_errors(history["partial"])
    assert [(error.row_number, error.error_message) for error in errors] == [(3, "boom")]

    with pytest.raises(NoResultFound):
        service.get_errors(12345)


def test_get_stats(history):
    stats = ImportSessionService().get_stats(SessionFilters())

    assert stats.total == 4
    assert stats.statuses == {"completed": 2, "partial": 1, "processing": 1}
    assert stats.entity_types["incidents"] == 1
    assert stats.rows == {"total": 40, "success": 12, "error": 1, "skipped": 4}


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"sort": "-file_size"}, "Unsupported sort field"),
        ({"statuses": ["exploded"]}, "Unsupported status filter"),
        ({"page": "abc"}, "Expected positive integer"),
    ],
)
def test_session_filters_reject_bad_input(kwargs, message):
    with pytest.raises(ValueError, match=message):
        SessionFilters.coerce(**kwargs)


def test_session_filters_clamp_page_size():
    filters = SessionFilters.coerce(page_size=1000, entity_types=["Students", "students", ""])

    assert filters.page_size == 100
    assert filters.entity_types == ("students",)
