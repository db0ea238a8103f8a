import json
from unittest.mock import Mock, patch

from waypoint.importer.contracts import laserfiche as columns
from waypoint.importer.pipeline import ImportSessionLedger
from waypoint.importer.pipeline.validation import RowFailure
from waypoint.models import Campus, ImportSession, ImportSessionStatus, Incident, Student, db

STUDENT_HEADERS = ["Local ID", "First Name", "Last Name", "DOB", "Grade", "Building"]


def _students_csv(csv_writer):
    return csv_writer(
        "students.csv",
        STUDENT_HEADERS,
        [
            ["S1", "Ada", "Lovelace", "2010-03-15", "8", "Lincoln Middle School"],
            ["S2", "Grace", "Hopper", "2011-07-01", "7", "Lincoln Middle School"],
            ["S3", "Alan", "Turing", "not-a-date", "7", "Lincoln Middle School"],
        ],
    )


def test_importer_group_lists_adapters(importer_runner):
    result = importer_runner.invoke(args=["importer"])

    assert result.exit_code == 0, result.output
    assert "Enabled importer adapters:" in result.output
    assert "  - spreadsheet" in result.output
    assert "  - laserfiche" in result.output


def test_disabled_importer_group(runner):
    result = runner.invoke(args=["importer"])

    assert result.exit_code != 0
    assert "Importer commands are unavailable" in result.output


def test_inline_run_reports_outcome(importer_runner, district, campus_factory, csv_writer):
    campus_factory()
    csv_path = _students_csv(csv_writer)

    result = importer_runner.invoke(
        args=[
            "importer",
            "run",
            "--entity",
            "students",
            "--district",
            str(district.id),
            "--file",
            csv_path,
            "--inline",
            "--summary-json",
        ]
    )

    assert result.exit_code == 0, result.output
    import_session = ImportSession.query.one()
    assert f"Import session {import_session.id} finished with status partial." in result.output
    assert "inserted/updated   : 2" in result.output
    assert "validation_errors  : 1" in result.output
    summary = json.loads(result.output[result.output.index("{") :])
    assert summary["mapping"]["campus_name"] == "Building"
    assert summary["error_count"] == 1
    assert Student.query.count() == 2


def test_inline_run_with_mapping_override(importer_runner, district, csv_writer):
    csv_path = csv_writer(
        "campuses.csv",
        ["School Name", "State Code", "Level"],
        [["Lincoln Middle School", "101901041", "middle"]],
    )

    result = importer_runner.invoke(
        args=[
            "importer",
            "run",
            "--entity",
            "campuses",
            "--district",
            str(district.id),
            "--file",
            csv_path,
            "--map",
            "tea_campus_id=State Code",
            "--strategy",
            "upsert",
            "--inline",
        ]
    )

    assert result.exit_code == 0, result.output
    assert "finished with status completed." in result.output
    assert db.session.query(Campus.tea_campus_id).scalar() == "101901041"
    assert ImportSession.query.one().duplicate_strategy.value == "upsert"


def test_run_queues_by_default(importer_runner, district, csv_writer):
    csv_path = _students_csv(csv_writer)
    async_result = Mock()
    async_result.id = "celery-task-123"
    celery_app = Mock()
    celery_app.send_task.return_value = async_result

    with patch("waypoint.importer.cli._resolve_celery", return_value=celery_app):
        result = importer_runner.invoke(
            args=[
                "importer",
                "run",
                "--entity",
                "students",
                "--district",
                str(district.id),
                "--file",
                csv_path,
                "--map",
                "campus_name=Building",
            ]
        )

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output.strip())
    assert payload == {"task_id": "celery-task-123", "status": "queued", "entity_type": "students"}
    task_name = celery_app.send_task.call_args.args[0]
    kwargs = celery_app.send_task.call_args.kwargs["kwargs"]
    assert task_name == "importer.pipeline.ingest_file"
    assert kwargs["mapping_overrides"] == {"campus_name": "Building"}
    assert kwargs["strategy"] == "skip"
    assert kwargs["batch_size"] == 500
    assert kwargs["keep_file"] is True
    assert ImportSession.query.count() == 0


def test_summary_json_requires_inline(importer_runner, district, csv_writer):
    csv_path = _students_csv(csv_writer)

    with patch("waypoint.importer.cli._resolve_celery") as mock_resolve:
        result = importer_runner.invoke(
            args=[
                "importer",
                "run",
                "--entity",
                "students",
                "--district",
                str(district.id),
                "--file",
                csv_path,
                "--summary-json",
            ]
        )

    assert result.exit_code != 0
    assert "--summary-json is only available for --inline runs." in result.output
    mock_resolve.assert_not_called()


def test_run_rejects_bad_input(importer_runner, district, csv_writer):
    csv_path = _students_csv(csv_writer)
    base = ["importer", "run", "--file", csv_path, "--inline"]

    bad_map = importer_runner.invoke(args=base + ["--entity", "students", "--district", str(district.id), "--map", "x"])
    assert bad_map.exit_code == 2
    assert "must look like field=header" in bad_map.output

    unknown_entity = importer_runner.invoke(args=base + ["--entity", "vehicles", "--district", str(district.id)])
    assert unknown_entity.exit_code != 0
    assert "Unknown entity type 'vehicles'" in unknown_entity.output

    unknown_district = importer_runner.invoke(args=base + ["--entity", "students", "--district", "999"])
    assert unknown_district.exit_code != 0
    assert "District 999 not found." in unknown_district.output

    unknown_field = importer_runner.invoke(
        args=base + ["--entity", "students", "--district", str(district.id), "--map", "mascot=Building"]
    )
    assert unknown_field.exit_code != 0
    assert "Unknown target fields for students: mascot" in unknown_field.output


def test_inline_reconcile(importer_runner, district, campus_factory, csv_writer):
    campus_factory()
    csv_path = csv_writer(
        "daep.csv",
        [
            columns.INSTANCE_ID,
            columns.FIRST_NAME,
            columns.LAST_NAME,
            columns.CAMPUS,
            columns.STATUS,
            columns.CURRENT_STEP,
            columns.DATE_OF_VIOLATION,
            columns.GRADE,
        ],
        [
            ["INST-1", "Maria", "Garcia", "Lincoln Middle School", "In progress", "DAEP", "2024-09-10", "8"],
            ["INST-2", "Ana", "Lopez", "Ghost Campus", "In progress", "DAEP", "2024-09-11", "7"],
        ],
    )

    result = importer_runner.invoke(
        args=["importer", "reconcile", "--district", str(district.id), "--file", csv_path, "--inline"]
    )

    assert result.exit_code == 0, result.output
    import_session = ImportSession.query.one()
    assert f"Laserfiche session {import_session.id} finished with status partial." in result.output
    assert "incidents_created  : 1" in result.output
    assert 'row 3: Campus "Ghost Campus" not found' in result.output
    assert import_session.import_type == "laserfiche_daep"
    assert Incident.query.count() == 1


def test_reconcile_rejects_export_without_key_columns(importer_runner, district, csv_writer):
    csv_path = csv_writer("daep.csv", ["First_Name", "Last_Name"], [["Maria", "Garcia"]])

    result = importer_runner.invoke(
        args=["importer", "reconcile", "--district", str(district.id), "--file", csv_path, "--inline"]
    )

    assert result.exit_code != 0
    assert "Missing required columns: Instance ID" in result.output
    assert ImportSession.query.count() == 0


def test_template_command_writes_workbook(importer_runner, tmp_path):
    result = importer_runner.invoke(args=["importer", "template", "--entity", "students", "--output", str(tmp_path)])

    assert result.exit_code == 0, result.output
    target = tmp_path / "students_import_template.xlsx"
    assert target.read_bytes()[:2] == b"PK"
    assert f"Wrote Students template to {target}" in result.output

    unknown = importer_runner.invoke(args=["importer", "template", "--entity", "vehicles"])
    assert unknown.exit_code != 0
    assert "Unknown entity type 'vehicles'" in unknown.output


def test_propose_mapping_command(importer_runner, csv_writer):
    csv_path = _students_csv(csv_writer)

    result = importer_runner.invoke(args=["importer", "propose-mapping", "--entity", "students", "--file", csv_path])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["mapping"]["student_id_number"] == "Local ID"
    assert payload["confidence"]["student_id_number"] == "alias"
    assert payload["mapping"]["race"] is None
    assert payload["confidence"]["race"] == "none"


def test_errors_command(importer_runner, district, tmp_path):
    ledger = ImportSessionLedger()
    session_id = ledger.open("students", "students.csv", 3, "skip", None, district.id)
    ledger.close(
        session_id,
        2,
        1,
        0,
        validation_errors=[
            RowFailure(row_number=4, category="validation_error", message="Date of birth is required", row_data={})
        ],
    )

    result = importer_runner.invoke(args=["importer", "errors", "--session", str(session_id)])
    assert result.exit_code == 0, result.output
    assert result.output.splitlines() == ["Row Number,Errors,Raw Data", "4,Date of birth is required,{}"]

    target = tmp_path / "errors.csv"
    written = importer_runner.invoke(
        args=["importer", "errors", "--session", str(session_id), "--output", str(target)]
    )
    assert written.exit_code == 0, written.output
    assert f"Wrote 1 error row(s) to {target}" in written.output
    assert target.read_text(encoding="utf-8").startswith("Row Number,Errors,Raw Data")

    missing = importer_runner.invoke(args=["importer", "errors", "--session", "999"])
    assert missing.exit_code != 0
    assert "Import session 999 not found." in missing.output


def test_sessions_command(importer_runner, district):
    empty = importer_runner.invoke(args=["importer", "sessions"])
    assert empty.exit_code == 0, empty.output
    assert "No import sessions found." in empty.output

    ledger = ImportSessionLedger()
    finished = ledger.open("students", "students.csv", 2, "skip", None, district.id)
    ledger.close(finished, 2, 0, 0)
    ledger.open("campuses", None, 1, "skip", None, district.id)

    listed = importer_runner.invoke(args=["importer", "sessions"])
    assert listed.exit_code == 0, listed.output
    assert "Showing 2 of 2 session(s)." in listed.output
    assert "students.csv" in listed.output

    filtered = importer_runner.invoke(args=["importer", "sessions", "--status", "completed", "--json"])
    assert filtered.exit_code == 0, filtered.output
    payload = json.loads(filtered.output)
    assert [item["id"] for item in payload] == [finished]
    assert payload[0]["status"] == ImportSessionStatus.COMPLETED.value

    invalid = importer_runner.invoke(args=["importer", "sessions", "--status", "exploded"])
    assert invalid.exit_code == 2
    assert "Unsupported status filter" in invalid.output
