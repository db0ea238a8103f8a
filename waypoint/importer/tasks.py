"""
Importer Celery tasks.

Each pipeline task executes one run end to end inside a Flask app context (see
``FlaskContextTask``). Ledger bookkeeping lives in the pipeline itself; the
task only logs and re-raises so Celery records the failure too.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from celery import shared_task
from flask import current_app

from waypoint.importer.adapters import read_path
from waypoint.importer.adapters.laserfiche import read_laserfiche_path
from waypoint.importer.pipeline import reconcile_laserfiche as run_reconciliation
from waypoint.importer.pipeline import resolve_status, run_import
from waypoint.importer.utils import cleanup_upload


def _batch_size(batch_size: int | None) -> int:
    return int(batch_size or current_app.config.get("IMPORTER_BATCH_SIZE", 500))


@shared_task(name="importer.healthcheck", bind=True)
def importer_healthcheck(self) -> dict[str, Any]:
    """
    Simple heartbeat task used by worker health checks.
    """
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
        "app_version": current_app.config.get("APP_VERSION"),
    }


@shared_task(name="importer.pipeline.ingest_file", bind=True)
def ingest_file(
    self,
    *,
    entity_type: str,
    district_id: int,
    file_path: str,
    file_name: str | None = None,
    strategy: str = "skip",
    mapping_overrides: Mapping[str, str | None] | None = None,
    batch_size: int | None = None,
    keep_file: bool = True,
) -> dict[str, Any]:
    """
    Parse, map, validate and ingest a spreadsheet for one entity type.

    ``file_name`` replaces the stored upload name in the session record.
    """

    path = Path(file_path)
    cleanup_target: Path | None = None if keep_file else path
    try:
        sheet = read_path(path)
        if file_name:
            sheet = replace(sheet, file_name=file_name)
        flow = run_import(
            entity_type,
            district_id,
            sheet,
            strategy=strategy,
            mapping_overrides=mapping_overrides,
            batch_size=_batch_size(batch_size),
        )
    except Exception as exc:
        current_app.logger.exception(
            "Import task failed",
            extra={
                "importer_entity_type": entity_type,
                "importer_district_id": district_id,
                "importer_file_path": file_path,
                "importer_error": str(exc),
            },
        )
        raise
    finally:
        if cleanup_target is not None:
            cleanup_upload(cleanup_target)

    outcome = flow.outcome
    current_app.logger.info(
        "Import session %s finished",
        outcome.session_id,
        extra={
            "importer_session_id": outcome.session_id,
            "importer_status": outcome.status.value,
            "importer_entity_type": entity_type,
            "importer_success_count": outcome.ingest.success_count,
            "importer_skipped_count": outcome.ingest.skipped_count,
            "importer_error_count": outcome.ingest.error_count + outcome.validation_errors,
        },
    )
    payload = outcome.as_dict()
    payload["entity_type"] = entity_type
    payload["file_name"] = sheet.file_name
    return payload


@shared_task(name="importer.pipeline.reconcile_laserfiche", bind=True)
def reconcile_laserfiche(
    self,
    *,
    district_id: int,
    file_path: str,
    file_name: str | None = None,
    batch_size: int | None = None,
    keep_file: bool = True,
) -> dict[str, Any]:
    """
    Reconcile a Laserfiche DAEP export against the district's incidents.
    """

    path = Path(file_path)
    cleanup_target: Path | None = None if keep_file else path
    try:
        rows = read_laserfiche_path(path)
        result = run_reconciliation(
            rows,
            district_id=district_id,
            file_name=file_name or path.name,
            batch_size=_batch_size(batch_size),
        )
    except Exception as exc:
        current_app.logger.exception(
            "Laserfiche reconciliation task failed",
            extra={
                "importer_district_id": district_id,
                "importer_file_path": file_path,
                "importer_error": str(exc),
            },
        )
        raise
    finally:
        if cleanup_target is not None:
            cleanup_upload(cleanup_target)

    status = resolve_status(result.success_count, result.error_count, cancelled=result.cancelled)
    current_app.logger.info(
        "Laserfiche reconciliation session %s finished",
        result.session_id,
        extra={
            "importer_session_id": result.session_id,
            "importer_status": status.value,
            "importer_students_created": result.students_created,
            "importer_incidents_created": result.incidents_created,
            "importer_incidents_updated": result.incidents_updated,
        },
    )
    payload = result.as_dict()
    payload["status"] = status.value
    return payload
