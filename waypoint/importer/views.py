"""
Importer blueprint: health checks, templates, mapping proposals, uploads and
import history APIs.
"""

from __future__ import annotations

import io
import json
import time
from http import HTTPStatus

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, jsonify, make_response, request, send_file
from sqlalchemy.exc import NoResultFound

from config.monitoring import ImporterMonitoring
from waypoint.models import District, db
from waypoint.utils.importer import get_batch_size, get_default_strategy, is_importer_enabled

from .adapters import read_upload
from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .contracts.templates import get_template_registry
from .errors import ImporterError, UnknownEntityType, describe_error
from .exports import build_error_csv, build_template_workbook, error_csv_filename, template_filename
from .mapping import propose_with_confidence
from .pipeline import ImportSessionService, SessionFilters
from .registry import AdapterDescriptor
from .utils import allowed_file, max_upload_bytes, persist_upload

importer_blueprint = Blueprint("importer", __name__, url_prefix="/importer")


def _serialize_adapter(adapter: AdapterDescriptor) -> dict:
    return {
        "name": adapter.name,
        "title": adapter.title,
        "summary": adapter.summary,
        "file_extensions": list(adapter.file_extensions),
    }


@importer_blueprint.get("/health")
def importer_healthcheck():
    """
    Lightweight health endpoint proving the importer blueprint mounted correctly.
    """
    importer_state = current_app.extensions.get("importer", {})
    adapters = importer_state.get("active_adapters", ())
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": importer_state.get("enabled", False),
                "adapters": [_serialize_adapter(adapter) for adapter in adapters],
            }
        ),
        200,
    )


@importer_blueprint.get("/worker_health")
def importer_worker_health():
    """
    Validate importer worker availability via the heartbeat task.
    """
    importer_state = current_app.extensions.get("importer", {})
    enabled = importer_state.get("enabled", False)
    worker_enabled = importer_state.get("worker_enabled", False)
    timeout_seconds = float(request.args.get("timeout", 5))

    payload = {
        "importer_enabled": enabled,
        "worker_enabled": worker_enabled,
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }

    if not enabled:
        payload["status"] = "disabled"
        return jsonify(payload), 200

    if not worker_enabled:
        payload["status"] = "disabled"
        payload["message"] = "Worker flag disabled; start the worker or set IMPORTER_WORKER_ENABLED=true."
        return jsonify(payload), 200

    celery_app = get_celery_app(current_app)
    if celery_app is None:
        payload["status"] = "error"
        payload["error"] = "celery_app_unavailable"
        return jsonify(payload), 500

    task = celery_app.tasks.get("importer.healthcheck")
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), 500

    result = task.apply_async()
    try:
        payload["status"] = "ok"
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
        return jsonify(payload), 200
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), 504
    except Exception as exc:
        current_app.logger.exception("Importer worker health check failed.", exc_info=exc)
        payload["status"] = "error"
        payload["error"] = str(exc)
        return jsonify(payload), 500


def _json_error(message: str, status: HTTPStatus, **extra):
    payload = {"error": message}
    payload.update(extra)
    return jsonify(payload), status


def _ensure_importer_enabled_api():
    if not is_importer_enabled(current_app):
        return _json_error("Importer is disabled.", HTTPStatus.NOT_FOUND)
    return None


def _split_csv(value: str | None):
    if value in (None, "", ()):
        return ()
    return tuple(token.strip() for token in value.split(",") if token.strip())


def _parse_filters() -> SessionFilters:
    raw = request.args
    return SessionFilters.coerce(
        page=raw.get("page"),
        page_size=raw.get("per_page") or raw.get("page_size"),
        sort=raw.get("sort"),
        statuses=_split_csv(raw.get("status")),
        entity_types=_split_csv(raw.get("entity_type")),
        import_types=_split_csv(raw.get("import_type")),
        district_id=raw.get("district_id"),
    )


# ---------------------------------------------------------------------------
# Templates and mapping
# ---------------------------------------------------------------------------


@importer_blueprint.get("/templates")
def importer_templates_list():
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    registry = get_template_registry()
    templates = []
    for template in registry:
        templates.append(
            {
                "entity_type": template.entity_type,
                "label": template.label,
                "version": template.version,
                "checksum": template.checksum,
                "fields": [
                    {
                        "name": field_spec.name,
                        "required": field_spec.required,
                        "description": field_spec.description,
                        "example": field_spec.example,
                    }
                    for field_spec in template.fields
                ],
            }
        )
    return jsonify({"templates": templates}), HTTPStatus.OK


@importer_blueprint.get("/templates/<entity_type>")
def importer_template_download(entity_type: str):
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    try:
        template = get_template_registry().get(entity_type)
    except UnknownEntityType as exc:
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)

    return send_file(
        io.BytesIO(build_template_workbook(template)),
        mimetype="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        as_attachment=True,
        download_name=template_filename(template),
    )


@importer_blueprint.post("/mapping/propose")
def importer_mapping_propose():
    """
    Propose a column mapping for either a JSON ``headers`` list or an uploaded file.
    """
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    upload = request.files.get("file")
    if upload is not None:
        entity_type = request.form.get("entity_type", "")
        try:
            headers = read_upload(upload.read(), upload.filename or "upload.csv").headers
        except ImporterError as exc:
            return _json_error(str(exc), HTTPStatus.BAD_REQUEST, category=exc.category)
    else:
        body = request.get_json(silent=True) or {}
        entity_type = body.get("entity_type", "")
        headers = body.get("headers")
        if not isinstance(headers, list) or not all(isinstance(item, str) for item in headers):
            return _json_error("Provide 'headers' as a list of strings or upload a file.", HTTPStatus.BAD_REQUEST)

    try:
        template = get_template_registry().get(entity_type)
    except UnknownEntityType as exc:
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)

    proposal = propose_with_confidence(headers, template)
    payload = proposal.as_dict()
    payload.update({"entity_type": template.entity_type, "headers": list(headers), "unmapped": list(proposal.unmapped)})
    return jsonify(payload), HTTPStatus.OK


# ---------------------------------------------------------------------------
# Uploads
# ---------------------------------------------------------------------------


def _validate_upload():
    upload = request.files.get("file")
    if upload is None or not upload.filename:
        return None, _json_error("A file upload is required.", HTTPStatus.BAD_REQUEST)
    if not allowed_file(upload.filename):
        return None, _json_error("Only CSV and XLSX files are supported.", HTTPStatus.BAD_REQUEST)
    if request.content_length and request.content_length > max_upload_bytes(current_app):
        return None, _json_error("Upload exceeds the configured size limit.", HTTPStatus.REQUEST_ENTITY_TOO_LARGE)
    return upload, None


def _resolve_district():
    raw = request.form.get("district_id", "")
    if not raw.strip().isdigit():
        return None, _json_error("district_id must be a positive integer.", HTTPStatus.BAD_REQUEST)
    district = db.session.get(District, int(raw))
    if district is None:
        return None, _json_error(f"District {raw} not found.", HTTPStatus.NOT_FOUND)
    return district, None


def _queue_task(task_name: str, kwargs: dict):
    celery_app = get_celery_app(current_app)
    task = celery_app.tasks.get(task_name) if celery_app is not None else None
    if task is None:
        return None, _json_error("Importer worker is not configured.", HTTPStatus.SERVICE_UNAVAILABLE)
    return task.apply_async(kwargs=kwargs), None


@importer_blueprint.post("/imports")
def importer_upload():
    """
    Accept a spreadsheet and queue it for the import worker.

    Form fields: ``entity_type``, ``district_id``, optional ``strategy`` and a
    JSON ``mapping`` object of field-to-header overrides.
    """
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    upload, error_response = _validate_upload()
    if error_response:
        return error_response
    district, error_response = _resolve_district()
    if error_response:
        return error_response

    try:
        entity_type = get_template_registry().get(request.form.get("entity_type", "")).entity_type
    except UnknownEntityType as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    strategy = (request.form.get("strategy") or get_default_strategy(current_app)).lower()
    if strategy not in {"skip", "upsert"}:
        return _json_error("strategy must be 'skip' or 'upsert'.", HTTPStatus.BAD_REQUEST)

    mapping_raw = request.form.get("mapping")
    mapping_overrides = None
    if mapping_raw:
        try:
            mapping_overrides = json.loads(mapping_raw)
        except json.JSONDecodeError:
            return _json_error("mapping must be a JSON object.", HTTPStatus.BAD_REQUEST)
        if not isinstance(mapping_overrides, dict):
            return _json_error("mapping must be a JSON object.", HTTPStatus.BAD_REQUEST)

    stored_path = persist_upload(upload, current_app)
    async_result, error_response = _queue_task(
        "importer.pipeline.ingest_file",
        {
            "entity_type": entity_type,
            "district_id": district.id,
            "file_path": str(stored_path),
            "file_name": upload.filename,
            "strategy": strategy,
            "mapping_overrides": mapping_overrides,
            "batch_size": get_batch_size(current_app),
            "keep_file": False,
        },
    )
    if error_response:
        return error_response

    current_app.logger.info(
        "Import upload queued",
        extra={
            "importer_task_id": async_result.id,
            "importer_entity_type": entity_type,
            "importer_district_id": district.id,
            "importer_file_name": upload.filename,
        },
    )
    return (
        jsonify({"task_id": async_result.id, "status": "queued", "entity_type": entity_type, "strategy": strategy}),
        HTTPStatus.ACCEPTED,
    )


@importer_blueprint.post("/reconciliations/laserfiche")
def importer_laserfiche_upload():
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    upload, error_response = _validate_upload()
    if error_response:
        return error_response
    district, error_response = _resolve_district()
    if error_response:
        return error_response

    stored_path = persist_upload(upload, current_app)
    async_result, error_response = _queue_task(
        "importer.pipeline.reconcile_laserfiche",
        {
            "district_id": district.id,
            "file_path": str(stored_path),
            "file_name": upload.filename,
            "batch_size": get_batch_size(current_app),
            "keep_file": False,
        },
    )
    if error_response:
        return error_response
    return jsonify({"task_id": async_result.id, "status": "queued"}), HTTPStatus.ACCEPTED


# ---------------------------------------------------------------------------
# Session history
# ---------------------------------------------------------------------------


@importer_blueprint.get("/sessions")
def importer_sessions_list():
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    try:
        filters = _parse_filters()
    except ValueError as exc:
        ImporterMonitoring.record_sessions_list(duration_seconds=0.0, status="invalid_request", result_count=0)
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    start_time = time.perf_counter()
    result = ImportSessionService().list_sessions(filters)
    duration = time.perf_counter() - start_time
    ImporterMonitoring.record_sessions_list(duration_seconds=duration, status="success", result_count=len(result.items))

    response_payload = {
        "sessions": [item.as_dict() for item in result.items],
        "total": result.total,
        "page": result.page,
        "page_size": result.page_size,
        "total_pages": result.total_pages,
        "filters": {
            "sort": filters.sort,
            "statuses": [status.value for status in filters.statuses],
            "entity_types": list(filters.entity_types),
            "import_types": list(filters.import_types),
            "district_id": filters.district_id,
        },
    }
    current_app.logger.info(
        "Import session list retrieved",
        extra={
            "importer_session_count": len(result.items),
            "importer_total_sessions": result.total,
            "importer_response_time_ms": round(duration * 1000, 2),
        },
    )
    return jsonify(response_payload), HTTPStatus.OK


@importer_blueprint.get("/sessions/stats")
def importer_sessions_stats():
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    try:
        filters = _parse_filters()
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    stats = ImportSessionService().get_stats(filters)
    return (
        jsonify(
            {
                "total": stats.total,
                "by_status": dict(stats.statuses),
                "by_entity_type": dict(stats.entity_types),
                "rows": dict(stats.rows),
            }
        ),
        HTTPStatus.OK,
    )


@importer_blueprint.get("/sessions/<int:session_id>")
def importer_session_detail(session_id: int):
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    service = ImportSessionService()
    start_time = time.perf_counter()
    try:
        import_session = service.get_session(session_id)
    except NoResultFound:
        ImporterMonitoring.record_session_detail(duration_seconds=time.perf_counter() - start_time, status="not_found")
        return _json_error(f"Import session {session_id} not found.", HTTPStatus.NOT_FOUND)

    payload = service.summarize(import_session).as_dict()
    payload.update(
        {
            "column_mapping": import_session.column_mapping or {},
            "metrics_json": import_session.metrics_json or {},
            "error_preview": [
                {
                    "row_number": error.row_number,
                    "error_type": error.error_type,
                    "error_message": error.error_message,
                }
                for error in import_session.errors[:25]
            ],
        }
    )
    ImporterMonitoring.record_session_detail(duration_seconds=time.perf_counter() - start_time, status="success")
    return jsonify(payload), HTTPStatus.OK


@importer_blueprint.get("/sessions/<int:session_id>/errors.csv")
def importer_session_errors_export(session_id: int):
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    start_time = time.perf_counter()
    try:
        errors = ImportSessionService().get_errors(session_id)
    except NoResultFound:
        ImporterMonitoring.record_errors_export(
            duration_seconds=time.perf_counter() - start_time, status="not_found", row_count=0
        )
        return _json_error(f"Import session {session_id} not found.", HTTPStatus.NOT_FOUND)

    csv_content = build_error_csv(errors)
    ImporterMonitoring.record_errors_export(
        duration_seconds=time.perf_counter() - start_time, status="success", row_count=len(errors)
    )

    response = make_response(csv_content)
    response.headers["Content-Type"] = "text/csv"
    response.headers["Content-Disposition"] = f'attachment; filename="{error_csv_filename(session_id)}"'
    return response


@importer_blueprint.errorhandler(ImporterError)
def _handle_importer_error(exc: ImporterError):
    return jsonify(describe_error(exc)), HTTPStatus.BAD_REQUEST
