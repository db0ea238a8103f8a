"""
``flask importer`` command group.

Runs can execute inline in the CLI process or be queued onto the importer
Celery worker; inline runs are what operators use for one-off backfills.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional, Sequence

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo
from sqlalchemy.exc import NoResultFound

from waypoint.importer.adapters import read_path
from waypoint.importer.adapters.laserfiche import read_laserfiche_path
from waypoint.importer.celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from waypoint.importer.contracts.templates import get_template_registry
from waypoint.importer.errors import ImporterError, UnknownEntityType
from waypoint.importer.exports import build_error_csv, build_template_workbook, template_filename
from waypoint.importer.mapping import propose_with_confidence
from waypoint.importer.pipeline import (
    ImportOutcome,
    ImportSessionService,
    ReconciliationResult,
    SessionFilters,
    reconcile_laserfiche,
    resolve_status,
    run_import,
)
from waypoint.importer.utils import parse_mapping_pairs
from waypoint.models import District, db
from waypoint.utils.importer import get_batch_size, get_default_strategy, get_importer_adapters, is_importer_enabled


@click.group(name="importer", invoke_without_command=True)
@click.pass_context
def importer_cli(ctx):
    """
    District data import commands.

    Lists the enabled adapters when invoked without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_importer_enabled(app):
        raise click.ClickException(
            "Importer is disabled via IMPORTER_ENABLED=false. Enable it to run importer CLI commands."
        )
    if ctx.invoked_subcommand is None:
        adapters = get_importer_adapters(app)
        if not adapters:
            click.echo("No importer adapters configured.")
        else:
            click.echo("Enabled importer adapters:")
            for adapter in adapters:
                click.echo(f"  - {adapter}")


def get_disabled_importer_group() -> click.Group:
    """
    Return a minimal command group that informs the operator the importer is disabled.
    """

    @click.group(name="importer", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException(
            "Importer commands are unavailable because IMPORTER_ENABLED=false. "
            "Set IMPORTER_ENABLED=true (and IMPORTER_ADAPTERS) to use them."
        )

    return disabled_group


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Importer Celery app is unavailable. Ensure IMPORTER_ENABLED=true and the "
            "importer package initialises before running worker commands."
        )
    return celery_app


def _require_district(district_id: int) -> District:
    district = db.session.get(District, district_id)
    if district is None:
        raise click.ClickException(f"District {district_id} not found.")
    return district


def _load_app(ctx):
    info = ctx.ensure_object(ScriptInfo)
    return info.load_app()


def _format_outcome(entity_type: str, file_name: str, outcome: ImportOutcome) -> str:
    ingest = outcome.ingest
    degraded = ", ".join(str(number) for number in ingest.degraded_batches) or "none"
    return (
        f"Import session {outcome.session_id} finished with status {outcome.status.value}.\n"
        f"  entity             : {entity_type}\n"
        f"  file               : {file_name}\n"
        f"  inserted/updated   : {ingest.success_count}\n"
        f"  skipped            : {ingest.skipped_count}\n"
        f"  write_errors       : {ingest.error_count}\n"
        f"  validation_errors  : {outcome.validation_errors}\n"
        f"  batches            : {ingest.batches_attempted}\n"
        f"  degraded_batches   : {degraded}\n"
        f"  cancelled          : {ingest.cancelled}"
    )


def _format_reconciliation(result: ReconciliationResult) -> str:
    status = resolve_status(result.success_count, result.error_count, cancelled=result.cancelled)
    return (
        f"Laserfiche session {result.session_id} finished with status {status.value}.\n"
        f"  reconciled         : {result.success_count}\n"
        f"  skipped            : {result.skipped_count}\n"
        f"  errors             : {result.error_count}\n"
        f"  students_created   : {result.students_created}\n"
        f"  incidents_created  : {result.incidents_created}\n"
        f"  incidents_updated  : {result.incidents_updated}"
    )


def _enqueue(app, task_name: str, kwargs: dict) -> str:
    celery_app = _resolve_celery(app)
    try:
        async_result = celery_app.send_task(task_name, kwargs=kwargs)
    except Exception as exc:
        raise click.ClickException(f"Failed to enqueue {task_name}: {exc}") from exc
    app.logger.info(
        "Importer task queued via CLI",
        extra={"importer_task_id": async_result.id, "importer_task_name": task_name},
    )
    return async_result.id


@importer_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the importer background worker."""
    app = _load_app(ctx)
    state = app.extensions.get("importer", {})
    if not state.get("worker_enabled") and not app.config.get("IMPORTER_WORKER_ENABLED"):
        click.echo(
            "Warning: IMPORTER_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list to consume.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """Start the Celery worker in the current process."""
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)

    state = app.extensions.get("importer")
    if state is not None:
        state["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting importer worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """Validate worker connectivity by executing the heartbeat task."""
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("importer.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'importer.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc

    click.echo(json.dumps(payload, indent=2))


@importer_cli.command("run")
@click.option("--entity", "entity_type", required=True, help="Entity type (campuses, students, profiles, incidents).")
@click.option("--district", "district_id", required=True, type=int, help="District receiving the rows.")
@click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="CSV or XLSX file to import.",
)
@click.option("--strategy", type=click.Choice(["skip", "upsert"]), help="Duplicate handling strategy.")
@click.option("--map", "mapping_pairs", multiple=True, help="Override a mapping as field=header (repeatable).")
@click.option("--batch-size", type=click.IntRange(min=1), help="Rows per write batch.")
@click.option(
    "--inline/--no-inline",
    default=False,
    help="Run inline within the CLI process instead of queueing via Celery.",
)
@click.option("--summary-json", is_flag=True, help="Emit a machine-readable summary after completion (inline only).")
@click.pass_context
def importer_run(
    ctx,
    entity_type: str,
    district_id: int,
    file_path: Path,
    strategy: Optional[str],
    mapping_pairs: Sequence[str],
    batch_size: Optional[int],
    inline: bool,
    summary_json: bool,
):
    """Import a spreadsheet of one entity type into a district."""
    app = _load_app(ctx)
    if summary_json and not inline:
        raise click.ClickException("--summary-json is only available for --inline runs.")

    try:
        overrides = parse_mapping_pairs(mapping_pairs)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--map") from exc

    registry = get_template_registry()
    try:
        entity_type = registry.get(entity_type).entity_type
    except UnknownEntityType as exc:
        raise click.ClickException(str(exc)) from exc
    _require_district(district_id)
    resolved_path = file_path.resolve()
    resolved_strategy = strategy or get_default_strategy(app)
    resolved_batch_size = batch_size or get_batch_size(app)

    if not inline:
        task_id = _enqueue(
            app,
            "importer.pipeline.ingest_file",
            {
                "entity_type": entity_type,
                "district_id": district_id,
                "file_path": str(resolved_path),
                "strategy": resolved_strategy,
                "mapping_overrides": overrides or None,
                "batch_size": resolved_batch_size,
                "keep_file": True,
            },
        )
        click.echo(json.dumps({"task_id": task_id, "status": "queued", "entity_type": entity_type}))
        return

    try:
        sheet = read_path(resolved_path)
        flow = run_import(
            entity_type,
            district_id,
            sheet,
            strategy=resolved_strategy,
            mapping_overrides=overrides or None,
            batch_size=resolved_batch_size,
            registry=registry,
        )
    except ImporterError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(_format_outcome(entity_type, sheet.file_name, flow.outcome))
    if summary_json:
        payload = flow.outcome.as_dict()
        payload["mapping"] = dict(flow.mapping)
        click.echo(json.dumps(payload, indent=2, sort_keys=True))


@importer_cli.command("reconcile")
@click.option("--district", "district_id", required=True, type=int, help="District receiving the rows.")
@click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="Laserfiche DAEP export (CSV or XLSX).",
)
@click.option("--batch-size", type=click.IntRange(min=1), help="Rows per commit.")
@click.option(
    "--inline/--no-inline",
    default=False,
    help="Run inline within the CLI process instead of queueing via Celery.",
)
@click.pass_context
def importer_reconcile(ctx, district_id: int, file_path: Path, batch_size: Optional[int], inline: bool):
    """Reconcile a Laserfiche DAEP export against existing incidents."""
    app = _load_app(ctx)
    _require_district(district_id)
    resolved_path = file_path.resolve()
    resolved_batch_size = batch_size or get_batch_size(app)

    if not inline:
        task_id = _enqueue(
            app,
            "importer.pipeline.reconcile_laserfiche",
            {
                "district_id": district_id,
                "file_path": str(resolved_path),
                "file_name": resolved_path.name,
                "batch_size": resolved_batch_size,
                "keep_file": True,
            },
        )
        click.echo(json.dumps({"task_id": task_id, "status": "queued"}))
        return

    try:
        rows = read_laserfiche_path(resolved_path)
        result = reconcile_laserfiche(
            rows,
            district_id=district_id,
            file_name=resolved_path.name,
            batch_size=resolved_batch_size,
        )
    except ImporterError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(_format_reconciliation(result))
    for failure in result.errors[:10]:
        click.echo(f"  row {failure.row_number}: {failure.message}", err=True)


@importer_cli.command("template")
@click.option("--entity", "entity_type", required=True, help="Entity type to render.")
@click.option(
    "--output",
    "output_path",
    type=click.Path(path_type=Path, dir_okay=True),
    help="Target file or directory (defaults to the current directory).",
)
@click.pass_context
def importer_template(ctx, entity_type: str, output_path: Optional[Path]):
    """Write the XLSX import template for an entity type."""
    _load_app(ctx)
    try:
        template = get_template_registry().get(entity_type)
    except ImporterError as exc:
        raise click.ClickException(str(exc)) from exc

    target = output_path or Path.cwd()
    if target.is_dir():
        target = target / template_filename(template)
    target.write_bytes(build_template_workbook(template))
    click.echo(f"Wrote {template.label} template to {target}")


@importer_cli.command("propose-mapping")
@click.option("--entity", "entity_type", required=True, help="Entity type the file holds.")
@click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="CSV or XLSX file whose headers should be mapped.",
)
@click.pass_context
def importer_propose_mapping(ctx, entity_type: str, file_path: Path):
    """Show the proposed header mapping and its confidence for a file."""
    _load_app(ctx)
    try:
        template = get_template_registry().get(entity_type)
        sheet = read_path(file_path)
    except ImporterError as exc:
        raise click.ClickException(str(exc)) from exc

    proposal = propose_with_confidence(sheet.headers, template)
    click.echo(json.dumps(proposal.as_dict(), indent=2))


@importer_cli.command("errors")
@click.option("--session", "session_id", required=True, type=int, help="Import session id.")
@click.option(
    "--output",
    "output_path",
    type=click.Path(path_type=Path, dir_okay=False),
    help="Write the CSV here instead of stdout.",
)
@click.pass_context
def importer_errors(ctx, session_id: int, output_path: Optional[Path]):
    """Export the stored row errors of a session as CSV."""
    _load_app(ctx)
    try:
        errors = ImportSessionService().get_errors(session_id)
    except NoResultFound as exc:
        raise click.ClickException(f"Import session {session_id} not found.") from exc

    payload = build_error_csv(errors)
    if output_path is None:
        click.echo(payload, nl=False)
        return
    output_path.write_text(payload, encoding="utf-8")
    click.echo(f"Wrote {len(errors)} error row(s) to {output_path}")


@importer_cli.command("sessions")
@click.option("--status", "statuses", multiple=True, help="Filter by status (repeatable).")
@click.option("--entity", "entity_types", multiple=True, help="Filter by entity type (repeatable).")
@click.option("--district", "district_id", type=int, help="Filter by district.")
@click.option("--limit", default=20, show_default=True, type=click.IntRange(min=1, max=100))
@click.option("--json", "as_json", is_flag=True, help="Emit JSON instead of a table.")
@click.pass_context
def importer_sessions(
    ctx,
    statuses: Sequence[str],
    entity_types: Sequence[str],
    district_id: Optional[int],
    limit: int,
    as_json: bool,
):
    """List recent import sessions."""
    _load_app(ctx)
    try:
        filters = SessionFilters.coerce(
            page=1,
            page_size=limit,
            statuses=statuses,
            entity_types=entity_types,
            district_id=district_id,
        )
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc

    result = ImportSessionService().list_sessions(filters)
    if as_json:
        click.echo(json.dumps([item.as_dict() for item in result.items], indent=2))
        return
    if not result.items:
        click.echo("No import sessions found.")
        return
    for item in result.items:
        click.echo(
            f"{item.id:>6}  {item.status:<10}  {item.entity_type:<10}  "
            f"ok={item.success_count} err={item.error_count} skip={item.skipped_count}  "
            f"{item.file_name or '-'}"
        )
    click.echo(f"Showing {len(result.items)} of {result.total} session(s).")
