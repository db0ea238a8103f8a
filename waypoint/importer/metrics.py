"""Prometheus metrics helpers for the importer."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Gauge, Histogram

_adapter_enabled_gauge = Gauge(
    "importer_adapter_enabled",
    "Whether an importer adapter is enabled (1) or disabled (0).",
    ["adapter"],
)
_sessions_closed_counter = Counter(
    "importer_sessions_closed_total",
    "Import sessions closed, by entity type and terminal status.",
    ["entity_type", "status"],
)
_rows_counter = Counter(
    "importer_rows_total",
    "Rows processed by the batch ingestor, by outcome.",
    ["entity_type", "outcome"],
)
_batch_duration = Histogram(
    "importer_batch_duration_seconds",
    "Duration of a single ingestion batch in seconds.",
    ["entity_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
)
_degraded_batches_counter = Counter(
    "importer_degraded_batches_total",
    "Batches that fell back to row-by-row inserts after a uniqueness conflict.",
    ["entity_type"],
)
_reconciliation_rows_counter = Counter(
    "importer_reconciliation_rows_total",
    "Foreign feed rows reconciled, by external system and outcome.",
    ["system", "outcome"],
)


def record_adapter_status(adapter: str, enabled: bool) -> None:
    _adapter_enabled_gauge.labels(adapter=adapter).set(1 if enabled else 0)


def record_session_closed(entity_type: str, status: str) -> None:
    _sessions_closed_counter.labels(entity_type=entity_type, status=status).inc()


def record_rows(entity_type: str, outcome: Literal["success", "skipped", "error"], count: int) -> None:
    """Increment the row counter; zero counts are ignored."""

    if count <= 0:
        return
    _rows_counter.labels(entity_type=entity_type, outcome=outcome).inc(count)


def record_batch(*, entity_type: str, duration_seconds: float, degraded: bool) -> None:
    """Capture metrics for one ingestion batch."""

    _batch_duration.labels(entity_type=entity_type).observe(duration_seconds)
    if degraded:
        _degraded_batches_counter.labels(entity_type=entity_type).inc()


def record_reconciliation_row(
    system: str,
    outcome: Literal["created", "updated", "skipped", "error"],
) -> None:
    _reconciliation_rows_counter.labels(system=system, outcome=outcome).inc()
