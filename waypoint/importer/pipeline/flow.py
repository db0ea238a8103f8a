"""
Explicit state machine for a generic spreadsheet import.

``uploading -> mapping -> validating -> ingesting -> done``

Every step returns a new :class:`ImportFlow`; outputs of earlier steps are
frozen and carried forward untouched. Calling a step out of order raises
:class:`InvalidFlowTransition`.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Any, Callable, Mapping, Sequence, Tuple

from flask import current_app, has_app_context

from waypoint.models import DuplicateStrategy, ImportSessionStatus

from ..adapters.spreadsheet import ParsedSheet
from ..contracts.templates import ImportTemplate, TemplateRegistry, get_template_registry
from ..errors import FileParseError, InvalidFlowTransition, RowValidationError
from ..mapping import MappingProposal, apply_mapping, detect_confidence, missing_required, propose_with_confidence
from .context import ValidationContext, fetch_validation_context
from .ingest import DEFAULT_BATCH_SIZE, BatchIngestor, IngestResult
from .ledger import ImportSessionLedger
from .validation import ValidationSummary, validate


class FlowState(str, enum.Enum):
    UPLOADING = "uploading"
    MAPPING = "mapping"
    VALIDATING = "validating"
    INGESTING = "ingesting"
    DONE = "done"


@dataclass(frozen=True)
class UploadedFile:
    file_name: str
    headers: Tuple[str, ...]
    rows: Tuple[Mapping[str, Any], ...]


@dataclass(frozen=True)
class ImportOutcome:
    session_id: int
    status: ImportSessionStatus
    ingest: IngestResult
    validation_errors: int

    def as_dict(self) -> dict[str, Any]:
        payload = self.ingest.as_dict()
        payload.update(
            {
                "session_id": self.session_id,
                "status": self.status.value,
                "validation_errors": self.validation_errors,
                "error_count": self.ingest.error_count + self.validation_errors,
            }
        )
        return payload


@dataclass(frozen=True)
class ImportFlow:
    entity_type: str
    district_id: int
    template: ImportTemplate
    state: FlowState = FlowState.UPLOADING
    uploaded: UploadedFile | None = None
    proposal: MappingProposal | None = None
    mapping: Mapping[str, str | None] | None = None
    validation: ValidationSummary | None = None
    outcome: ImportOutcome | None = None

    @classmethod
    def start(
        cls,
        entity_type: str,
        district_id: int,
        *,
        registry: TemplateRegistry | None = None,
    ) -> "ImportFlow":
        registry = registry or get_template_registry()
        template = registry.get(entity_type)
        return cls(entity_type=template.entity_type, district_id=district_id, template=template)

    def _require(self, expected: FlowState, attempted: str) -> None:
        if self.state is not expected:
            raise InvalidFlowTransition(self.state.value, attempted)

    # uploading -> mapping ------------------------------------------------------

    def upload(self, file_name: str, headers: Sequence[str], rows: Sequence[Mapping[str, Any]]) -> "ImportFlow":
        self._require(FlowState.UPLOADING, "upload")
        if not rows:
            raise FileParseError("File contains no data rows")
        uploaded = UploadedFile(
            file_name=file_name,
            headers=tuple(headers),
            rows=tuple(MappingProxyType(dict(row)) for row in rows),
        )
        proposal = propose_with_confidence(uploaded.headers, self.template)
        return replace(self, state=FlowState.MAPPING, uploaded=uploaded, proposal=proposal)

    def upload_sheet(self, sheet: ParsedSheet) -> "ImportFlow":
        return self.upload(sheet.file_name, sheet.headers, sheet.rows)

    # mapping -> validating -----------------------------------------------------

    def confirm_mapping(self, mapping: Mapping[str, str | None] | None = None) -> "ImportFlow":
        """
        Lock in a mapping, defaulting to the proposal.

        Only template fields are kept, and a header that is not part of the
        upload counts as unmapped.
        """

        self._require(FlowState.MAPPING, "confirm mapping")
        chosen = dict(self.proposal.mapping if mapping is None else mapping)
        available = set(self.uploaded.headers)
        confirmed = {
            field: chosen.get(field) if chosen.get(field) in available else None
            for field in self.template.target_fields
        }
        missing = missing_required(self.template, confirmed)
        if missing:
            message = f"Required fields are not mapped: {', '.join(missing)}"
            raise RowValidationError(message, messages=[message])
        confidence = detect_confidence(self.uploaded.headers, self.template.target_fields, confirmed)
        proposal = MappingProposal(mapping=MappingProxyType(confirmed), confidence=MappingProxyType(confidence))
        return replace(self, state=FlowState.VALIDATING, mapping=proposal.mapping, proposal=proposal)

    # validating -> ingesting ---------------------------------------------------

    def validate(self, context: ValidationContext | None = None) -> "ImportFlow":
        self._require(FlowState.VALIDATING, "validate")
        context = context or fetch_validation_context(self.entity_type, self.district_id)
        target_fields = self.template.target_fields
        projected = [apply_mapping(row, self.mapping, target_fields) for row in self.uploaded.rows]
        summary = validate(self.entity_type, projected, context)
        return replace(self, state=FlowState.INGESTING, validation=summary)

    # ingesting -> done ---------------------------------------------------------

    def ingest(
        self,
        strategy: DuplicateStrategy | str = DuplicateStrategy.SKIP,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        on_progress: Callable[[int, int], None] | None = None,
        should_cancel: Callable[[], bool] | None = None,
        ledger: ImportSessionLedger | None = None,
        ingestor: BatchIngestor | None = None,
    ) -> "ImportFlow":
        """
        Open a ledger session, write the valid rows and close the session.

        A ledger failure on open aborts before any row is written. Any
        exception escaping ingestion marks the session failed and re-raises.
        """

        self._require(FlowState.INGESTING, "ingest")
        strategy = DuplicateStrategy(strategy)
        ledger = ledger or ImportSessionLedger()
        session_id = ledger.open(
            self.entity_type,
            self.uploaded.file_name,
            self.validation.total,
            strategy,
            self.mapping,
            self.district_id,
        )
        ingestor = ingestor or BatchIngestor(self.district_id)
        try:
            result = ingestor.ingest(
                self.entity_type,
                self.validation.valid,
                strategy,
                batch_size=batch_size,
                on_progress=on_progress,
                should_cancel=should_cancel,
            )
        except Exception as exc:
            ledger.fail(session_id, str(exc))
            raise

        validation_failures = self.validation.failures()
        closed = ledger.close(
            session_id,
            result.success_count,
            result.error_count,
            result.skipped_count,
            errors=result.errors,
            validation_errors=validation_failures,
            cancelled=result.cancelled,
            metrics_payload={
                "ingest": result.as_dict(),
                "validation": self.validation.as_dict(),
            },
        )
        outcome = ImportOutcome(
            session_id=session_id,
            status=closed.status,
            ingest=result,
            validation_errors=len(validation_failures),
        )
        return replace(self, state=FlowState.DONE, outcome=outcome)


def run_import(
    entity_type: str,
    district_id: int,
    sheet: ParsedSheet,
    *,
    strategy: DuplicateStrategy | str = DuplicateStrategy.SKIP,
    mapping_overrides: Mapping[str, str | None] | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    registry: TemplateRegistry | None = None,
    on_progress: Callable[[int, int], None] | None = None,
    should_cancel: Callable[[], bool] | None = None,
) -> ImportFlow:
    """Drive a parsed sheet through every flow step using the proposed mapping plus overrides."""

    flow = ImportFlow.start(entity_type, district_id, registry=registry).upload_sheet(sheet)
    mapping = dict(flow.proposal.mapping)
    if mapping_overrides:
        unknown = sorted(set(mapping_overrides) - set(flow.template.target_fields))
        if unknown:
            raise RowValidationError(f"Unknown target fields for {flow.entity_type}: {', '.join(unknown)}")
        mapping.update(mapping_overrides)
    flow = flow.confirm_mapping(mapping).validate()
    if has_app_context():
        current_app.logger.info(
            "Validated %s rows for %s import",
            flow.validation.total,
            flow.entity_type,
            extra={
                "importer_entity_type": flow.entity_type,
                "importer_file_name": sheet.file_name,
                "importer_valid_rows": len(flow.validation.valid),
                "importer_invalid_rows": len(flow.validation.errors),
            },
        )
    return flow.ingest(
        strategy,
        batch_size=batch_size,
        on_progress=on_progress,
        should_cancel=should_cancel,
    )


__all__ = [
    "FlowState",
    "ImportFlow",
    "ImportOutcome",
    "UploadedFile",
    "run_import",
]
