"""
Exception taxonomy shared by every importer stage.

Each error carries a ``category`` that is persisted as ``ImportRowError.error_type``
so history screens and CSV exports can group failures without parsing messages.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Sequence


class ImporterError(RuntimeError):
    """Base class for importer failures."""

    category = "import_error"


class TemplateLoadError(ImporterError):
    """Raised when a template definition cannot be loaded or validated."""

    category = "template_error"


class UnknownEntityType(ImporterError, LookupError):
    """Raised when no template is registered for the requested entity type."""

    category = "unknown_entity_type"

    def __init__(self, entity_type: str, *, available: Iterable[str] = ()):
        self.entity_type = entity_type
        self.available = tuple(available)
        message = f"Unknown entity type '{entity_type}'."
        if self.available:
            message += f" Available: {', '.join(self.available)}."
        super().__init__(message)


class FileParseError(ImporterError):
    """The uploaded file is unreadable or contains no data rows."""

    category = "file_parse_error"


class MissingRequiredColumnsError(ImporterError):
    """Key columns are entirely absent from a file header."""

    category = "missing_columns"

    def __init__(self, missing: Sequence[str]):
        self.missing = tuple(missing)
        super().__init__(f"Missing required columns: {', '.join(self.missing)}")


class RowValidationError(ImporterError):
    """A row failed validation and is excluded from ingestion."""

    category = "validation_error"

    def __init__(self, message: str, *, row_number: int | None = None, messages: Sequence[str] | None = None):
        self.row_number = row_number
        self.messages = tuple(messages) if messages else (message,)
        prefix = f"Row {row_number}: " if row_number is not None else ""
        super().__init__(f"{prefix}{message}")


class ForeignKeyUnresolvedError(RowValidationError):
    """A natural-key reference could not be resolved against the validation context."""

    category = "foreign_key_unresolved"

    def __init__(self, reference: str, value: str, *, row_number: int | None = None, message: str | None = None):
        self.reference = reference
        self.value = value
        super().__init__(message or f'{reference} "{value}" not found', row_number=row_number)


class UniquenessConflictError(ImporterError):
    """A write collided with an existing natural key."""

    category = "uniqueness_conflict"


class BatchWriteError(ImporterError):
    """A bulk write failed for a reason other than a uniqueness conflict."""

    category = "insert_error"

    def __init__(self, message: str, *, batch_number: int | None = None, row_numbers: Sequence[int] = ()):
        self.batch_number = batch_number
        self.row_numbers = tuple(row_numbers)
        super().__init__(message)


class SessionLedgerError(ImporterError):
    """The audit record could not be created or updated."""

    category = "ledger_error"


class InvalidFlowTransition(ImporterError):
    """An import flow step was invoked out of order."""

    category = "flow_error"

    def __init__(self, current: str, attempted: str):
        self.current = current
        self.attempted = attempted
        super().__init__(f"Cannot {attempted} while import flow is in state '{current}'.")


def describe_error(exc: BaseException) -> Mapping[str, Any]:
    """Return a JSON-friendly description of an importer exception."""
    payload: dict[str, Any] = {
        "error": str(exc),
        "category": getattr(exc, "category", ImporterError.category),
    }
    missing = getattr(exc, "missing", None)
    if missing:
        payload["missing"] = list(missing)
    return payload
