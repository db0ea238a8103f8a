"""
Importer-specific utilities for handling uploaded files and CLI input.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Sequence
from uuid import uuid4

from flask import current_app
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from .adapters.spreadsheet import SUPPORTED_EXTENSIONS, file_extension

DEFAULT_UPLOAD_SUBDIR = "import_uploads"
DEFAULT_MAX_UPLOAD_MB = 25


def _normalize_upload_dir(configured_path: str | None, instance_path: str) -> Path:
    if not configured_path:
        return Path(instance_path) / DEFAULT_UPLOAD_SUBDIR

    candidate = Path(configured_path)
    if candidate.is_absolute():
        return candidate

    return Path(instance_path) / candidate


def resolve_upload_directory(app) -> Path:
    """
    Determine and create (if necessary) the importer upload directory.
    """

    upload_dir = _normalize_upload_dir(app.config.get("IMPORTER_UPLOAD_DIR"), app.instance_path)
    upload_dir.mkdir(parents=True, exist_ok=True)
    return upload_dir


def allowed_file(filename: str, allowed_extensions: Iterable[str] = SUPPORTED_EXTENSIONS) -> bool:
    extension = file_extension(filename)
    return bool(extension) and extension in {ext.lower() for ext in allowed_extensions}


def max_upload_bytes(app) -> int:
    megabytes = app.config.get("IMPORTER_MAX_UPLOAD_MB") or DEFAULT_MAX_UPLOAD_MB
    return int(megabytes) * 1024 * 1024


def persist_upload(file_storage: FileStorage, app) -> Path:
    """
    Persist the uploaded file to disk and return the fully-qualified path.

    Files are stored under ``resolve_upload_directory(app)`` using a UUID-based
    filename to avoid collisions; the original extension is preserved so the
    worker can pick the right reader.
    """

    upload_dir = resolve_upload_directory(app)
    original_name = secure_filename(file_storage.filename or "")
    extension = Path(original_name).suffix or ".csv"

    target_path = upload_dir / f"{uuid4().hex}{extension}"
    file_storage.save(target_path)
    current_app.logger.debug("Importer upload persisted to %s", target_path)
    return target_path


def cleanup_upload(path: Path) -> None:
    """
    Remove a stored upload, logging filesystem errors.
    """

    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        current_app.logger.warning("Failed to remove importer upload %s: %s", path, exc)


def parse_mapping_pairs(pairs: Sequence[str]) -> dict[str, str | None]:
    """
    Parse ``field=header`` overrides; an empty header unmaps the field.

    Raises ``ValueError`` for entries without ``=`` or without a field name.
    """

    overrides: dict[str, str | None] = {}
    for pair in pairs:
        if "=" not in pair:
            raise ValueError(f"Mapping override '{pair}' must look like field=header.")
        field, header = pair.split("=", 1)
        field = field.strip()
        if not field:
            raise ValueError(f"Mapping override '{pair}' is missing a field name.")
        overrides[field] = header.strip() or None
    return overrides
