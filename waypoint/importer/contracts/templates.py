"""Import template registry.

Each importable entity type is described by a versioned YAML document under
``IMPORTER_TEMPLATE_DIR``. Adding a synonym for a source-system header is a
data change to that document; the column mapper never hard-codes vocabulary.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Sequence, Tuple

import yaml
from flask import current_app, has_app_context

from ..errors import TemplateLoadError, UnknownEntityType

TEMPLATE_CACHE_KEY = "_importer_template_registry"


def normalize_header(value: object | None) -> str:
    """Lower-case and trim a header for comparisons."""

    if value is None:
        return ""
    return str(value).strip().lower()


@dataclass(frozen=True)
class FieldSpec:
    """Metadata describing one target field of a template."""

    name: str
    required: bool = False
    description: str = ""
    example: str = ""
    aliases: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class ImportTemplate:
    version: int
    entity_type: str
    label: str
    fields: Tuple[FieldSpec, ...]
    sample_rows: Tuple[Tuple[str, ...], ...]
    checksum: str
    path: Path | None = None

    @property
    def target_fields(self) -> Tuple[str, ...]:
        return tuple(entry.name for entry in self.fields)

    @property
    def required_fields(self) -> Tuple[str, ...]:
        return tuple(entry.name for entry in self.fields if entry.required)

    @property
    def aliases(self) -> Mapping[str, frozenset[str]]:
        return {entry.name: entry.aliases for entry in self.fields}

    def get_field(self, name: str) -> FieldSpec:
        for entry in self.fields:
            if entry.name == name:
                return entry
        raise KeyError(name)


def _compute_checksum(payload: Mapping[str, Any]) -> str:
    serialized = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(serialized).hexdigest()


def load_template(path: str | Path) -> ImportTemplate:
    """
    Load and validate a YAML template definition.
    """

    path = Path(path)
    if not path.exists():
        raise TemplateLoadError(f"Template file not found at {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise TemplateLoadError(f"Failed to parse template YAML at {path}: {exc}") from exc

    if not isinstance(raw, Mapping):
        raise TemplateLoadError(f"Template at {path} must be a mapping.")

    try:
        version = int(raw["version"])
        entity_type = str(raw["entity_type"]).strip()
        fields_payload = raw["fields"]
    except KeyError as exc:
        raise TemplateLoadError(f"Missing required template attribute in {path.name}: {exc}") from exc
    except (TypeError, ValueError) as exc:
        raise TemplateLoadError(f"Invalid template attribute in {path.name}: {exc}") from exc

    if not entity_type:
        raise TemplateLoadError("Template entity_type cannot be empty.")
    if not isinstance(fields_payload, Sequence) or not fields_payload:
        raise TemplateLoadError(f"Template '{entity_type}' must declare at least one field.")

    fields: list[FieldSpec] = []
    seen: set[str] = set()
    for entry in fields_payload:
        if not isinstance(entry, Mapping):
            raise TemplateLoadError(f"Field definition must be a mapping, got {entry!r}")
        name = str(entry.get("name") or "").strip()
        if not name:
            raise TemplateLoadError(f"Field entry missing 'name': {entry!r}")
        if name in seen:
            raise TemplateLoadError(f"Duplicate field '{name}' in template '{entity_type}'.")
        seen.add(name)
        aliases = entry.get("aliases") or []
        if not isinstance(aliases, list):
            raise TemplateLoadError(f"Aliases for '{name}' must be a list.")
        fields.append(
            FieldSpec(
                name=name,
                required=bool(entry.get("required", False)),
                description=str(entry.get("description") or ""),
                example="" if entry.get("example") is None else str(entry.get("example")),
                aliases=frozenset(normalize_header(alias) for alias in aliases if normalize_header(alias)),
            )
        )

    width = len(fields)
    sample_rows: list[Tuple[str, ...]] = []
    for row in raw.get("sample_rows") or []:
        if not isinstance(row, list) or len(row) != width:
            raise TemplateLoadError(f"Sample rows for '{entity_type}' must list {width} values.")
        sample_rows.append(tuple("" if value is None else str(value) for value in row))

    return ImportTemplate(
        version=version,
        entity_type=entity_type,
        label=str(raw.get("label") or entity_type.title()),
        fields=tuple(fields),
        sample_rows=tuple(sample_rows),
        checksum=_compute_checksum(raw),
        path=path,
    )


class TemplateRegistry:
    """Static catalog of import templates keyed by entity type."""

    def __init__(self, templates: Mapping[str, ImportTemplate]):
        self._templates = dict(templates)

    @classmethod
    def from_directory(cls, directory: str | Path) -> "TemplateRegistry":
        directory = Path(directory)
        if not directory.is_dir():
            raise TemplateLoadError(f"Template directory not found at {directory}")
        templates: dict[str, ImportTemplate] = {}
        for path in sorted(directory.glob("*.yaml")):
            template = load_template(path)
            if template.entity_type in templates:
                raise TemplateLoadError(f"Entity type '{template.entity_type}' is defined twice.")
            templates[template.entity_type] = template
        return cls(templates)

    def get(self, entity_type: str) -> ImportTemplate:
        key = (entity_type or "").strip().lower()
        template = self._templates.get(key)
        if template is None:
            raise UnknownEntityType(entity_type, available=self.entity_types())
        return template

    def entity_types(self) -> Tuple[str, ...]:
        return tuple(self._templates)

    def __contains__(self, entity_type: object) -> bool:
        return isinstance(entity_type, str) and entity_type.strip().lower() in self._templates

    def __iter__(self):
        return iter(self._templates.values())


def _directory_fingerprint(directory: Path) -> tuple[tuple[str, float], ...]:
    return tuple((path.name, path.stat().st_mtime) for path in sorted(directory.glob("*.yaml")))


def get_template_registry(directory: str | Path | None = None) -> TemplateRegistry:
    """
    Return the template registry for the active app, reloading when a file changes.

    Outside an app context the registry is loaded fresh from ``directory``.
    """

    if directory is None:
        if not has_app_context():
            raise TemplateLoadError("IMPORTER_TEMPLATE_DIR is unavailable outside an application context.")
        directory = current_app.config.get("IMPORTER_TEMPLATE_DIR")
        if not directory:
            raise TemplateLoadError("IMPORTER_TEMPLATE_DIR is not configured.")
    directory = Path(directory)

    if not has_app_context():
        return TemplateRegistry.from_directory(directory)

    cache: dict[str, tuple[TemplateRegistry, tuple]] = current_app.extensions.setdefault(TEMPLATE_CACHE_KEY, {})
    fingerprint = _directory_fingerprint(directory) if directory.is_dir() else ()
    cached = cache.get(str(directory))
    if cached and cached[1] == fingerprint:
        return cached[0]

    registry = TemplateRegistry.from_directory(directory)
    cache[str(directory)] = (registry, fingerprint)
    current_app.logger.debug(
        "Import templates loaded",
        extra={"importer_template_dir": str(directory), "importer_entity_types": registry.entity_types()},
    )
    return registry
