"""
Importer adapter registry.

Adapters register metadata here so configuration can be validated at startup
without touching the readers themselves.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence, Tuple


@dataclass(frozen=True)
class AdapterDescriptor:
    """Metadata describing an importer adapter."""

    name: str
    title: str
    file_extensions: Tuple[str, ...] = ()
    summary: str | None = None


def get_adapter_registry() -> Mapping[str, AdapterDescriptor]:
    """Return the registry of supported adapters in display order."""

    return OrderedDict(
        (
            (
                "spreadsheet",
                AdapterDescriptor(
                    name="spreadsheet",
                    title="Spreadsheet (CSV / XLSX)",
                    file_extensions=("csv", "xlsx", "xlsm"),
                    summary="Template-driven imports of campuses, students, staff profiles and incidents.",
                ),
            ),
            (
                "laserfiche",
                AdapterDescriptor(
                    name="laserfiche",
                    title="Laserfiche DAEP export",
                    file_extensions=("xlsx", "xlsm", "csv"),
                    summary="Reconcile DAEP placement cases from the Laserfiche workflow report.",
                ),
            ),
        )
    )


def resolve_adapters(
    configured: Sequence[str],
    registry: Mapping[str, AdapterDescriptor] | None = None,
) -> Iterable[AdapterDescriptor]:
    """
    Map configured adapter names to registry descriptors, raising on unknowns.
    """
    registry = registry or get_adapter_registry()
    unknown = sorted({adapter for adapter in configured if adapter not in registry})
    if unknown:
        raise ValueError(
            "Unknown importer adapters configured: "
            + ", ".join(unknown)
            + ". Update IMPORTER_ADAPTERS or register these adapters first."
        )
    return tuple(registry[adapter] for adapter in configured)
