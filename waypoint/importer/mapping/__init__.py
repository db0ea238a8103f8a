"""Column mapping heuristics for uploaded spreadsheets.

A mapping is a plain ``dict`` of target field -> chosen source header (or
``None``). Proposals are advisory; callers may edit the dict before confirming
and use :func:`detect_confidence` to re-score the edited result.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Iterable, Mapping, Sequence, Tuple

from ..contracts.templates import ImportTemplate, normalize_header

ColumnMapping = Dict[str, "str | None"]


class MatchConfidence(str, enum.Enum):
    EXACT = "exact"
    ALIAS = "alias"
    NONE = "none"


@dataclass(frozen=True)
class MappingProposal:
    mapping: Mapping[str, str | None]
    confidence: Mapping[str, MatchConfidence]

    @property
    def unmapped(self) -> Tuple[str, ...]:
        return tuple(field for field, header in self.mapping.items() if header is None)

    def as_dict(self) -> dict[str, Any]:
        return {
            "mapping": dict(self.mapping),
            "confidence": {field: level.value for field, level in self.confidence.items()},
        }


def propose(source_headers: Sequence[str], template: ImportTemplate) -> ColumnMapping:
    """
    Propose a target -> source header mapping.

    Target fields are visited in template order. Each takes an unclaimed exact
    (case-insensitive) header match first, then the first unclaimed header that
    is a listed alias. A header is claimed by at most one field, so ambiguity is
    resolved by template order rather than upload order.
    """

    normalized = [normalize_header(header) for header in source_headers]
    claimed: set[int] = set()
    mapping: ColumnMapping = {}

    for field_spec in template.fields:
        target = field_spec.name.lower()
        chosen: int | None = None
        for index, header in enumerate(normalized):
            if index not in claimed and header and header == target:
                chosen = index
                break
        if chosen is None:
            for index, header in enumerate(normalized):
                if index not in claimed and header and header in field_spec.aliases:
                    chosen = index
                    break
        if chosen is None:
            mapping[field_spec.name] = None
            continue
        claimed.add(chosen)
        mapping[field_spec.name] = source_headers[chosen]

    return mapping


def detect_confidence(
    source_headers: Sequence[str],
    target_fields: Iterable[str],
    mapping: Mapping[str, str | None],
) -> Dict[str, MatchConfidence]:
    """
    Score an arbitrary mapping with the same exact/alias test used by :func:`propose`.

    ``exact`` when the chosen header equals the target name case-insensitively,
    otherwise ``alias`` whenever a header is chosen, including hand-picked
    headers outside the synonym list. A header that is not part of the upload
    is treated as unmapped.
    """

    available = {normalize_header(header) for header in source_headers}
    confidence: Dict[str, MatchConfidence] = {}
    for target in target_fields:
        header = normalize_header(mapping.get(target))
        if not header or header not in available:
            confidence[target] = MatchConfidence.NONE
        elif header == target.lower():
            confidence[target] = MatchConfidence.EXACT
        else:
            confidence[target] = MatchConfidence.ALIAS
    return confidence


def propose_with_confidence(source_headers: Sequence[str], template: ImportTemplate) -> MappingProposal:
    mapping = propose(source_headers, template)
    confidence = detect_confidence(source_headers, template.target_fields, mapping)
    return MappingProposal(mapping=mapping, confidence=confidence)


def missing_required(template: ImportTemplate, mapping: Mapping[str, str | None]) -> Tuple[str, ...]:
    """Return required target fields left unmapped."""

    return tuple(field for field in template.required_fields if not mapping.get(field))


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def apply_mapping(
    row: Mapping[str, Any],
    mapping: Mapping[str, str | None],
    target_fields: Iterable[str],
) -> Dict[str, str]:
    """
    Project a raw source row onto target fields.

    Unmapped fields become ``""``; dates render as ISO strings so the
    validator sees one representation whether the file was CSV or XLSX.
    """

    projected: Dict[str, str] = {}
    for target in target_fields:
        header = mapping.get(target)
        projected[target] = _stringify(row.get(header)) if header else ""
    return projected


__all__ = [
    "ColumnMapping",
    "MappingProposal",
    "MatchConfidence",
    "apply_mapping",
    "detect_confidence",
    "missing_required",
    "propose",
    "propose_with_confidence",
]
