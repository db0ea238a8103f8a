"""Import contracts: entity templates and the Laserfiche column contract."""

from __future__ import annotations

from .laserfiche import LASERFICHE_COLUMNS, LASERFICHE_KEY_COLUMNS, missing_key_columns
from .templates import (
    FieldSpec,
    ImportTemplate,
    TemplateRegistry,
    get_template_registry,
    load_template,
    normalize_header,
)

__all__ = [
    "FieldSpec",
    "ImportTemplate",
    "TemplateRegistry",
    "get_template_registry",
    "load_template",
    "normalize_header",
    "LASERFICHE_COLUMNS",
    "LASERFICHE_KEY_COLUMNS",
    "missing_key_columns",
]
