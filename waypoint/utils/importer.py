"""
Helpers for reading importer configuration from an app or the current app.
"""

from __future__ import annotations

from typing import Iterable, Tuple

from flask import current_app


def _get_config(app=None):
    if app is not None:
        return app.config
    return current_app.config


def is_importer_enabled(app=None) -> bool:
    """Return True when IMPORTER_ENABLED is set."""
    return bool(_get_config(app).get("IMPORTER_ENABLED", False))


def get_importer_adapters(app=None) -> Tuple[str, ...]:
    config = _get_config(app)
    adapters: Iterable[str] = config.get("IMPORTER_ADAPTERS", ())
    return tuple(adapters)


def get_batch_size(app=None) -> int:
    """Configured rows-per-batch, never below one."""
    return max(1, int(_get_config(app).get("IMPORTER_BATCH_SIZE", 500)))


def get_default_strategy(app=None) -> str:
    return str(_get_config(app).get("IMPORTER_DEFAULT_STRATEGY") or "skip")
