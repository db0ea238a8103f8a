"""
District discipline importer.

``init_importer`` mounts the blueprint and CLI group when ``IMPORTER_ENABLED``
is set and records importer state in ``app.extensions['importer']``.
"""

from __future__ import annotations

from typing import Iterable, Tuple

from flask import Flask

from waypoint.utils.importer import get_importer_adapters, is_importer_enabled

from .celery_app import ensure_celery_app, get_celery_app
from .cli import get_disabled_importer_group, importer_cli
from .metrics import record_adapter_status
from .pipeline import ImportSessionService, SessionFilters
from .registry import AdapterDescriptor, get_adapter_registry, resolve_adapters
from .views import importer_blueprint

IMPORTER_EXTENSION_KEY = "importer"

__all__ = [
    "init_importer",
    "IMPORTER_EXTENSION_KEY",
    "get_celery_app",
    "ImportSessionService",
    "SessionFilters",
]


def _ensure_extension_state(app: Flask) -> dict:
    return app.extensions.setdefault(
        IMPORTER_EXTENSION_KEY,
        {
            "enabled": False,
            "configured_adapters": (),
            "active_adapters": (),
            "worker_enabled": False,
            "celery_app": None,
        },
    )


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    command_name = importer_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(importer_cli)
    else:
        app.cli.add_command(get_disabled_importer_group())


def init_importer(app: Flask) -> None:
    """
    Conditionally mount the importer blueprint and CLI based on configuration.

    Unknown names in ``IMPORTER_ADAPTERS`` raise ``ValueError``.
    """
    enabled = is_importer_enabled(app)
    configured_adapters: Tuple[str, ...] = get_importer_adapters(app)

    state = _ensure_extension_state(app)
    state.update(
        {
            "enabled": enabled,
            "configured_adapters": configured_adapters,
            "worker_enabled": bool(app.config.get("IMPORTER_WORKER_ENABLED", False)),
        }
    )

    registry = get_adapter_registry()
    if not enabled:
        for name in registry:
            record_adapter_status(name, False)
        state["active_adapters"] = ()
        _set_cli(app, enabled=False)
        app.logger.info("Importer disabled via IMPORTER_ENABLED flag; skipping registration.")
        return

    active_descriptors: Iterable[AdapterDescriptor] = resolve_adapters(configured_adapters, registry)
    state["active_adapters"] = tuple(active_descriptors)
    active_names = {descriptor.name for descriptor in state["active_adapters"]}
    for name in registry:
        record_adapter_status(name, name in active_names)

    ensure_celery_app(app, state)

    if importer_blueprint.name not in app.blueprints and not getattr(app, "_got_first_request", False):
        app.register_blueprint(importer_blueprint)
    elif importer_blueprint.name not in app.blueprints:
        app.logger.warning(
            "Importer blueprint registration skipped because the app has already handled its first request."
        )
    _set_cli(app, enabled=True)

    adapter_names = ", ".join(descriptor.name for descriptor in state["active_adapters"]) or "none"
    app.logger.info("Importer enabled with adapters: %s", adapter_names)
