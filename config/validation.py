# config/validation.py

"""
Environment variable validation for the Waypoint importer service.
Validates required environment variables at startup.
"""

import os
import sys
from typing import List, Tuple


def validate_environment(flask_env: str = None) -> Tuple[bool, List[str]]:
    """
    Validate required environment variables.

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    if flask_env is None:
        flask_env = os.environ.get("FLASK_ENV", "development")

    errors = []

    if flask_env != "production":
        return True, []

    secret_key = os.environ.get("SECRET_KEY", "")
    if not secret_key or secret_key in {"your-secret-key", "dev-secret-key-change-in-production"}:
        errors.append("SECRET_KEY is required in production and must not be a default value.")

    if not os.environ.get("DATABASE_URL"):
        errors.append("DATABASE_URL is required in production. Set it to your PostgreSQL connection string.")

    importer_enabled = os.environ.get("IMPORTER_ENABLED", "false").strip().lower() in {"1", "true", "yes", "on"}
    worker_enabled = os.environ.get("IMPORTER_WORKER_ENABLED", "false").strip().lower() in {"1", "true", "yes", "on"}
    if importer_enabled and worker_enabled:
        # The SQLite transport default is for local development only.
        if not os.environ.get("CELERY_BROKER_URL"):
            errors.append("CELERY_BROKER_URL is required in production when IMPORTER_WORKER_ENABLED=true")
        if not os.environ.get("CELERY_RESULT_BACKEND"):
            errors.append("CELERY_RESULT_BACKEND is required in production when IMPORTER_WORKER_ENABLED=true")

    return len(errors) == 0, errors


def validate_and_exit(flask_env: str = None) -> None:
    """Validate the environment and exit with a readable message on failure."""
    is_valid, errors = validate_environment(flask_env)
    if is_valid:
        return
    print("Environment validation failed:", file=sys.stderr)
    for error in errors:
        print(f"  - {error}", file=sys.stderr)
    sys.exit(1)
