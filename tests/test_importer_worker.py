import json
from typing import Any, Dict

from flask import Flask

from waypoint.importer import IMPORTER_EXTENSION_KEY, get_celery_app, init_importer
from waypoint.importer.celery_app import DEFAULT_QUEUE_NAME

EAGER = {"task_always_eager": True, "task_eager_propagates": True}


def build_importer_app(tmp_path, **overrides) -> Flask:
    """
    Construct a minimal Flask app with the importer enabled for worker tests.
    """
    instance_dir = tmp_path / "instance"
    instance_dir.mkdir(exist_ok=True)
    app = Flask(__name__, instance_path=str(instance_dir))
    app.config.update(
        SECRET_KEY="test-secret",
        TESTING=True,
        IMPORTER_ENABLED=True,
        IMPORTER_ADAPTERS=("spreadsheet",),
    )
    app.config.update(overrides)
    init_importer(app)
    return app


def test_celery_defaults_to_sqlite_transport(tmp_path):
    sqlite_path = tmp_path / "instance" / "custom.sqlite"

    app = build_importer_app(tmp_path, CELERY_SQLITE_PATH="custom.sqlite", CELERY_CONFIG=EAGER)

    celery_app = get_celery_app(app)
    assert celery_app is not None
    assert celery_app.conf.broker_url == f"sqla+sqlite:///{sqlite_path.as_posix()}"
    assert celery_app.conf.result_backend == f"db+sqlite:///{sqlite_path.as_posix()}"
    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert celery_app.conf.worker_prefetch_multiplier == 1
    assert celery_app.conf.task_acks_late is True
    assert app.extensions[IMPORTER_EXTENSION_KEY]["celery_app"] is celery_app


def test_explicit_broker_urls_win(tmp_path):
    app = build_importer_app(
        tmp_path,
        CELERY_BROKER_URL="redis://localhost:6379/0",
        CELERY_RESULT_BACKEND="redis://localhost:6379/1",
    )

    celery_app = get_celery_app(app)
    assert celery_app.conf.broker_url == "redis://localhost:6379/0"
    assert celery_app.conf.result_backend == "redis://localhost:6379/1"


def test_celery_config_json_string_is_applied(tmp_path):
    app = build_importer_app(tmp_path, CELERY_CONFIG=json.dumps({"task_always_eager": True, "task_time_limit": 60}))

    celery_app = get_celery_app(app)
    assert celery_app.conf.task_always_eager is True
    assert celery_app.conf.task_time_limit == 60


def test_invalid_celery_config_is_ignored(tmp_path):
    app = build_importer_app(tmp_path, CELERY_CONFIG="{not json")

    assert get_celery_app(app).conf.task_always_eager is False


def test_pipeline_tasks_are_registered(tmp_path):
    celery_app = get_celery_app(build_importer_app(tmp_path, CELERY_CONFIG=EAGER))

    for name in ("importer.healthcheck", "importer.pipeline.ingest_file", "importer.pipeline.reconcile_laserfiche"):
        assert name in celery_app.tasks


def test_worker_ping_cli(tmp_path):
    app = build_importer_app(tmp_path, IMPORTER_WORKER_ENABLED=True, CELERY_CONFIG=EAGER, APP_VERSION="9.9.9")

    runner = app.test_cli_runner()
    result = runner.invoke(args=["importer", "worker", "ping"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "ok"
    assert payload["app_version"] == "9.9.9"
    assert "timestamp" in payload
    assert "worker_hostname" in payload


def test_worker_group_warns_when_flag_disabled(tmp_path):
    app = build_importer_app(tmp_path, CELERY_CONFIG=EAGER)

    result = app.test_cli_runner().invoke(args=["importer", "worker", "ping"])

    assert result.exit_code == 0, result.output
    assert "Warning: IMPORTER_WORKER_ENABLED is false." in result.output


def test_worker_run_invokes_celery(tmp_path, monkeypatch):
    app = build_importer_app(tmp_path, IMPORTER_WORKER_ENABLED=True, CELERY_CONFIG=EAGER)
    celery_app = get_celery_app(app)
    assert celery_app is not None

    calls: Dict[str, Any] = {}

    def fake_worker_main(argv=None):
        calls["argv"] = argv

    monkeypatch.setattr(celery_app, "worker_main", fake_worker_main)

    runner = app.test_cli_runner()
    result = runner.invoke(
        args=[
            "importer",
            "worker",
            "run",
            "--loglevel",
            "debug",
            "--concurrency",
            "2",
            "--pool",
            "solo",
            "--queues",
            "imports",
        ]
    )

    assert result.exit_code == 0, result.output
    assert "Starting importer worker (queues: imports, loglevel: debug, pool: solo)" in result.output
    assert calls["argv"] == [
        "worker",
        "--loglevel",
        "debug",
        "-Q",
        "imports",
        "--concurrency",
        "2",
        "--pool",
        "solo",
    ]


def test_worker_health_endpoint_states(tmp_path):
    app = build_importer_app(tmp_path)
    client = app.test_client()

    disabled_resp = client.get("/importer/worker_health")
    assert disabled_resp.status_code == 200
    disabled_payload = disabled_resp.get_json()
    assert disabled_payload["status"] == "disabled"
    assert disabled_payload["worker_enabled"] is False

    eager_app = build_importer_app(tmp_path, IMPORTER_WORKER_ENABLED=True, CELERY_CONFIG=EAGER)
    eager_client = eager_app.test_client()
    ok_resp = eager_client.get("/importer/worker_health")
    assert ok_resp.status_code == 200
    ok_payload = ok_resp.get_json()
    assert ok_payload["status"] == "ok"
    assert ok_payload["heartbeat"]["status"] == "ok"


def test_disabled_importer_skips_registration(tmp_path):
    app = build_importer_app(tmp_path, IMPORTER_ENABLED=False)

    assert "importer" not in app.blueprints
    assert get_celery_app(app) is None
    result = app.test_cli_runner().invoke(args=["importer"])
    assert result.exit_code != 0
    assert "Importer commands are unavailable" in result.output
