# config/monitoring.py

import os

from prometheus_client import Counter, Histogram


class MonitoringConfig:
    """Monitoring and logging configuration"""

    MONITORING_ENABLED = os.environ.get("MONITORING_ENABLED", "false").lower() == "true"
    METRICS_ENDPOINT = os.environ.get("METRICS_ENDPOINT", "/metrics")

    # Logging Configuration
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")  # 'json' or 'text'
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    LOG_FILE_MAX_BYTES = int(os.environ.get("LOG_FILE_MAX_BYTES", 10485760))  # 10MB
    LOG_FILE_BACKUP_COUNT = int(os.environ.get("LOG_FILE_BACKUP_COUNT", 10))

    ENABLE_FILE_LOGGING = os.environ.get("ENABLE_FILE_LOGGING", "true").lower() == "true"
    ENABLE_CONSOLE_LOGGING = os.environ.get("ENABLE_CONSOLE_LOGGING", "true").lower() == "true"

    APP_NAME = os.environ.get("APP_NAME", "Waypoint Importer")
    APP_VERSION = os.environ.get("APP_VERSION", "0.1.0")


class DevelopmentMonitoringConfig(MonitoringConfig):
    """Development-specific monitoring configuration"""

    LOG_LEVEL = "DEBUG"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = True


class ProductionMonitoringConfig(MonitoringConfig):
    """Production-specific monitoring configuration"""

    LOG_LEVEL = "INFO"
    LOG_FORMAT = "json"
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = False  # Usually handled by container orchestration


class TestingMonitoringConfig(MonitoringConfig):
    """Testing-specific monitoring configuration"""

    MONITORING_ENABLED = False
    LOG_LEVEL = "WARNING"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = False
    ENABLE_CONSOLE_LOGGING = False


_LATENCY_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5)


class ImporterMonitoring:
    """Prometheus metric helpers for importer history endpoints."""

    SESSIONS_LIST_COUNTER = Counter(
        "importer_sessions_list_requests_total",
        "Total import session list API requests.",
        labelnames=("status",),
    )
    SESSIONS_LIST_LATENCY = Histogram(
        "importer_sessions_list_request_seconds",
        "Latency histogram for import session list API.",
        labelnames=("status",),
        buckets=_LATENCY_BUCKETS,
    )
    SESSIONS_LIST_RESULT_SIZE = Histogram(
        "importer_sessions_list_result_size",
        "Number of sessions returned by list endpoint.",
        labelnames=("status",),
        buckets=(0, 1, 5, 10, 25, 50, 100, 250, 500),
    )

    SESSION_DETAIL_COUNTER = Counter(
        "importer_session_detail_requests_total",
        "Total import session detail API requests.",
        labelnames=("status",),
    )
    SESSION_DETAIL_LATENCY = Histogram(
        "importer_session_detail_request_seconds",
        "Latency histogram for import session detail API.",
        labelnames=("status",),
        buckets=_LATENCY_BUCKETS,
    )

    ERRORS_EXPORT_COUNTER = Counter(
        "importer_errors_export_requests_total",
        "Total import error CSV export requests.",
        labelnames=("status",),
    )
    ERRORS_EXPORT_LATENCY = Histogram(
        "importer_errors_export_request_seconds",
        "Latency histogram for import error CSV export endpoint.",
        labelnames=("status",),
        buckets=_LATENCY_BUCKETS + (10,),
    )
    ERRORS_EXPORT_ROW_COUNT = Histogram(
        "importer_errors_export_row_count",
        "Row count of exported import errors.",
        labelnames=("status",),
        buckets=(0, 1, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000),
    )

    @classmethod
    def record_sessions_list(cls, *, duration_seconds: float, status: str, result_count: int):
        cls.SESSIONS_LIST_COUNTER.labels(status=status).inc()
        cls.SESSIONS_LIST_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))
        cls.SESSIONS_LIST_RESULT_SIZE.labels(status=status).observe(float(max(result_count, 0)))

    @classmethod
    def record_session_detail(cls, *, duration_seconds: float, status: str):
        cls.SESSION_DETAIL_COUNTER.labels(status=status).inc()
        cls.SESSION_DETAIL_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))

    @classmethod
    def record_errors_export(cls, *, duration_seconds: float, status: str, row_count: int):
        cls.ERRORS_EXPORT_COUNTER.labels(status=status).inc()
        cls.ERRORS_EXPORT_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))
        cls.ERRORS_EXPORT_ROW_COUNT.labels(status=status).observe(float(max(row_count, 0)))
