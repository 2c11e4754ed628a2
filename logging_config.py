# logging_config.py - structlog setup and metric-style log events for the disaster pipeline
import logging
import sys
from typing import Optional

import structlog

from config import CONFIG

# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = ("urllib3", "requests", "httpx", "openai", "redis")


def _add_service(service_name: str):
    def processor(logger, method_name, event_dict):
        event_dict.setdefault("service", service_name)
        return event_dict
    return processor


def setup_logging(service_name: Optional[str] = None) -> None:
    """
    Configure structlog on top of stdlib logging.

    JSON lines when STRUCTURED_LOGGING is set or ENV=production, the
    console renderer otherwise.
    """
    app = CONFIG.app
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if service_name:
        processors.insert(0, _add_service(service_name))

    if app.structured_logging or app.env.lower() == "production":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, app.log_level.upper(), logging.INFO),
        handlers=[logging.StreamHandler()],
        force=True,
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


class MetricsLogger:
    """Fixed event names and fields for the numbers dashboards are built on."""

    def __init__(self, logger: structlog.stdlib.BoundLogger):
        self.logger = logger

    def post_enriched(self, post_id: str, severity: float, duration_ms: float,
                      analysis_method: str, location: Optional[str] = None, **kwargs):
        self.logger.info("post_enriched", post_id=post_id, severity=severity, duration_ms=duration_ms,
                         analysis_method=analysis_method, location=location, **kwargs)

    def analyzer_request(self, provider: str, operation: str, duration_ms: float,
                         success: bool, attempts: int = 1, **kwargs):
        self.logger.info("analyzer_request", provider=provider, operation=operation,
                         duration_ms=duration_ms, success=success, attempts=attempts, **kwargs)

    def database_operation(self, operation: str, table: str, duration_ms: float,
                           rows_affected: Optional[int] = None, **kwargs):
        self.logger.info("database_operation", operation=operation, table=table,
                         duration_ms=duration_ms, rows_affected=rows_affected, **kwargs)

    def notification_dispatched(self, kind: str, successful: int, failed: int,
                                duration_ms: float, alert_id: Optional[str] = None, **kwargs):
        self.logger.info("notification_dispatched", kind=kind, alert_id=alert_id, successful=successful,
                         failed=failed, duration_ms=duration_ms, **kwargs)


def get_metrics_logger(name: str) -> MetricsLogger:
    return MetricsLogger(get_logger(name))


# Library modules may log before main() configures anything
setup_logging("disaster-pipeline")
