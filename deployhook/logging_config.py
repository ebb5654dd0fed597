"""
Structured logging configuration using structlog.

All logs are output as JSON with consistent context fields.
"""
import structlog
import logging
import sys


def configure_logging():
    """Configure structlog for JSON output with context."""

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=logging.INFO,
    )

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger()


# Create logger instance
logger = configure_logging()


def get_logger(**context):
    """
    Get a logger with additional context bound.

    Usage:
        log = get_logger(deployment_id=deployment_id, site_id=site_id)
        log.info("message", extra_field=value)
    """
    return logger.bind(**context)


class DeploymentLogger:
    """
    Fire-and-forget diagnostics for the deployment pipeline.

    Every method swallows its own failures: a broken log sink must never
    change the outcome of a deployment.
    """

    def __init__(self, **context):
        self._log = get_logger(**context)

    def log(self, context: str, message: str, **data) -> None:
        try:
            self._log.info(message, component=context, **data)
        except Exception:  # noqa: BLE001
            pass

    def warning(self, context: str, message: str, **data) -> None:
        try:
            self._log.warning(message, component=context, **data)
        except Exception:  # noqa: BLE001
            pass

    def error(self, context: str, message: str, **data) -> None:
        try:
            self._log.error(message, component=context, **data)
        except Exception:  # noqa: BLE001
            pass

    def step(self, deployment_id: str, step: str, status: str, **data) -> None:
        """Record one step of a deployment's progress."""
        self.log(
            "Deployment",
            "deployment_step",
            deployment_id=deployment_id,
            step=step,
            status=status,
            **data
        )
