"""
Sentry configuration for error tracking.

Captures unhandled exceptions with site and deployment context.
"""
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from deployhook.config import settings
from deployhook.logging_config import get_logger


log = get_logger(component="sentry")


def configure_sentry():
    """
    Initialize Sentry with FastAPI and SQLAlchemy integrations.

    Requires SENTRY_DSN environment variable to be set.
    """
    dsn = settings.SENTRY_DSN

    if not dsn:
        log.warning("sentry_disabled", reason="SENTRY_DSN not set")
        return

    sentry_sdk.init(
        dsn=dsn,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
        ],
        before_send=add_context,
        # Sample rate: capture 10% of transactions for performance monitoring
        traces_sample_rate=0.1,
        environment=settings.ENVIRONMENT,
        release=settings.APP_VERSION,
    )

    log.info("sentry_initialized", environment=settings.ENVIRONMENT)


def add_context(event, hint):
    """Tag every event with the site this instance deploys."""
    event.setdefault("tags", {})["site_id"] = settings.SITE_ID
    return event


def capture_exception(exc_info=None, **context):
    """
    Capture an exception to Sentry.

    Usage:
        try:
            # some code
        except Exception as e:
            capture_exception(e, deployment_id=deployment.id)
    """
    if sentry_sdk.get_client().is_active():
        with sentry_sdk.new_scope() as scope:
            for key, value in context.items():
                scope.set_tag(key, value)
            sentry_sdk.capture_exception(exc_info)
