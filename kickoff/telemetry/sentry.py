"""
Sentry integration for error tracking.

Provides:
- Automatic exception capture with stacktrace
- FastAPI request context
- Scheduler job context tagging

Security:
- API keys, webhook secrets and auth headers are scrubbed before sending
- Request bodies are NOT captured (webhook payloads carry user ids)
- PII is disabled
"""

import logging
import re
from contextlib import contextmanager
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from kickoff.config import get_settings

logger = logging.getLogger(__name__)

_sentry_initialized = False

SENSITIVE_HEADERS = (
    "x-api-key",
    "x-webhook-secret",
    "authorization",
    "cookie",
    "set-cookie",
    "x-forwarded-for",
)


def scrub_sensitive_data(event: dict, hint: dict) -> Optional[dict]:
    """Scrub secrets and request bodies from Sentry events before sending."""
    request = event.get("request") or {}

    headers = request.get("headers") or {}
    for key in list(headers.keys()):
        if key.lower() in SENSITIVE_HEADERS:
            headers[key] = "[REDACTED]"
    request["headers"] = headers

    query_string = request.get("query_string")
    if isinstance(query_string, str) and query_string:
        request["query_string"] = re.sub(
            r"(?i)(token|api_key|key|secret|password)=([^&]*)",
            r"\1=[REDACTED]",
            query_string,
        )

    if "data" in request:
        request["data"] = "[SCRUBBED]"

    event["request"] = request
    return event


def init_sentry() -> bool:
    """
    Initialize Sentry SDK if SENTRY_DSN is configured.

    Returns True if Sentry was initialized, False otherwise.
    """
    global _sentry_initialized

    if _sentry_initialized:
        return True

    settings = get_settings()
    if not settings.SENTRY_DSN:
        logger.info("Sentry not configured (SENTRY_DSN not set)")
        return False

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            LoggingIntegration(
                level=logging.ERROR,
                event_level=logging.ERROR,
            ),
        ],
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        send_default_pii=False,
        before_send=scrub_sensitive_data,
        ignore_errors=[KeyboardInterrupt, SystemExit],
    )

    _sentry_initialized = True
    logger.info(
        f"Sentry initialized: env={settings.SENTRY_ENVIRONMENT}, "
        f"traces_sample_rate={settings.SENTRY_TRACES_SAMPLE_RATE}"
    )
    return True


@contextmanager
def sentry_job_context(job_id: str, **extra_tags):
    """
    Context manager for scheduler jobs that sets Sentry tags and captures exceptions.

    Usage:
        with sentry_job_context("reconcile"):
            ...

    If an exception occurs, it is captured with the job context before re-raising.
    """
    if not _sentry_initialized:
        yield
        return

    with sentry_sdk.push_scope() as scope:
        scope.set_tag("job_id", job_id)
        scope.set_context("job", {"job_id": job_id, **extra_tags})
        for key, value in extra_tags.items():
            if value is not None:
                scope.set_tag(key, str(value))

        try:
            yield scope
        except Exception as e:
            sentry_sdk.capture_exception(e)
            raise


def capture_exception(exception: Exception, job_id: str = None, **extra_context):
    """
    Capture an exception to Sentry with optional job context.

    Use this where an exception is handled (and not re-raised) but still
    deserves an event, e.g. a per-fixture remote failure.
    """
    if not _sentry_initialized:
        return

    with sentry_sdk.push_scope() as scope:
        if job_id:
            scope.set_tag("job_id", job_id)
        for key, value in extra_context.items():
            scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)
