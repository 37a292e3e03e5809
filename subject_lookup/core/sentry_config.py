"""
Sentry error tracking configuration.

This module configures Sentry for error tracking. Portal credentials and
bearer tokens are scrubbed before any event leaves the process.
"""

import logging
import re
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

logger = logging.getLogger(__name__)

_BEARER_PATTERN = re.compile(r'Bearer\s+[A-Za-z0-9._\-]+')
_SENSITIVE_HEADERS = ('Authorization', 'authorization', 'X-Token-Version', 'Cookie', 'cookie')


def init_sentry(
    dsn: str,
    environment: str = 'development',
    release: Optional[str] = None,
    traces_sample_rate: float = 0.1,
    enable_tracing: bool = True
) -> None:
    """
    Initialize Sentry error tracking.

    Args:
        dsn: Sentry DSN (Data Source Name)
        environment: Environment name (development, staging, production)
        release: Release version
        traces_sample_rate: Percentage of transactions to trace (0.0 to 1.0)
        enable_tracing: Whether to enable performance tracing
    """
    if not dsn:
        logger.info("Sentry DSN not configured, error tracking disabled")
        return

    try:
        logging_integration = LoggingIntegration(
            level=logging.INFO,
            event_level=logging.ERROR
        )

        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            release=release,
            traces_sample_rate=traces_sample_rate if enable_tracing else 0.0,
            integrations=[
                logging_integration,
                AsyncioIntegration(),
            ],
            send_default_pii=False,
            attach_stacktrace=True,
            max_breadcrumbs=50,
            before_send=before_send_filter,
        )

        logger.info(
            f"Sentry initialized successfully: environment={environment}, "
            f"traces_sample_rate={traces_sample_rate}"
        )

    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")


def before_send_filter(event, hint):
    """
    Scrub auth material from events before sending them to Sentry.

    Args:
        event: The event dictionary
        hint: Additional information about the event

    Returns:
        Modified event
    """
    if 'request' in event:
        headers = event['request'].get('headers', {})
        for header in _SENSITIVE_HEADERS:
            if header in headers:
                headers[header] = '[Filtered]'

    for value in event.get('exception', {}).get('values', []):
        if isinstance(value.get('value'), str):
            value['value'] = _BEARER_PATTERN.sub('Bearer [Filtered]', value['value'])

    message = event.get('logentry', {}).get('message')
    if isinstance(message, str):
        event['logentry']['message'] = _BEARER_PATTERN.sub('Bearer [Filtered]', message)

    return event


def add_breadcrumb(
    message: str,
    category: str = 'default',
    level: str = 'info',
    data: Optional[dict] = None
) -> None:
    """Add a breadcrumb for debugging context (e.g. 'session', 'lookup')."""
    try:
        sentry_sdk.add_breadcrumb(
            message=message,
            category=category,
            level=level,
            data=data or {}
        )
    except Exception as e:
        logger.debug(f"Failed to add Sentry breadcrumb: {e}")


def capture_exception(error: Exception, **kwargs) -> None:
    """
    Manually capture an exception.

    Args:
        error: The exception to capture
        **kwargs: Additional context (tags, extras)
    """
    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in kwargs.get('tags', {}).items():
                scope.set_tag(key, value)
            for key, value in kwargs.get('extras', {}).items():
                scope.set_extra(key, value)
            sentry_sdk.capture_exception(error)
    except Exception as e:
        logger.error(f"Failed to capture exception in Sentry: {e}")
