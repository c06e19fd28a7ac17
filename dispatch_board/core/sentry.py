"""
Sentry integration for error tracking.

Features:
- Automatic exception capture for the API and board background tasks
- Actor context on every event
- Client-side faults (4xx) and health/metrics traffic filtered out

Disabled unless SENTRY_DSN is set.
"""

import logging
from contextvars import ContextVar
from typing import Any, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.httpx import HttpxIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration

from dispatch_board.core.config import settings

logger = logging.getLogger(__name__)

# Context for actor tracking
_actor_context: ContextVar[Optional[dict]] = ContextVar("sentry_actor", default=None)

_enabled = False


def init_sentry(dsn: Optional[str] = None) -> bool:
    """
    Initialize Sentry SDK.

    Call this once during application startup.

    Returns:
        True if Sentry was initialized, False otherwise.
    """
    global _enabled

    dsn = dsn or settings.SENTRY_DSN
    if not dsn:
        logger.info("SENTRY_DSN not configured, error tracking disabled")
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=settings.ENVIRONMENT,
            release=f"{settings.APP_NAME}@{settings.APP_VERSION}",
            traces_sample_rate=0.1 if settings.ENVIRONMENT == "production" else 1.0,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                RedisIntegration(),
                HttpxIntegration(),
                LoggingIntegration(
                    level=logging.INFO,
                    event_level=logging.ERROR,
                ),
            ],
            send_default_pii=False,
            before_send=_before_send,
            before_send_transaction=_before_send_transaction,
            max_breadcrumbs=50,
            attach_stacktrace=True,
            include_local_variables=settings.ENVIRONMENT != "production",
        )
    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")
        return False

    _enabled = True
    logger.info(f"Sentry initialized for {settings.ENVIRONMENT} environment")
    return True


def _before_send(event: dict, hint: dict) -> Optional[dict]:
    """Drop client-side faults and attach the acting user."""
    if "exc_info" in hint:
        _, exc_value, _ = hint["exc_info"]
        status_code = getattr(exc_value, "status_code", None)
        if status_code and 400 <= status_code < 500:
            return None

    actor = _actor_context.get()
    if actor:
        event["user"] = actor

    return event


def _before_send_transaction(event: dict, hint: dict) -> Optional[dict]:
    """Skip health check and metrics transactions."""
    transaction_name = event.get("transaction", "")
    if any(path in transaction_name for path in ["/health", "/metrics", "/docs"]):
        return None

    return event


def set_actor_context(actor_id: str, role: str, display_name: Optional[str] = None) -> None:
    """Attach the acting user to errors raised while handling this request."""
    actor = {"id": actor_id, "role": role}
    if display_name:
        actor["username"] = display_name

    _actor_context.set(actor)
    if _enabled:
        sentry_sdk.set_user(actor)


def capture_exception(
    error: Exception,
    extra: Optional[dict[str, Any]] = None,
    tags: Optional[dict[str, Any]] = None,
) -> None:
    """Send ``error`` to Sentry, or log it when tracking is disabled."""
    if not _enabled:
        logger.error(f"Error (Sentry disabled): {error}", exc_info=error)
        return

    with sentry_sdk.new_scope() as scope:
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        for key, value in (tags or {}).items():
            scope.set_tag(key, str(value))
        sentry_sdk.capture_exception(error)
