"""
Unified error capture with optional Sentry integration.

Provides:
- Sentry error tracking when SENTRY_DSN is configured
- Structured logging with request/run context enrichment
- Custom fingerprinting for error grouping
- Graceful degradation when Sentry is unavailable

Usage:
    # Capture an exception
    capture_exception(exc, context={"approval_id": 12})

    # Capture a message (non-exception event)
    capture_message("Circuit opened", level="warning", context={"agent_id": agent_id})

    # Context manager for best-effort operations
    with ErrorHandler("approval_dispatch", context={"item_type": "grant"}) as handler:
        dispatch(...)
    if handler.error:
        ...
"""

from typing import Optional, Any, Dict
from datetime import datetime, timezone
import structlog

from app.core.context import get_request_id, get_context_dict

logger = structlog.get_logger(__name__)

__all__ = [
    "init_sentry",
    "capture_exception",
    "capture_message",
    "ErrorHandler",
]

_sentry_initialized: bool = False


def init_sentry(
    dsn: str,
    environment: str = "production",
    traces_sample_rate: float = 0.1,
    release: Optional[str] = None,
) -> bool:
    """
    Initialize Sentry SDK for error tracking.

    Args:
        dsn: Sentry DSN (from project settings)
        environment: Environment name (production, staging, development)
        traces_sample_rate: Percentage of transactions to trace (0.0-1.0)
        release: Release version (defaults to GIT_COMMIT_SHA)

    Returns:
        True if initialization successful, False otherwise
    """
    global _sentry_initialized

    if not dsn:
        logger.info("Sentry disabled (no DSN provided)")
        return False

    try:
        import logging
        import os

        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
        from sentry_sdk.integrations.logging import LoggingIntegration

        if not release:
            release = os.environ.get("GIT_COMMIT_SHA")

        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            traces_sample_rate=traces_sample_rate,
            release=release,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(
                    level=logging.INFO,
                    event_level=logging.ERROR,
                ),
            ],
            ignore_errors=[
                KeyboardInterrupt,
                SystemExit,
            ],
            traces_sampler=_traces_sampler,
            before_send=_before_send,
        )

        _sentry_initialized = True
        logger.info(
            "Sentry initialized",
            environment=environment,
            traces_sample_rate=traces_sample_rate,
            release=release,
        )
        return True

    except ImportError:
        logger.warning("Sentry SDK not installed, error tracking disabled")
        return False
    except Exception as e:
        logger.error("Failed to initialize Sentry", error=str(e))
        return False


def _traces_sampler(sampling_context: Dict[str, Any]) -> float:
    """Skip health checks and the long-lived event stream."""
    transaction_name = sampling_context.get("transaction_context", {}).get("name", "")
    parent = sampling_context.get("parent_sampled")

    if parent is not None:
        return float(parent)

    if "/health" in transaction_name or "/stream" in transaction_name:
        return 0.0

    return 0.1


def _before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if "request" in event:
        url = event["request"].get("url", "")
        if "/health" in url:
            return None

    request_id = get_request_id()
    if request_id:
        event.setdefault("tags", {})["request_id"] = request_id

    return event


def capture_exception(
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    level: str = "error",
    fingerprint: Optional[list[str]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """
    Capture an exception with Sentry and structured logging.

    Args:
        exc: Exception to capture
        context: Additional context dict (e.g., {"run_id": "..."})
        level: Severity level (debug, info, warning, error, fatal)
        fingerprint: Custom grouping fingerprint for Sentry
        tags: Additional tags for filtering in Sentry

    Returns:
        Sentry event ID or None if not sent
    """
    enriched_context = {
        **get_context_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error_type": type(exc).__name__,
        **(context or {}),
    }

    # Always logged, even without Sentry
    logger.error(
        "Exception captured",
        exc_info=exc,
        **enriched_context,
    )

    if _sentry_initialized:
        try:
            import sentry_sdk

            with sentry_sdk.new_scope() as scope:
                for key, value in enriched_context.items():
                    if value is not None:
                        scope.set_extra(key, value)

                if tags:
                    for key, value in tags.items():
                        scope.set_tag(key, value)

                if fingerprint:
                    scope.fingerprint = fingerprint

                scope.level = level
                return sentry_sdk.capture_exception(exc)
        except Exception as e:
            logger.warning("Failed to send exception to Sentry", error=str(e))

    return None


def capture_message(
    message: str,
    level: str = "info",
    context: Optional[Dict[str, Any]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """
    Capture a message with Sentry (for non-exception events).

    Used for circuit breaker transitions and approval dispatch drift.

    Returns:
        Sentry event ID or None if not sent
    """
    enriched_context = {
        **get_context_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **(context or {}),
    }

    log_func = getattr(logger, level, logger.info)
    log_func(message, **enriched_context)

    if _sentry_initialized:
        try:
            import sentry_sdk

            with sentry_sdk.new_scope() as scope:
                for key, value in enriched_context.items():
                    if value is not None:
                        scope.set_extra(key, value)

                if tags:
                    for key, value in tags.items():
                        scope.set_tag(key, value)

                scope.level = level
                return sentry_sdk.capture_message(message, level=level)
        except Exception as e:
            logger.warning("Failed to send message to Sentry", error=str(e))

    return None


class ErrorHandler:
    """
    Context manager for handling errors with automatic capture.

    Usage:
        # Suppress and capture errors
        with ErrorHandler("approval_dispatch", context={"approval_id": 3}) as handler:
            apply_side_effect(...)
        if handler.error:
            record_drift(handler.error)

        # Re-raise after capturing
        with ErrorHandler("create_run", reraise=True):
            session.commit()

    Args:
        operation: Name of the operation (for grouping in Sentry)
        context: Additional context dict
        capture: Whether to capture the error (default: True)
        reraise: Whether to re-raise exception (default: False)
        fingerprint: Custom fingerprint for Sentry grouping
    """

    def __init__(
        self,
        operation: str,
        context: Optional[Dict[str, Any]] = None,
        capture: bool = True,
        reraise: bool = False,
        fingerprint: Optional[list[str]] = None,
    ):
        self.operation = operation
        self.context = context or {}
        self.capture = capture
        self.reraise = reraise
        self.fingerprint = fingerprint or [operation]
        self.event_id: Optional[str] = None
        self.error: Optional[BaseException] = None

    def __enter__(self) -> "ErrorHandler":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_val is None or not isinstance(exc_val, Exception):
            return False

        self.error = exc_val
        if self.capture:
            self.event_id = capture_exception(
                exc_val,
                context={
                    "operation": self.operation,
                    **self.context,
                },
                fingerprint=self.fingerprint + [type(exc_val).__name__],
            )
        else:
            logger.warning(
                "Operation failed",
                operation=self.operation,
                error=str(exc_val),
                **self.context,
            )

        # Returning True suppresses the exception
        return not self.reraise
