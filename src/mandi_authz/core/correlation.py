"""
Check Correlation for Step-Up Tracing.

Every gated check runs inside a check context so that the inquiry, the
prompt, the verification and the audit events it produces share one ID.

Usage:
    with check_context(resource_key="payments_log.list", action="VIEW") as cid:
        logger.info("Checking step-up")  # carries check_id=cid

    # In outgoing requests
    headers.update(CorrelationHeaders.to_headers(get_check_id()))
"""

from __future__ import annotations

import contextvars
import uuid
from contextlib import contextmanager
from typing import Any, Generator

_check_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "check_id", default=None
)

_check_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "check_context", default={}
)


def get_check_id() -> str | None:
    """
    Get the current check ID.

    Returns:
        Current check ID or None outside a check context
    """
    return _check_id.get()


def generate_check_id() -> str:
    """
    Generate a new check ID.

    Format: su-{16 hex chars} (su = step-up)

    Returns:
        New unique check ID
    """
    return f"su-{uuid.uuid4().hex[:16]}"


@contextmanager
def check_context(
    check_id: str | None = None,
    **extra_context: Any,
) -> Generator[str, None, None]:
    """
    Scope a check ID (and extra fields) to a block of sync or async code.

    Args:
        check_id: ID to use (generates a new one if None)
        **extra_context: Fields to attach to every log line, e.g. resource_key

    Yields:
        The active check ID
    """
    cid = check_id or generate_check_id()

    id_token = _check_id.set(cid)
    ctx_token = _check_context.set({**_check_context.get(), **extra_context})
    try:
        yield cid
    finally:
        _check_context.reset(ctx_token)
        _check_id.reset(id_token)


def get_check_context() -> dict[str, Any]:
    """
    Get the full check context.

    Returns:
        Extra context fields plus check_id
    """
    context = dict(_check_context.get())
    context["check_id"] = _check_id.get()
    return context


class CorrelationHeaders:
    """Header names used to propagate the check ID to the admin API."""

    CORRELATION_ID: str = "X-Correlation-ID"

    @classmethod
    def to_headers(cls, check_id: str | None) -> dict[str, str]:
        """
        Create headers carrying the check ID.

        Args:
            check_id: Current check ID, may be None

        Returns:
            Headers dictionary (empty outside a check)
        """
        if not check_id:
            return {}
        return {cls.CORRELATION_ID: check_id}


class CorrelatedLogger:
    """
    Logger wrapper that adds the check context to every record.

    Usage:
        logger = CorrelatedLogger(logging.getLogger(__name__))

        with check_context(resource_key="mandis.edit"):
            logger.info("Step-up required")
            # record.check_id and record.resource_key are set
    """

    def __init__(self, logger: Any) -> None:
        """
        Initialize correlated logger.

        Args:
            logger: Python logger instance to wrap
        """
        self._logger = logger

    def _add_context(self, kwargs: dict[str, Any]) -> dict[str, Any]:
        extra = kwargs.get("extra", {})
        extra.update(get_check_context())
        kwargs["extra"] = extra
        return kwargs

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._logger.debug(msg, *args, **self._add_context(kwargs))

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._logger.info(msg, *args, **self._add_context(kwargs))

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._logger.warning(msg, *args, **self._add_context(kwargs))

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._logger.error(msg, *args, **self._add_context(kwargs))
