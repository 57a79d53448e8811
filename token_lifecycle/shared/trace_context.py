"""Correlation-id propagation via contextvars.

- The gateway (or any caller) sets a correlation id on request entry
- The status service stamps it on new deployments and structured error logs
- Uses Python contextvars: zero dependency, async-safe
"""

from __future__ import annotations

from collections.abc import Generator  # noqa: TC003 -- used at runtime by contextmanager
from contextlib import contextmanager
from contextvars import ContextVar, Token
from uuid import uuid4

# The single ContextVar holding the current correlation id string.
current_correlation_id: ContextVar[str] = ContextVar("current_correlation_id", default="")


def get_correlation_id() -> str:
    """Return the current correlation id (empty string if not set)."""
    return current_correlation_id.get()


def set_correlation_id(correlation_id: str) -> Token[str]:
    """Set the correlation id for the current context. Returns a reset token."""
    return current_correlation_id.set(correlation_id)


@contextmanager
def correlation_context(correlation_id: str | None = None) -> Generator[str, None, None]:
    """Scoped correlation id context manager.

    Sets the id for the duration of the `with` block, then restores the
    previous value on exit. A new UUID4 is generated when none is given.

    Usage::

        with correlation_context("req-abc") as cid:
            # get_correlation_id() == "req-abc"
            ...
    """
    effective_id = correlation_id if correlation_id else str(uuid4())
    token = current_correlation_id.set(effective_id)
    try:
        yield effective_id
    finally:
        current_correlation_id.reset(token)
