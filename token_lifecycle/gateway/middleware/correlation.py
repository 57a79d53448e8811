"""Correlation id middleware.

Reads X-Correlation-ID from the request (or generates one), binds it to the
trace context for the duration of the request and echoes it on the response.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from token_lifecycle.shared.trace_context import correlation_context

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from fastapi import Request, Response

CORRELATION_HEADER = "X-Correlation-ID"
_MAX_LENGTH = 128


async def correlation_id_middleware(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    incoming = request.headers.get(CORRELATION_HEADER, "").strip()[:_MAX_LENGTH]
    with correlation_context(incoming or None) as correlation_id:
        response = await call_next(request)
    response.headers[CORRELATION_HEADER] = correlation_id
    return response
