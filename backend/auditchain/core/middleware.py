"""
Request context middleware and exception handlers.

Every response, success or error, carries ``X-Correlation-ID``. Errors
share one JSON envelope: ``{"error": {"code", "message", "detail"}}``.
"""

from __future__ import annotations

import re
import time
import uuid
from collections.abc import Awaitable, Callable

import structlog
from fastapi import Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware

from auditchain.core.errors import AppError, ErrorCode, RateLimited

_log = structlog.get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"

# W3C trace context: version-traceid-parentid-flags
_TRACEPARENT = re.compile(r"^[0-9a-f]{2}-([0-9a-f]{32})-([0-9a-f]{16})-[0-9a-f]{2}$")

# Conditions a client may retry after a short pause
_RETRY_AFTER_SECONDS = {
    ErrorCode.CHAIN_CONTENTION: "1",
    ErrorCode.PERSISTENCE_FAILURE: "5",
}


def parse_traceparent(header: str | None) -> tuple[str, str] | None:
    """Return ``(trace_id, span_id)`` from a W3C ``traceparent`` header."""
    if not header:
        return None
    match = _TRACEPARENT.match(header.strip().lower())
    if match is None:
        return None
    return match.group(1), match.group(2)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Bind correlation and trace identifiers to the request's log context.

    The correlation ID is taken from the caller when present. A valid
    ``traceparent`` is exposed as ``request.state.trace`` and logged with
    every line written while serving the request.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        trace = parse_traceparent(request.headers.get("traceparent"))

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            correlation_id=correlation_id,
            method=request.method,
            path=request.url.path,
        )
        if trace is not None:
            structlog.contextvars.bind_contextvars(trace_id=trace[0], span_id=trace[1])
        request.state.correlation_id = correlation_id
        request.state.trace = trace

        start = time.perf_counter()
        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        _log.info(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - start) * 1000, 1),
        )
        return response


# ── Exception handlers ────────────────────────────────────────────────── #


def _error_response(
    request: Request, status_code: int, body: dict, extra_headers: dict[str, str] | None = None
) -> JSONResponse:
    headers = {CORRELATION_HEADER: getattr(request.state, "correlation_id", "")}
    headers.update(extra_headers or {})
    return JSONResponse(status_code=status_code, content=body, headers=headers)


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    log = _log.error if exc.http_status >= 500 else _log.warning
    log("application_error", error_code=exc.code.value, message=exc.message, http_status=exc.http_status)
    retry_after = _RETRY_AFTER_SECONDS.get(exc.code)
    return _error_response(
        request,
        exc.http_status,
        exc.to_dict(),
        {"Retry-After": retry_after} if retry_after else None,
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed paths, queries and bodies as EVT_001 in the shared envelope."""
    errors = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]
    _log.info("request_rejected", errors=len(errors))
    return _error_response(
        request,
        422,
        {
            "error": {
                "code": ErrorCode.EVENT_VALIDATION_FAILED.value,
                "message": "Request validation failed",
                "detail": {"errors": errors},
            }
        },
    )


def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    error = RateLimited(str(exc.detail))
    _log.warning("rate_limited", limit=error.detail["limit"])
    return _error_response(request, error.http_status, error.to_dict())


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all; never leaks internal detail to the client."""
    _log.exception("unhandled_exception", exc_info=exc)
    return _error_response(
        request,
        500,
        {
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "An unexpected internal error occurred.",
                "detail": {},
            }
        },
    )
