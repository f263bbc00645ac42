"""
HTTP middleware and exception handlers.

Every request gets a correlation id (the caller's X-Correlation-ID or a fresh
one) echoed on the response. Requests are logged with phone numbers masked.
AppException subclasses map to their own status and error body; anything else
is a 500 that hides internals.
"""
import re
import time
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from outreach.core.exceptions import AppException, ErrorCode
from outreach.core.logging import get_correlation_id, get_logger, set_correlation_id

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"

# phone numbers inside URL paths or query values
_PHONE_RE = re.compile(r"(\d{4})\d{4,}(\d{3})")


def _mask_pii(value: str) -> str:
    """Mask the middle digits of phone numbers"""
    return _PHONE_RE.sub(r"\1****\2", value)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = set_correlation_id(request.headers.get(CORRELATION_HEADER))
        request.state.correlation_id = correlation_id
        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One line when a request starts and one when it ends; 4xx/5xx end as warnings"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        fields = {"method": request.method, "path": _mask_pii(request.url.path)}
        logger.info(
            "Request started",
            extra_data={
                **fields,
                "query_params": {k: _mask_pii(v) for k, v in request.query_params.items()},
                "client_host": request.client.host if request.client else None,
            },
        )
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "Request failed",
                extra_data={**fields, "duration_seconds": round(time.perf_counter() - started, 4), "error": str(e)},
                exc_info=True,
            )
            raise

        log = logger.info if response.status_code < 400 else logger.warning
        log(
            "Request completed",
            extra_data={
                **fields,
                "status_code": response.status_code,
                "duration_seconds": round(time.perf_counter() - started, 4),
            },
        )
        return response


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    logger.warning(
        f"Request rejected: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "message": exc.message,
            "details": exc.details,
            "path": _mask_pii(request.url.path),
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={CORRELATION_HEADER: get_correlation_id()},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "message": str(exc),
            "path": _mask_pii(request.url.path),
        },
        exc_info=True,
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "An unexpected error occurred",
                "details": {},
            }
        },
        headers={CORRELATION_HEADER: get_correlation_id()},
    )


def setup_middleware(app: FastAPI) -> None:
    # last added runs first: CorrelationId -> RequestLogging -> app
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
