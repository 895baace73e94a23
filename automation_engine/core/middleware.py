"""HTTP middleware: request correlation, error mapping and timing."""

import logging
import time
import uuid
from datetime import datetime
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .exceptions import WorkflowEngineError, create_error_response, get_status_code_for_error
from .logging import get_logger, log_with_context, logging_context

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
ORGANIZATION_HEADER = "X-Organization-Id"


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 1)


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Correlates logs with a request id and renders uncaught errors as JSON.

    Engine errors that escape a route keep their mapped status code and
    error body; anything else becomes an opaque 500 carrying the request id
    so the caller can quote it.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        route = f"{request.method} {request.url.path}"
        started = time.perf_counter()

        with logging_context(request_id=request_id, organization_id=request.headers.get(ORGANIZATION_HEADER)):
            try:
                response = await call_next(request)
            except WorkflowEngineError as e:
                log_with_context(
                    logger, logging.WARNING, f"{route} -> {e.error_code}",
                    status=get_status_code_for_error(e), elapsed_ms=_elapsed_ms(started), error=e.to_dict()
                )
                return JSONResponse(
                    status_code=get_status_code_for_error(e),
                    content=create_error_response(e),
                    headers={REQUEST_ID_HEADER: request_id}
                )
            except Exception as e:
                logger.exception(f"{route} -> unhandled {type(e).__name__} after {_elapsed_ms(started)}ms")
                return JSONResponse(
                    status_code=500,
                    content={
                        "error": "InternalServerError",
                        "message": "An unexpected error occurred",
                        "details": {"error_type": type(e).__name__, "timestamp": datetime.utcnow().isoformat()},
                        "request_id": request_id,
                    },
                    headers={REQUEST_ID_HEADER: request_id}
                )

            log_with_context(
                logger, logging.INFO, f"{route} -> {response.status_code}",
                status=response.status_code, elapsed_ms=_elapsed_ms(started)
            )
            response.headers[REQUEST_ID_HEADER] = request_id
            return response


class PerformanceMonitoringMiddleware(BaseHTTPMiddleware):
    """Adds ``X-Response-Time`` and warns about requests slower than the threshold."""

    def __init__(self, app, slow_request_threshold: float = 5.0):
        super().__init__(app)
        self.slow_request_threshold = slow_request_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - started

        if elapsed > self.slow_request_threshold:
            logger.warning(
                f"Slow request {request.method} {request.url.path}: "
                f"{elapsed:.3f}s over the {self.slow_request_threshold}s threshold"
            )

        response.headers["X-Response-Time"] = f"{elapsed:.3f}s"
        return response
