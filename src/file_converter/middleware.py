"""Correlation ID middleware and error responses."""

import uuid
from typing import Mapping

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from structlog.contextvars import bind_contextvars, clear_contextvars

from .errors import ConverterError, Forbidden, InternalError, InvalidRequest, NotFound, Unauthorized
from .logging import get_logger

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class CorrelationMiddleware(BaseHTTPMiddleware):
    """
    Assign a correlation ID to each request.

    The ID is taken from a well-formed ``X-Request-ID`` header or generated,
    stored on ``request.state``, bound into the structured logging context
    and echoed on the response.
    """

    @staticmethod
    def _correlation_id(request: Request) -> str:
        header_value = request.headers.get(REQUEST_ID_HEADER, "")
        if header_value:
            try:
                return str(uuid.UUID(header_value))
            except ValueError:
                pass
        return str(uuid.uuid4())

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = self._correlation_id(request)
        request.state.correlation_id = correlation_id
        clear_contextvars()
        bind_contextvars(correlation_id=correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_contextvars()
        response.headers[REQUEST_ID_HEADER] = correlation_id
        return response


# Framework HTTP errors that have a matching error kind
_HTTP_ERRORS: dict[int, type[ConverterError]] = {
    401: Unauthorized,
    403: Forbidden,
    404: NotFound,
}


def error_body(exc: ConverterError, correlation_id: str | None) -> dict[str, object]:
    return {"error": exc.to_dict(), "correlation_id": correlation_id or "unknown"}


def _error_response(request: Request, exc: ConverterError, headers: Mapping[str, str] | None = None) -> JSONResponse:
    correlation_id = getattr(request.state, "correlation_id", None)
    response_headers = dict(headers or {})
    if correlation_id:
        response_headers[REQUEST_ID_HEADER] = correlation_id
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc, correlation_id),
        headers=response_headers or None,
    )


async def handle_converter_error(request: Request, exc: Exception) -> JSONResponse:
    """Render any ``ConverterError`` with its stable kind and status code."""
    assert isinstance(exc, ConverterError)
    logger.info(
        "request_error",
        kind=exc.kind,
        error_message=exc.message,
        status_code=exc.status_code,
        path=request.url.path,
        method=request.method,
    )
    return _error_response(request, exc)


async def handle_http_exception(request: Request, exc: Exception) -> JSONResponse:
    """Routing and framework errors (unknown path, wrong method ...) in the same envelope."""
    assert isinstance(exc, StarletteHTTPException)
    message = exc.detail if isinstance(exc.detail, str) else None
    error_cls = _HTTP_ERRORS.get(exc.status_code)
    if error_cls is not None:
        error = error_cls(message)
    else:
        error = ConverterError(message)
        error.status_code = exc.status_code
    logger.info("request_error", kind=error.kind, status_code=error.status_code, path=request.url.path)
    return _error_response(request, error, exc.headers)


async def handle_validation_error(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, RequestValidationError)
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    error = InvalidRequest(problems or None)
    logger.info("request_error", kind=error.kind, error_message=error.message, path=request.url.path)
    return _error_response(request, error)


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", path=request.url.path, method=request.method)
    return _error_response(request, InternalError())


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ConverterError, handle_converter_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_exception)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)
