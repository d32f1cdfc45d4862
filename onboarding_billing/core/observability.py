"""One-line JSON logs and the error envelope every endpoint answers with.

Every log line carries the request id of the HTTP call that caused it, also
when the work runs later on the background runner.
"""

import json
import logging
import time
import traceback
from contextvars import ContextVar
from typing import Any
from uuid import uuid4

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from onboarding_billing.core.errors import BillingError, UpstreamProviderError

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")
logger = logging.getLogger("onboarding_billing.api")

_ROOT_LOGGER_NAME = "onboarding_billing"
REQUEST_ID_HEADER = "X-Request-ID"


def setup_observability() -> None:
    root = logging.getLogger(_ROOT_LOGGER_NAME)
    if root.handlers:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(handler)
    root.setLevel(logging.INFO)
    root.propagate = False


def get_request_id() -> str:
    return request_id_ctx.get()


def log_event(target: logging.Logger, level: int, event: str, **fields: Any) -> None:
    payload: dict[str, Any] = {"event": event, "request_id": get_request_id()}
    payload.update(fields)
    target.log(level, json.dumps(payload, default=str))


def _request_id(request: Request) -> str:
    return (
        getattr(request.state, "request_id", None)
        or request.headers.get(REQUEST_ID_HEADER)
        or get_request_id()
    )


def _error_response(
    *,
    status_code: int,
    request: Request,
    code: str,
    message: str,
    details: list[dict] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        headers=headers,
        content={
            "error": {
                "code": code,
                "message": message,
                "request_id": _request_id(request),
                "path": request.url.path,
                "details": details,
            }
        },
    )


async def request_logging_middleware(request: Request, call_next):
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
    request.state.request_id = request_id
    token = request_id_ctx.set(request_id)
    started = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
    finally:
        log_event(
            logger,
            logging.WARNING if status_code >= 500 else logging.INFO,
            "request",
            method=request.method,
            path=request.url.path,
            status_code=status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        request_id_ctx.reset(token)

    response.headers[REQUEST_ID_HEADER] = request_id
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    log_event(
        logger,
        logging.ERROR,
        "unhandled_exception",
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
        traceback=traceback.format_exc(limit=10),
    )
    return _error_response(
        status_code=500,
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )


async def billing_exception_handler(request: Request, exc: BillingError):
    if isinstance(exc, UpstreamProviderError):
        # Provider detail stays in the logs; the client only gets the request id.
        log_event(
            logger,
            logging.ERROR,
            "upstream_provider_error",
            path=request.url.path,
            error=str(exc.__cause__ or exc),
            provider_code=exc.provider_code,
            retryable=exc.retryable,
        )
        return _error_response(
            status_code=exc.status_code,
            request=request,
            code=exc.code,
            message=UpstreamProviderError.default_message,
        )

    retry_after = getattr(exc, "retry_after_seconds", None)
    if exc.status_code >= 500:
        log_event(logger, logging.ERROR, "billing_error", path=request.url.path, code=exc.code, error=exc.message)
    return _error_response(
        status_code=exc.status_code,
        request=request,
        code=exc.code,
        message=exc.message,
        details=exc.details,
        headers={"Retry-After": str(retry_after)} if retry_after else None,
    )


_HTTP_ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    429: "RATE_LIMIT_EXCEEDED",
}


async def http_exception_handler(request: Request, exc: HTTPException):
    if isinstance(exc.detail, str):
        message, details = exc.detail, None
    else:
        message, details = "HTTP error", exc.detail
    return _error_response(
        status_code=exc.status_code,
        request=request,
        code=_HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR"),
        message=message,
        details=details,
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = []
    for err in exc.errors():
        location = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path", "header")]
        details.append(
            {
                "field": ".".join(location) or "body",
                "message": err.get("msg", "Invalid value"),
                "type": err.get("type"),
            }
        )
    return _error_response(
        status_code=400,
        request=request,
        code="VALIDATION_ERROR",
        message="Validation failed",
        details=details,
    )
