import json
import logging
import time
import traceback
from contextvars import ContextVar
from typing import Any
from uuid import uuid4

from fastapi import BackgroundTasks, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from meatshop.core.errors import DomainError

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")
logger = logging.getLogger("meatshop.api")

HTTP_ERROR_CODES = {
    400: "bad_request",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    422: "validation_error",
}


def setup_observability() -> None:
    """Attach a single JSON-line handler to the ``meatshop`` logger tree."""
    root = logging.getLogger("meatshop")
    if root.handlers:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(handler)
    root.setLevel(logging.INFO)
    root.propagate = False


def get_request_id() -> str:
    return request_id_ctx.get()


def log_event(event_logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    event_logger.log(
        level,
        json.dumps({"event": event, "request_id": get_request_id(), **fields}, default=str),
    )


def _resolve_request_id(request: Request) -> str:
    return (
        getattr(request.state, "request_id", None)
        or request.headers.get("x-request-id")
        or get_request_id()
    )


def _error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: list[dict] | None = None,
    headers: dict[str, str] | None = None,
    background: BackgroundTasks | None = None,
) -> JSONResponse:
    body = {
        "success": False,
        "error": message,
        "code": code,
        "request_id": _resolve_request_id(request),
        "path": request.url.path,
        "details": details,
    }
    return JSONResponse(status_code=status_code, content=body, headers=headers, background=background)


async def request_logging_middleware(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid4())
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
            "request",
            level=logging.WARNING if status_code >= 500 else logging.INFO,
            method=request.method,
            path=request.url.path,
            status_code=status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        request_id_ctx.reset(token)

    response.headers["X-Request-ID"] = request_id
    return response


def domain_error_response(request: Request, exc: DomainError, *, background: BackgroundTasks | None = None) -> JSONResponse:
    """Render a ``DomainError`` into the error envelope.

    Routers that must still run side effects after a business failure (a
    declined card notifies the customer) pass their ``background`` tasks here.
    """
    log_event(logger, "domain_error", path=request.url.path, code=exc.code, error=exc.message)
    return _error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
        background=background,
    )


async def domain_exception_handler(request: Request, exc: DomainError):
    return domain_error_response(request, exc)


async def unhandled_exception_handler(request: Request, exc: Exception):
    log_event(
        logger,
        "unhandled_exception",
        level=logging.ERROR,
        path=request.url.path,
        error=str(exc),
        traceback=traceback.format_exc(limit=10),
    )
    return _error_response(request, status_code=500, code="internal_error", message="Internal server error")


async def http_exception_handler(request: Request, exc: HTTPException):
    plain = isinstance(exc.detail, str)
    return _error_response(
        request,
        status_code=exc.status_code,
        code=HTTP_ERROR_CODES.get(exc.status_code, "http_error"),
        message=exc.detail if plain else "HTTP error",
        details=None if plain else exc.detail,
        headers=getattr(exc, "headers", None),
    )


def _validation_details(exc: RequestValidationError) -> list[dict]:
    details = []
    for err in exc.errors():
        location = [str(part) for part in err.get("loc", []) if part != "body"]
        details.append(
            {
                "field": ".".join(location) if location else "body",
                "message": err.get("msg", "Invalid value"),
                "type": err.get("type"),
            }
        )
    return details


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = _validation_details(exc)
    message = ", ".join(f"{item['field']}: {item['message']}" for item in details)
    return _error_response(
        request,
        status_code=400,
        code="validation_error",
        message=message or "Validation failed",
        details=details,
    )
