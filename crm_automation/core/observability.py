import json
import logging
import time
import traceback
from contextvars import ContextVar
from uuid import uuid4

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from crm_automation.core.config import settings

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")
business_id_ctx: ContextVar[str | None] = ContextVar("business_id", default=None)

root_logger = logging.getLogger("crm_automation")
logger = logging.getLogger("crm_automation.api")

_ERROR_CODES = {
    400: "bad_request",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    503: "unavailable",
}


def setup_observability() -> None:
    """Attach one JSON-lines handler to the package logger; repeated calls are no-ops."""
    if root_logger.handlers:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)
    root_logger.setLevel(settings.log_level.upper())
    root_logger.propagate = False


def get_request_id() -> str:
    return request_id_ctx.get()


def log_event(target: logging.Logger, event: str, *, level: int = logging.INFO, **fields) -> None:
    """Emit ``{"event": ..., "request_id": ..., **fields}`` as a single line.

    Work started from an HTTP request also carries the calling tenant, so engine and
    delivery logs can be grepped per business.
    """
    payload = {"event": event, "request_id": get_request_id()}
    tenant = business_id_ctx.get()
    if tenant and "business_id" not in fields:
        payload["business_id"] = tenant
    payload.update(fields)
    target.log(level, json.dumps(payload, default=str))


def _request_id_for(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get("x-request-id") or get_request_id()


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
                "request_id": _request_id_for(request),
                "path": request.url.path,
                "details": details,
            }
        },
    )


async def request_logging_middleware(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid4())
    request.state.request_id = request_id
    request_token = request_id_ctx.set(request_id)
    tenant_token = business_id_ctx.set((request.headers.get("x-business-id") or "").strip() or None)
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
        business_id_ctx.reset(tenant_token)
        request_id_ctx.reset(request_token)

    response.headers["X-Request-ID"] = request_id
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    log_event(
        logger,
        "unhandled_exception",
        level=logging.ERROR,
        request_id=_request_id_for(request),
        path=request.url.path,
        error=str(exc),
        traceback=traceback.format_exc(limit=10),
    )
    return _error_response(
        status_code=500,
        request=request,
        code="internal_error",
        message="Internal server error",
    )


async def http_exception_handler(request: Request, exc: HTTPException):
    if isinstance(exc.detail, str):
        message, details = exc.detail, None
    else:
        message, details = "HTTP error", exc.detail
    return _error_response(
        status_code=exc.status_code,
        request=request,
        code=_ERROR_CODES.get(exc.status_code, "http_error"),
        message=message,
        details=details,
        headers=exc.headers,
    )


def _validation_issue(err: dict) -> dict:
    location = [str(part) for part in err.get("loc", []) if part not in {"body", "query", "path", "header"}]
    return {
        "field": ".".join(location) if location else "body",
        "message": err.get("msg", "Invalid value"),
        "type": err.get("type"),
    }


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return _error_response(
        status_code=422,
        request=request,
        code="validation_error",
        message="Validation failed",
        details=[_validation_issue(err) for err in exc.errors()],
    )
