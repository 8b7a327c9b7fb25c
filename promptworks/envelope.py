"""Uniform response envelope, error mapping and request logging.

Everything here is a plain function. `main.py` composes them explicitly:

- `request_logging_middleware` times every request, records an API-call log
  through the audit sink on ``app.state.audit`` and warns on slow requests.
- `envelope_middleware` wraps JSON 2xx bodies under ``/api`` as
  ``{success, code, message, data, timestamp}``.
- `register_exception_handlers` turns every exception into
  ``{success: false, code, message, data: {error, details, path, method}, timestamp}``.
"""
import json
import logging
import time
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import HTTPException as FastAPIHTTPException, RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

from .errors import AppError
from .settings.config import settings
from .utils import client_ip

logger = logging.getLogger(__name__)

API_PREFIX = "/api"

METHOD_MESSAGES = {
    "GET": "Fetched",
    "POST": "Created",
    "PUT": "Updated",
    "PATCH": "Updated",
    "DELETE": "Deleted",
}

HTTP_ERROR_NAMES = {
    400: "BadRequest",
    401: "Unauthorized",
    403: "Forbidden",
    404: "NotFound",
    405: "MethodNotAllowed",
    409: "Conflict",
    422: "UnprocessableEntity",
    429: "TooManyRequests",
}


def _timestamp() -> int:
    return int(time.time() * 1000)


def default_message(method: str) -> str:
    return METHOD_MESSAGES.get(method.upper(), "OK")


def skip_envelope(request: Request) -> None:
    """Route dependency: return the handler's body unwrapped."""
    request.state.skip_envelope = True


def wrap_success(payload: Any, *, method: str, status_code: int) -> Any:
    if isinstance(payload, dict) and "success" in payload:
        return payload
    message = default_message(method)
    if isinstance(payload, dict) and "message" in payload:
        payload = dict(payload)
        message = str(payload.pop("message"))
    return {
        "success": True,
        "code": status_code,
        "message": message,
        "data": payload,
        "timestamp": _timestamp(),
    }


def error_body(request: Request, status_code: int, message: str, error: str,
               details: Optional[Any] = None) -> dict:
    data = {"error": error, "path": request.url.path, "method": request.method}
    if details is not None:
        data["details"] = details
    return {
        "success": False,
        "code": status_code,
        "message": message,
        "data": data,
        "timestamp": _timestamp(),
    }


# -----------------------------------------------------
# Middleware chain
# -----------------------------------------------------
async def envelope_middleware(request: Request, call_next):
    response = await call_next(request)
    if not request.url.path.startswith(API_PREFIX):
        return response
    if getattr(request.state, "skip_envelope", False):
        return response
    if not (200 <= response.status_code < 300) or response.status_code == 204:
        return response
    if "application/json" not in (response.headers.get("content-type") or ""):
        return response

    body = b"".join([chunk async for chunk in response.body_iterator])
    try:
        payload = json.loads(body) if body else None
    except ValueError:
        logger.warning("Non-JSON body under JSON content type at %s", request.url.path)
        return Response(content=body, status_code=response.status_code,
                        headers=dict(response.headers), media_type=response.media_type)

    wrapped = wrap_success(payload, method=request.method, status_code=response.status_code)
    headers = {k: v for k, v in response.headers.items() if k.lower() not in ("content-length", "content-type")}
    return JSONResponse(wrapped, status_code=response.status_code, headers=headers)


async def request_logging_middleware(request: Request, call_next):
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        elapsed = int((time.perf_counter() - started) * 1000)
        logger.exception("REQ failed %s %s duration_ms=%s", request.method, request.url.path, elapsed)
        raise

    elapsed = int((time.perf_counter() - started) * 1000)
    path = request.url.path
    if elapsed > settings.SLOW_REQUEST_MS:
        logger.warning("Slow request: %s %s - %sms", request.method, path, elapsed)

    audit = getattr(request.app.state, "audit", None)
    if audit is not None and settings.AUDIT_API_CALLS and path.startswith(API_PREFIX) and request.method != "OPTIONS":
        audit.log_api_call(
            method=request.method,
            path=path,
            status_code=response.status_code,
            duration=elapsed,
            user_id=getattr(request.state, "user_id", None),
            username=getattr(request.state, "username", None),
            ip=client_ip(request),
            user_agent=request.headers.get("user-agent"),
            params=dict(request.query_params) or None,
        )
    return response


# -----------------------------------------------------
# Exception handlers
# -----------------------------------------------------
def _log_for_status(request: Request, status_code: int, message: str, exc: BaseException) -> None:
    if status_code >= 500:
        logger.error("%s %s -> %s: %s", request.method, request.url.path, status_code, message,
                     exc_info=(type(exc), exc, exc.__traceback__))
    else:
        logger.warning("%s %s -> %s: %s", request.method, request.url.path, status_code, message)


async def app_error_handler(request: Request, exc: AppError):
    _log_for_status(request, exc.status_code, exc.message, exc)
    message = exc.message if exc.status_code < 500 or exc.expose else "Internal server error"
    return JSONResponse(
        error_body(request, exc.status_code, message, exc.error, jsonable_encoder(exc.details)),
        status_code=exc.status_code,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    status_code = exc.status_code
    detail = exc.detail
    details = None
    if isinstance(detail, str):
        message = detail
    else:
        # fastapi-users raises with structured / code details
        message = HTTP_ERROR_NAMES.get(status_code, "Error")
        details = detail
    _log_for_status(request, status_code, message, exc)
    return JSONResponse(
        error_body(request, status_code, message, HTTP_ERROR_NAMES.get(status_code, "HttpError"),
                   jsonable_encoder(details)),
        status_code=status_code,
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = [
        {
            "field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"),
            "message": err.get("msg", ""),
            "type": err.get("type", ""),
        }
        for err in exc.errors()
    ]
    _log_for_status(request, 400, "Validation failed", exc)
    return JSONResponse(
        error_body(request, 400, "Validation failed", "ValidationError", details),
        status_code=400,
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    _log_for_status(request, 500, str(exc) or exc.__class__.__name__, exc)
    audit = getattr(request.app.state, "audit", None)
    if audit is not None:
        audit.log_error(f"Unhandled error: {request.method} {request.url.path}", repr(exc),
                        method=request.method, path=request.url.path)
    return JSONResponse(
        error_body(request, 500, "Internal server error", "InternalServerError"),
        status_code=500,
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(FastAPIHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
