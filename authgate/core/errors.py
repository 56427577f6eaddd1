from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class AuthGateError(Exception):
    """Base class for failures callers are expected to branch on."""

    code = "auth_gate_error"
    status_code = 500

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or _default_message(self.status_code)


class ConfigError(AuthGateError):
    code = "config_error"
    status_code = 500

    def __init__(self, message: str, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message} ({self.hint})"
        return self.message


class DecryptionError(AuthGateError):
    code = "decryption_failed"
    status_code = 500


class RateLimited(AuthGateError):
    code = "rate_limited"
    status_code = 429

    def __init__(self, retry_after: int, message: str | None = None) -> None:
        super().__init__(message or "Too many failed attempts. Please wait before trying again.")
        self.retry_after = retry_after


class InvalidCode(AuthGateError):
    code = "invalid_code"
    status_code = 400

    def __init__(self, reason: str, message: str | None = None) -> None:
        super().__init__(message or "Invalid verification code")
        self.reason = reason


class NotFoundError(AuthGateError):
    code = "not_found"
    status_code = 404


def _default_code(status_code: int) -> str:
    mapping = {
        400: "bad_request",
        401: "unauthorized",
        403: "forbidden",
        404: "not_found",
        409: "conflict",
        422: "unprocessable_entity",
        429: "rate_limited",
    }
    return mapping.get(status_code, "http_error")


def _default_message(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Request failed"


def _normalize_details(details: Any) -> dict:
    if details is None:
        return {}
    if isinstance(details, dict):
        return details
    if isinstance(details, list):
        return {"errors": details}
    if isinstance(details, str):
        return {"detail": details}
    return {"detail": str(details)}


def build_error_payload(
    code: str,
    message: str,
    details: Any | None = None,
    extra: dict[str, Any] | None = None,
) -> dict[str, Any]:
    payload = {
        "code": code,
        "message": message,
        "data": None,
        "details": _normalize_details(details),
    }
    if extra:
        payload.update(extra)
    return jsonable_encoder(payload)


def _build_response(
    status_code: int,
    code: str,
    message: str,
    details: Any | None = None,
    extra: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=build_error_payload(code, message, details, extra),
        headers=headers,
    )


def _parse_http_exception_detail(detail: Any, status_code: int) -> tuple[str, str, dict]:
    code = _default_code(status_code)
    message = _default_message(status_code)

    if isinstance(detail, dict):
        code = detail.get("code") or code
        message = detail.get("message") or detail.get("detail") or detail.get("error") or message
        if "details" in detail:
            return code, message, _normalize_details(detail.get("details"))
        remainder = {k: v for k, v in detail.items() if k not in {"code", "message", "detail", "error"}}
        return code, message, remainder or {"detail": message}

    if isinstance(detail, list):
        return code, message, {"errors": detail}

    if isinstance(detail, str):
        return code, detail, {"detail": detail}

    return code, message, {"detail": str(detail)}


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _parse_http_exception_detail(exc.detail, exc.status_code)
    return _build_response(exc.status_code, code, message, details, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = "Validation failed"
    if errors:
        first = errors[0] or {}
        loc = first.get("loc") or []
        msg = first.get("msg") or "Validation failed"
        # Drop the request section (body/query/path) from the location
        loc_parts = [str(part) for part in loc if part not in {"body", "query", "path"}]
        message = f"{'.'.join(loc_parts)}: {msg}" if loc_parts else str(msg)
    return _build_response(
        status_code=422,
        code="validation_error",
        message=message,
        details={"errors": errors},
    )


async def rate_limited_handler(request: Request, exc: RateLimited) -> JSONResponse:
    return _build_response(
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details={"retry_after": exc.retry_after},
        extra={"error": exc.message, "retry_after": exc.retry_after},
        headers={"Retry-After": str(exc.retry_after)},
    )


async def invalid_code_handler(request: Request, exc: InvalidCode) -> JSONResponse:
    return _build_response(
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details={"reason": exc.reason},
        extra={"error": exc.message},
    )


async def config_error_handler(request: Request, exc: ConfigError) -> JSONResponse:
    logger.error("Configuration error while serving %s: %s", request.url.path, exc)
    return _build_response(
        status_code=exc.status_code,
        code=exc.code,
        message="Server configuration error",
        details={"admin_action": exc.hint} if exc.hint else {},
    )


async def auth_gate_error_handler(request: Request, exc: AuthGateError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s while serving %s: %s", exc.code, request.url.path, exc.message)
    return _build_response(exc.status_code, exc.code, exc.message)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error while serving %s", request.url.path)
    return _build_response(
        status_code=500,
        code="internal_server_error",
        message="Internal server error",
        details={},
    )


async def rate_limit_exception_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    response = _build_response(
        status_code=429,
        code="rate_limited",
        message=_default_message(429),
        details=getattr(exc, "detail", None),
    )
    headers = getattr(exc, "headers", None)
    if isinstance(headers, dict):
        response.headers.update(headers)
    return response


def register_exception_handlers(app) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exception_handler)
    app.add_exception_handler(RateLimited, rate_limited_handler)
    app.add_exception_handler(InvalidCode, invalid_code_handler)
    app.add_exception_handler(ConfigError, config_error_handler)
    app.add_exception_handler(AuthGateError, auth_gate_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
