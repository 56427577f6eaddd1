from __future__ import annotations

import json
from http import HTTPStatus
from typing import Any

from starlette.types import ASGIApp, Message, Receive, Scope, Send


def _success_code(status_code: int) -> str:
    mapping = {
        200: "ok",
        201: "created",
        202: "accepted",
    }
    return mapping.get(status_code, "ok")


def _success_message(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Success"


def _build_success_envelope(data: Any, status_code: int) -> dict[str, Any]:
    return {
        "code": _success_code(status_code),
        "message": _success_message(status_code),
        "data": data,
        "details": {},
    }


def _is_enveloped(payload: Any) -> bool:
    if not isinstance(payload, dict):
        return False
    if "code" in payload and "message" in payload:
        return "data" in payload or "details" in payload
    return False


def _normalize_envelope(payload: dict[str, Any], status_code: int) -> dict[str, Any]:
    normalized = dict(payload)
    normalized.setdefault("code", _success_code(status_code))
    normalized.setdefault("message", _success_message(status_code))
    normalized.setdefault("data", None)
    normalized.setdefault("details", {})
    return normalized


def wrap_success_body(body: bytes, status_code: int) -> bytes | None:
    """Return the enveloped body, or None when the payload must pass through untouched."""
    try:
        raw_body = body.decode("utf-8")
        payload = json.loads(raw_body) if raw_body else None
    except (UnicodeDecodeError, ValueError):
        return None

    if _is_enveloped(payload):
        normalized = _normalize_envelope(payload, status_code)
        if normalized == payload:
            return None
        return json.dumps(normalized, separators=(",", ":")).encode("utf-8")
    return json.dumps(_build_success_envelope(payload, status_code), separators=(",", ":")).encode("utf-8")


def _replace_header(headers: list[tuple[bytes, bytes]], name: bytes, value: bytes) -> list[tuple[bytes, bytes]]:
    kept = [(k, v) for k, v in headers if k.lower() != name]
    kept.append((name, value))
    return kept


class ResponseEnvelopeMiddleware:
    """Wrap successful JSON responses as ``{code, message, data, details}``."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start_message: Message | None = None
        body_parts: list[bytes] = []
        passthrough = False

        async def send_enveloped(message: Message) -> None:
            nonlocal start_message, passthrough

            if message["type"] == "http.response.start":
                status = message["status"]
                headers = dict(message.get("headers", []))
                content_type = headers.get(b"content-type", b"").decode("latin-1")
                is_success = 200 <= status < 300
                if not is_success or (status != 204 and "application/json" not in content_type):
                    passthrough = True
                    await send(message)
                    return
                start_message = message
                return

            if passthrough or message["type"] != "http.response.body":
                await send(message)
                return

            body_parts.append(message.get("body", b""))
            if message.get("more_body", False):
                return

            assert start_message is not None
            status = start_message["status"]
            headers = list(start_message.get("headers", []))
            body = b"".join(body_parts)

            # Convert 204 to a 200 success envelope for frontend consistency
            if status == 204:
                status = 200
                new_body = json.dumps(_build_success_envelope(None, 200), separators=(",", ":")).encode("utf-8")
                headers = _replace_header(headers, b"content-type", b"application/json")
            else:
                new_body = wrap_success_body(body, status)
                if new_body is None:
                    new_body = body

            headers = _replace_header(headers, b"content-length", str(len(new_body)).encode("latin-1"))
            await send({**start_message, "status": status, "headers": headers})
            await send({"type": "http.response.body", "body": new_body, "more_body": False})

        await self.app(scope, receive, send_enveloped)


def register_response_envelope(app) -> None:
    app.add_middleware(ResponseEnvelopeMiddleware)
