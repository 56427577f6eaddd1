from __future__ import annotations

import logging
from typing import Callable, Iterable
from urllib.parse import urlencode

from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response
from starlette.types import ASGIApp, Receive, Scope, Send

from authgate.core import context
from authgate.core.context import ClientContext
from authgate.core.errors import ConfigError, build_error_payload
from authgate.core.security import decode_session_token, extract_session_token
from authgate.core.settings import settings
from authgate.db.session import AsyncSessionLocal
from authgate.services.auth_state import REASON_ERROR_DEFAULT_SECURE, AuthState, AuthStateResolver
from authgate.services.trusted_devices import get_trusted_device_ledger

logger = logging.getLogger(__name__)

# Endpoints the challenge screen itself needs; gating them would loop.
CHALLENGE_FLOW_PATHS = (
    "/api/v1/mfa-verify",
    "/api/v1/mfa/challenge",
    "/api/v1/mfa/status",
    "/api/v1/mfa/factors",
    "/api/v1/trusted-device",
    "/api/v1/health*",
)


def path_matches(path: str, patterns: Iterable[str]) -> bool:
    normalized = path.rstrip("/") or "/"
    for pattern in patterns:
        if pattern.endswith("*"):
            if path.startswith(pattern[:-1]):
                return True
        elif normalized == (pattern.rstrip("/") or "/"):
            return True
    return False


def safe_next_path(path: str, query_string: str) -> str:
    """Relative destination only, so the redirect can never leave the site."""
    if not path.startswith("/") or path.startswith("//") or "\\" in path:
        path = "/"
    return f"{path}?{query_string}" if query_string else path


def _wants_html(request: Request) -> bool:
    return request.method in {"GET", "HEAD"} and "text/html" in request.headers.get("accept", "")


def _default_resolver() -> AuthStateResolver:
    return AuthStateResolver(get_trusted_device_ledger())


class MfaGateMiddleware:
    """Require a resolved identity, and a completed second factor where enrolled, outside the allow-list."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        public_paths: Iterable[str] | None = None,
        challenge_path: str | None = None,
        login_path: str | None = None,
        session_factory: Callable | None = None,
        resolver_factory: Callable[[], AuthStateResolver] | None = None,
    ) -> None:
        self.app = app
        self.challenge_path = challenge_path or settings.mfa_challenge_path
        self.login_path = login_path or settings.login_path
        self.public_paths = [
            *(public_paths if public_paths is not None else settings.public_paths),
            *CHALLENGE_FLOW_PATHS,
            self.challenge_path,
            f"{self.challenge_path.rstrip('/')}/*",
            self.login_path,
        ]
        self.session_factory = session_factory or AsyncSessionLocal
        self.resolver_factory = resolver_factory or _default_resolver

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        if request.method == "OPTIONS" or path_matches(request.url.path, self.public_paths):
            await self.app(scope, receive, send)
            return

        response = await self._check(request, scope)
        if response is not None:
            await response(scope, receive, send)
            return
        await self.app(scope, receive, send)

    async def _check(self, request: Request, scope: Scope) -> Response | None:
        token = extract_session_token(request.headers.get("authorization"), request.cookies)
        if not token:
            return self._unauthenticated(request)
        try:
            claims = decode_session_token(token)
        except ValueError:
            return self._unauthenticated(request)
        except ConfigError as exc:
            logger.error("MFA gate cannot verify sessions: %s", exc)
            return JSONResponse(
                status_code=500,
                content=build_error_payload("config_error", "Server configuration error"),
            )

        context.set_identity_id(claims.identity_id)
        client = ClientContext(
            ip_address=request.client.host if request.client else "unknown",
            user_agent=request.headers.get("user-agent", "unknown"),
        )
        try:
            async with self.session_factory() as db:
                state = await self.resolver_factory().resolve(
                    db,
                    claims.identity_id,
                    claims.aal,
                    device_cookie=request.cookies.get(settings.trusted_device_cookie_name),
                    context=client,
                )
        except Exception:
            logger.warning("MFA gate could not resolve auth state; requiring MFA", exc_info=True)
            state = AuthState(True, True, claims.aal, False, REASON_ERROR_DEFAULT_SECURE)

        logger.debug("MFA gate decision path=%s needs_mfa=%s reason=%s", request.url.path, state.needs_mfa, state.reason)
        scope.setdefault("state", {})["auth_state"] = state
        if state.needs_mfa:
            return self._mfa_required(request)
        return None

    def _unauthenticated(self, request: Request) -> Response:
        if _wants_html(request):
            return RedirectResponse(self.login_path, status_code=303)
        return JSONResponse(
            status_code=401,
            content=build_error_payload("unauthorized", "Authentication required"),
            headers={"WWW-Authenticate": "Bearer"},
        )

    def _mfa_required(self, request: Request) -> Response:
        next_path = safe_next_path(request.url.path, request.url.query)
        redirect_to = f"{self.challenge_path}?{urlencode({'next': next_path})}"
        if _wants_html(request):
            return RedirectResponse(redirect_to, status_code=303)
        return JSONResponse(
            status_code=403,
            content=build_error_payload(
                "mfa_required",
                "Multi-factor verification required",
                {"redirect_to": redirect_to},
            ),
        )
