from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from jose import JWTError, jwt

from authgate.core.aes_gcm import decode_key_b64
from authgate.core.errors import ConfigError
from authgate.core.settings import Settings, settings

AssuranceLevel = Literal["aal1", "aal2"]

MIN_SIGNING_SECRET_LENGTH = 32


@dataclass(frozen=True, slots=True)
class SessionClaims:
    identity_id: str
    aal: AssuranceLevel
    session_id: str | None = None
    email: str | None = None


def validate_security_settings(config: Settings | None = None) -> None:
    """Fail fast when any key the gate depends on is missing or malformed."""
    config = config or settings
    decode_key_b64(config.encryption_master_key_b64, name="ENCRYPTION_MASTER_KEY_B64")
    decode_key_b64(config.encryption_index_key_b64, name="ENCRYPTION_INDEX_KEY_B64")
    if config.encryption_master_key_prev_b64:
        decode_key_b64(config.encryption_master_key_prev_b64, name="ENCRYPTION_MASTER_KEY_PREV_B64")
    if len(config.trusted_device_secret or "") < MIN_SIGNING_SECRET_LENGTH:
        raise ConfigError(
            "TRUSTED_DEVICE_SECRET must be set to at least 32 characters",
            hint="Generate with: openssl rand -hex 32",
        )
    if not config.session_jwt_secret:
        raise ConfigError(
            "SESSION_JWT_SECRET is not set",
            hint="Copy the JWT secret from the identity provider project settings",
        )


def decode_session_token(token: str) -> SessionClaims:
    if not settings.session_jwt_secret:
        raise ConfigError("SESSION_JWT_SECRET is not set")
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            settings.session_jwt_secret,
            algorithms=[settings.session_jwt_algorithm],
            audience=settings.session_jwt_audience or None,
            options={"verify_aud": bool(settings.session_jwt_audience)},
        )
    except JWTError as exc:
        raise ValueError("Invalid session token") from exc

    subject = payload.get("sub")
    if not subject:
        raise ValueError("Session token has no subject")
    aal = payload.get("aal")
    return SessionClaims(
        identity_id=str(subject),
        aal="aal2" if aal == "aal2" else "aal1",
        session_id=payload.get("session_id"),
        email=payload.get("email"),
    )


def extract_session_token(authorization: str | None, cookies: dict[str, str]) -> str | None:
    """Bearer header wins over the browser session cookie."""
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
    return cookies.get(settings.session_cookie_name) or None
