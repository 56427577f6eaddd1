from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.core.context import ClientContext, set_identity_id
from authgate.core.security import SessionClaims, decode_session_token, extract_session_token
from authgate.db.session import get_db
from authgate.services.auth_state import AuthStateResolver
from authgate.services.challenges import ChallengeVerifier
from authgate.services.envelope import EnvelopeEncryptionService, get_envelope_service
from authgate.services.trusted_devices import TrustedDeviceLedger, get_trusted_device_ledger


async def get_db_session(db: AsyncSession = Depends(get_db)) -> AsyncSession:
    return db


async def get_session_claims(request: Request) -> SessionClaims:
    token = extract_session_token(request.headers.get("authorization"), request.cookies)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing session token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        claims = decode_session_token(token)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
    set_identity_id(claims.identity_id)
    return claims


def get_client_context(request: Request) -> ClientContext:
    return ClientContext(
        ip_address=request.client.host if request.client else "unknown",
        user_agent=request.headers.get("user-agent", "unknown"),
    )


def get_envelope() -> EnvelopeEncryptionService:
    return get_envelope_service()


def get_ledger() -> TrustedDeviceLedger:
    return get_trusted_device_ledger()


def get_verifier(
    envelope: EnvelopeEncryptionService = Depends(get_envelope),
    ledger: TrustedDeviceLedger = Depends(get_ledger),
) -> ChallengeVerifier:
    return ChallengeVerifier(envelope, ledger)


def get_resolver(ledger: TrustedDeviceLedger = Depends(get_ledger)) -> AuthStateResolver:
    return AuthStateResolver(ledger)
