from datetime import timedelta
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.api import deps
from authgate.core.context import ClientContext
from authgate.core.limiter import MFA_VERIFY_LIMIT, limiter
from authgate.core.security import SessionClaims
from authgate.core.settings import settings
from authgate.models.types import ensure_utc
from authgate.schemas.mfa import (
    AuthStateOut,
    ChallengeRequest,
    ChallengeResponse,
    EnrollTotpRequest,
    EnrollTotpResponse,
    FactorOut,
    MfaVerifyRequest,
    MfaVerifyResponse,
    RecoveryCodesRemainingResponse,
    RecoveryCodesResponse,
)
from authgate.services import mfa_factors, recovery_codes
from authgate.services.auth_state import AuthStateResolver
from authgate.services.challenges import ChallengeVerifier, VerificationRequest, issue_challenge
from authgate.services.envelope import EnvelopeEncryptionService
from authgate.services.trusted_devices import TrustedDeviceLedger, set_device_cookie

router = APIRouter(tags=["mfa"])


@router.post("/mfa-verify", response_model=MfaVerifyResponse, summary="Verify a TOTP or recovery code")
@limiter.limit(MFA_VERIFY_LIMIT)
async def verify_mfa(
    payload: MfaVerifyRequest,
    request: Request,
    response: Response,
    claims: SessionClaims = Depends(deps.get_session_claims),
    client: ClientContext = Depends(deps.get_client_context),
    verifier: ChallengeVerifier = Depends(deps.get_verifier),
    db: AsyncSession = Depends(deps.get_db_session),
) -> MfaVerifyResponse:
    result = await verifier.verify(
        db,
        claims.identity_id,
        VerificationRequest(
            factor_id=payload.factor_id,
            challenge_id=payload.challenge_id,
            code=payload.code,
            type=payload.type,
            remember_device=payload.remember_device,
        ),
        client,
    )
    token = None
    if result.trusted_device is not None:
        set_device_cookie(response, result.trusted_device)
        token = result.trusted_device.cookie_value
    return MfaVerifyResponse(
        success=result.success,
        trusted_device_token=token,
        remaining_recovery_codes=result.remaining_recovery_codes,
    )


@router.get("/mfa/status", response_model=AuthStateOut, summary="Resolve whether this session must complete MFA")
async def mfa_status(
    request: Request,
    claims: SessionClaims = Depends(deps.get_session_claims),
    client: ClientContext = Depends(deps.get_client_context),
    resolver: AuthStateResolver = Depends(deps.get_resolver),
    db: AsyncSession = Depends(deps.get_db_session),
) -> AuthStateOut:
    state = await resolver.resolve(
        db,
        claims.identity_id,
        claims.aal,
        device_cookie=request.cookies.get(settings.trusted_device_cookie_name),
        context=client,
    )
    return AuthStateOut(**state.as_dict())


@router.get("/mfa/factors", response_model=list[FactorOut], summary="List enrolled factors")
async def get_factors(
    claims: SessionClaims = Depends(deps.get_session_claims),
    db: AsyncSession = Depends(deps.get_db_session),
) -> list[FactorOut]:
    factors = await mfa_factors.list_factors(db, claims.identity_id)
    return [FactorOut.model_validate(factor) for factor in factors]


@router.post(
    "/mfa/enroll",
    response_model=EnrollTotpResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start TOTP enrollment",
)
async def enroll(
    payload: EnrollTotpRequest,
    claims: SessionClaims = Depends(deps.get_session_claims),
    client: ClientContext = Depends(deps.get_client_context),
    envelope: EnvelopeEncryptionService = Depends(deps.get_envelope),
    db: AsyncSession = Depends(deps.get_db_session),
) -> EnrollTotpResponse:
    enrollment = await mfa_factors.enroll_totp(
        db,
        envelope,
        claims.identity_id,
        friendly_name=payload.friendly_name,
        account_name=claims.email,
        context=client,
    )
    return EnrollTotpResponse(factor_id=enrollment.factor_id, secret=enrollment.secret, uri=enrollment.uri)


@router.post("/mfa/challenge", response_model=ChallengeResponse, summary="Issue a single-use challenge")
async def create_challenge(
    payload: ChallengeRequest,
    claims: SessionClaims = Depends(deps.get_session_claims),
    client: ClientContext = Depends(deps.get_client_context),
    db: AsyncSession = Depends(deps.get_db_session),
) -> ChallengeResponse:
    challenge = await issue_challenge(db, claims.identity_id, payload.factor_id, context=client)
    return ChallengeResponse(
        challenge_id=challenge.id,
        factor_id=challenge.factor_id,
        expires_at=ensure_utc(challenge.issued_at) + timedelta(seconds=settings.mfa_challenge_ttl_seconds),
    )


@router.delete("/mfa/factors/{factor_id}", summary="Remove a factor")
async def delete_factor(
    factor_id: UUID,
    claims: SessionClaims = Depends(deps.get_session_claims),
    client: ClientContext = Depends(deps.get_client_context),
    ledger: TrustedDeviceLedger = Depends(deps.get_ledger),
    db: AsyncSession = Depends(deps.get_db_session),
) -> dict:
    await mfa_factors.unenroll(db, claims.identity_id, factor_id, ledger=ledger, context=client)
    return {"success": True}


@router.post("/mfa/recovery-codes", response_model=RecoveryCodesResponse, summary="Regenerate recovery codes")
async def regenerate_recovery_codes(
    claims: SessionClaims = Depends(deps.get_session_claims),
    client: ClientContext = Depends(deps.get_client_context),
    db: AsyncSession = Depends(deps.get_db_session),
) -> RecoveryCodesResponse:
    if not await mfa_factors.has_verified_factor(db, claims.identity_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "mfa_not_enabled", "message": "Verify an MFA factor before generating recovery codes"},
        )
    codes = await recovery_codes.generate_recovery_codes(db, claims.identity_id, context=client)
    return RecoveryCodesResponse(codes=codes)


@router.get(
    "/mfa/recovery-codes/remaining",
    response_model=RecoveryCodesRemainingResponse,
    summary="Count unused recovery codes",
)
async def recovery_codes_remaining(
    claims: SessionClaims = Depends(deps.get_session_claims),
    db: AsyncSession = Depends(deps.get_db_session),
) -> RecoveryCodesRemainingResponse:
    remaining = await recovery_codes.remaining_recovery_codes(db, claims.identity_id)
    return RecoveryCodesRemainingResponse(remaining=remaining)
