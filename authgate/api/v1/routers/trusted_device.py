from typing import Union

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.api import deps
from authgate.core.context import ClientContext
from authgate.core.security import SessionClaims
from authgate.core.settings import settings
from authgate.schemas.trusted_device import (
    TrustedDeviceAddResponse,
    TrustedDeviceCheckResponse,
    TrustedDeviceOut,
    TrustedDeviceRequest,
    TrustedDeviceRevokeResponse,
)
from authgate.services.trusted_devices import (
    TrustedDeviceLedger,
    clear_device_cookie,
    parse_device_cookie,
    set_device_cookie,
)

router = APIRouter(tags=["trusted-devices"])


@router.post(
    "/trusted-device",
    response_model=Union[TrustedDeviceCheckResponse, TrustedDeviceAddResponse, TrustedDeviceRevokeResponse],
    summary="Check, add or revoke device trust",
)
async def trusted_device(
    payload: TrustedDeviceRequest,
    request: Request,
    response: Response,
    claims: SessionClaims = Depends(deps.get_session_claims),
    client: ClientContext = Depends(deps.get_client_context),
    ledger: TrustedDeviceLedger = Depends(deps.get_ledger),
    db: AsyncSession = Depends(deps.get_db_session),
):
    cookie = request.cookies.get(settings.trusted_device_cookie_name)

    if payload.action == "check":
        status_ = await ledger.check(db, claims.identity_id, cookie, client)
        return TrustedDeviceCheckResponse(is_trusted=status_.trusted, expires_at=status_.expires_at)

    if payload.action == "add":
        if claims.aal != "aal2":
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"code": "aal2_required", "message": "Complete MFA before trusting this device"},
            )
        grant = await ledger.add(db, claims.identity_id, client)
        set_device_cookie(response, grant)
        return TrustedDeviceAddResponse(success=True, device_id=grant.device_id, expires_at=grant.expires_at)

    if payload.action == "revoke":
        revoked = await ledger.revoke(db, claims.identity_id, payload.device_id, context=client)
        parsed = parse_device_cookie(cookie)
        if parsed is not None and parsed[0] == payload.device_id:
            clear_device_cookie(response)
        return TrustedDeviceRevokeResponse(success=True, revoked=int(revoked))

    count = await ledger.revoke_all(db, claims.identity_id, context=client)
    clear_device_cookie(response)
    return TrustedDeviceRevokeResponse(success=True, revoked=count)


@router.get("/trusted-devices", response_model=list[TrustedDeviceOut], summary="List active trusted devices")
async def list_trusted_devices(
    claims: SessionClaims = Depends(deps.get_session_claims),
    ledger: TrustedDeviceLedger = Depends(deps.get_ledger),
    db: AsyncSession = Depends(deps.get_db_session),
) -> list[TrustedDeviceOut]:
    devices = await ledger.list_devices(db, claims.identity_id)
    return [TrustedDeviceOut.model_validate(device) for device in devices]
