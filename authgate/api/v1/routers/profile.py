from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.api import deps
from authgate.core.context import ClientContext
from authgate.core.security import SessionClaims
from authgate.schemas.profile import ProfileSecretsOut, ProfileSecretsSaved, ProfileSecretsUpdate
from authgate.services import profile_secrets
from authgate.services.envelope import EnvelopeEncryptionService

router = APIRouter(prefix="/profile", tags=["profile"])


@router.get("/secrets", response_model=ProfileSecretsOut, summary="Read decrypted bank details and VAT id")
async def get_profile_secrets(
    claims: SessionClaims = Depends(deps.get_session_claims),
    envelope: EnvelopeEncryptionService = Depends(deps.get_envelope),
    db: AsyncSession = Depends(deps.get_db_session),
) -> ProfileSecretsOut:
    secrets = await profile_secrets.fetch_profile_secrets(db, envelope, claims.identity_id)
    return ProfileSecretsOut(bank_details=secrets.bank_details, vat_id=secrets.vat_id)


@router.put("/secrets", response_model=ProfileSecretsSaved, summary="Encrypt and store bank details and VAT id")
async def put_profile_secrets(
    payload: ProfileSecretsUpdate,
    claims: SessionClaims = Depends(deps.get_session_claims),
    client: ClientContext = Depends(deps.get_client_context),
    envelope: EnvelopeEncryptionService = Depends(deps.get_envelope),
    db: AsyncSession = Depends(deps.get_db_session),
) -> ProfileSecretsSaved:
    changes = {field: getattr(payload, field) for field in payload.model_fields_set}
    fields_updated = await profile_secrets.save_profile_secrets(
        db,
        envelope,
        claims.identity_id,
        context=client,
        **changes,
    )
    return ProfileSecretsSaved(success=True, fields_updated=fields_updated)
