from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.core.context import ClientContext
from authgate.models.profile_secret import ProfileSecret
from authgate.models.types import utcnow
from authgate.services import audit
from authgate.services.envelope import EnvelopeEncryptionService

logger = logging.getLogger(__name__)

_UNSET = object()


@dataclass(frozen=True, slots=True)
class ProfileSecrets:
    bank_details: str | None
    vat_id: str | None


async def _get_row(db: AsyncSession, identity_id: str) -> ProfileSecret | None:
    result = await db.execute(select(ProfileSecret).where(ProfileSecret.identity_id == identity_id))
    return result.scalar_one_or_none()


async def save_profile_secrets(
    db: AsyncSession,
    envelope: EnvelopeEncryptionService,
    identity_id: str,
    *,
    bank_details: str | None | object = _UNSET,
    vat_id: str | None | object = _UNSET,
    context: ClientContext | None = None,
) -> list[str]:
    """Encrypt and store the given fields; omitted fields are left alone, blank ones are cleared.

    The identity doubles as the workspace until shared workspaces exist.
    """
    workspace_id = identity_id
    row = await _get_row(db, identity_id)
    if row is None:
        row = ProfileSecret(identity_id=identity_id)
        db.add(row)

    fields_updated: list[str] = []

    if bank_details is not _UNSET:
        if bank_details and bank_details.strip():
            row.bank_details_enc = await envelope.encrypt_field(db, workspace_id, bank_details)
            row.iban_fp = envelope.iban_fingerprint(bank_details)
        else:
            row.bank_details_enc = None
            row.iban_fp = None
        fields_updated += ["bank_details_enc", "iban_fp"]

    if vat_id is not _UNSET:
        if vat_id and vat_id.strip():
            row.vat_id_enc = await envelope.encrypt_field(db, workspace_id, vat_id)
            row.vat_fp = envelope.hmac_fingerprint(vat_id)
        else:
            row.vat_id_enc = None
            row.vat_fp = None
        fields_updated += ["vat_id_enc", "vat_fp"]

    row.updated_at = utcnow()
    await db.flush()
    await audit.record_event(
        db,
        identity_id,
        audit.PROFILE_ENCRYPTED_UPDATE,
        {
            "fields_updated": fields_updated,
            "has_encrypted_data": bool(row.bank_details_enc or row.vat_id_enc),
            "workspace_id": workspace_id,
        },
        context=context,
    )
    await db.commit()
    return fields_updated


async def fetch_profile_secrets(
    db: AsyncSession,
    envelope: EnvelopeEncryptionService,
    identity_id: str,
) -> ProfileSecrets:
    row = await _get_row(db, identity_id)
    if row is None:
        return ProfileSecrets(bank_details=None, vat_id=None)
    bank_details = await envelope.decrypt_field(db, identity_id, row.bank_details_enc) if row.bank_details_enc else None
    vat_id = await envelope.decrypt_field(db, identity_id, row.vat_id_enc) if row.vat_id_enc else None
    return ProfileSecrets(bank_details=bank_details, vat_id=vat_id)


async def find_identity_by_vat_id(db: AsyncSession, envelope: EnvelopeEncryptionService, vat_id: str) -> str | None:
    if not vat_id or not vat_id.strip():
        return None
    fingerprint = envelope.hmac_fingerprint(vat_id)
    result = await db.execute(select(ProfileSecret.identity_id).where(ProfileSecret.vat_fp == fingerprint).limit(1))
    return result.scalar_one_or_none()


async def find_identity_by_iban(db: AsyncSession, envelope: EnvelopeEncryptionService, iban: str) -> str | None:
    fingerprint = envelope.iban_fingerprint(iban)
    if fingerprint is None:
        return None
    result = await db.execute(select(ProfileSecret.identity_id).where(ProfileSecret.iban_fp == fingerprint).limit(1))
    return result.scalar_one_or_none()
