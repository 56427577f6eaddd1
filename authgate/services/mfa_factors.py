from __future__ import annotations

import hmac
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

import pyotp
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.core.context import ClientContext
from authgate.core.errors import NotFoundError
from authgate.core.settings import settings
from authgate.models.mfa_factor import (
    FACTOR_STATUS_UNVERIFIED,
    FACTOR_STATUS_VERIFIED,
    FACTOR_TYPE_TOTP,
    MfaFactor,
)
from authgate.models.types import utcnow
from authgate.services import audit
from authgate.services.envelope import EnvelopeEncryptionService
from authgate.services.recovery_codes import delete_recovery_codes
from authgate.services.trusted_devices import TrustedDeviceLedger

logger = logging.getLogger(__name__)

TOTP_VALID_WINDOW = 1


@dataclass(frozen=True, slots=True)
class TotpEnrollment:
    factor_id: uuid.UUID
    secret: str
    uri: str


def generate_totp_secret() -> str:
    return pyotp.random_base32()


def build_totp_uri(secret: str, account_name: str, issuer: str) -> str:
    totp = pyotp.TOTP(secret)
    return totp.provisioning_uri(name=account_name, issuer_name=issuer)


def match_totp_step(secret: str, code: str, *, for_time: datetime | None = None) -> int | None:
    """Return the time step ``code`` was generated for, or None if it matches no step in the window."""
    code = "".join((code or "").split())
    if not code.isdigit():
        return None
    totp = pyotp.TOTP(secret)
    current = totp.timecode(for_time or utcnow())
    for step in range(current - TOTP_VALID_WINDOW, current + TOTP_VALID_WINDOW + 1):
        if hmac.compare_digest(totp.generate_otp(step), code):
            return step
    return None


async def claim_totp_step(db: AsyncSession, factor_id: uuid.UUID, step: int) -> bool:
    """Record ``step`` as used; False when this or a later step was already accepted."""
    stmt = (
        update(MfaFactor)
        .where(
            MfaFactor.id == factor_id,
            or_(MfaFactor.last_used_step.is_(None), MfaFactor.last_used_step < step),
        )
        .values(last_used_step=step)
        .returning(MfaFactor.id)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.first() is not None


async def enroll_totp(
    db: AsyncSession,
    envelope: EnvelopeEncryptionService,
    identity_id: str,
    *,
    friendly_name: str | None = None,
    account_name: str | None = None,
    context: ClientContext | None = None,
) -> TotpEnrollment:
    """Create an unverified TOTP factor; it becomes usable once a challenge against it succeeds."""
    # Abandoned enrollments leave unverified factors behind; only the newest attempt is kept.
    await db.execute(
        delete(MfaFactor).where(
            MfaFactor.identity_id == identity_id,
            MfaFactor.status == FACTOR_STATUS_UNVERIFIED,
        )
    )

    secret = generate_totp_secret()
    factor = MfaFactor(
        id=uuid.uuid4(),
        identity_id=identity_id,
        factor_type=FACTOR_TYPE_TOTP,
        status=FACTOR_STATUS_UNVERIFIED,
        friendly_name=friendly_name,
        secret_encrypted=await envelope.encrypt_field(db, identity_id, secret),
    )
    db.add(factor)
    await db.flush()
    await audit.record_event(
        db,
        identity_id,
        audit.MFA_ENROLLED,
        {"factor_id": factor.id, "factor_type": FACTOR_TYPE_TOTP},
        context=context,
    )
    await db.commit()

    uri = build_totp_uri(secret, account_name or identity_id, settings.totp_issuer)
    return TotpEnrollment(factor_id=factor.id, secret=secret, uri=uri)


async def list_factors(db: AsyncSession, identity_id: str) -> list[MfaFactor]:
    stmt = select(MfaFactor).where(MfaFactor.identity_id == identity_id).order_by(MfaFactor.created_at.desc())
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def has_verified_factor(db: AsyncSession, identity_id: str) -> bool:
    stmt = select(func.count()).select_from(MfaFactor).where(
        MfaFactor.identity_id == identity_id,
        MfaFactor.status == FACTOR_STATUS_VERIFIED,
    )
    result = await db.execute(stmt)
    return (result.scalar() or 0) > 0


async def get_factor(db: AsyncSession, identity_id: str, factor_id: uuid.UUID) -> MfaFactor | None:
    stmt = select(MfaFactor).where(MfaFactor.id == factor_id, MfaFactor.identity_id == identity_id)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def decrypt_factor_secret(db: AsyncSession, envelope: EnvelopeEncryptionService, factor: MfaFactor) -> str:
    return await envelope.decrypt_field(db, factor.identity_id, factor.secret_encrypted)


async def unenroll(
    db: AsyncSession,
    identity_id: str,
    factor_id: uuid.UUID,
    *,
    ledger: TrustedDeviceLedger,
    context: ClientContext | None = None,
) -> None:
    """Remove a factor; losing the last verified factor also drops recovery codes and device trust."""
    factor = await get_factor(db, identity_id, factor_id)
    if factor is None:
        raise NotFoundError("MFA factor not found")

    await db.delete(factor)
    await db.flush()
    await audit.record_event(
        db,
        identity_id,
        audit.MFA_UNENROLLED,
        {"factor_id": factor_id, "factor_type": factor.factor_type},
        context=context,
    )

    if not await has_verified_factor(db, identity_id):
        logger.info("Last verified factor removed for identity=%s; clearing MFA artefacts", identity_id)
        await delete_recovery_codes(db, identity_id)
        await db.commit()
        await ledger.revoke_all(db, identity_id, context=context)
        return

    await db.commit()
