"""Encrypt profile secrets still stored as legacy plaintext.

Rows written before envelope encryption hold plaintext in the ``*_enc``
columns and have no fingerprints. The backfill seals those values under the
identity's workspace key and fills in ``iban_fp`` / ``vat_fp``; values that are
already encrypted only get a missing fingerprint computed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.core.context import ClientContext
from authgate.core.errors import ConfigError, DecryptionError
from authgate.models.profile_secret import ProfileSecret
from authgate.services import audit
from authgate.services.envelope import TOKEN_PREFIX, EnvelopeEncryptionService, check_configuration, is_encrypted

logger = logging.getLogger(__name__)


@dataclass
class BackfillReport:
    encrypted: int = 0
    fingerprinted: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def as_dict(self) -> dict:
        return {
            "encrypted": self.encrypted,
            "fingerprinted": self.fingerprinted,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": list(self.errors),
        }


def ensure_encryption_configured() -> None:
    status = check_configuration()
    if not status["valid"]:
        raise ConfigError(f"Encryption is not configured: {status['error']}")


def _pending_rows_stmt():
    bank_pending = and_(
        ProfileSecret.bank_details_enc.is_not(None),
        or_(~ProfileSecret.bank_details_enc.startswith(TOKEN_PREFIX), ProfileSecret.iban_fp.is_(None)),
    )
    vat_pending = and_(
        ProfileSecret.vat_id_enc.is_not(None),
        or_(~ProfileSecret.vat_id_enc.startswith(TOKEN_PREFIX), ProfileSecret.vat_fp.is_(None)),
    )
    return select(ProfileSecret).where(or_(bank_pending, vat_pending)).order_by(ProfileSecret.identity_id)


async def _backfill_row(db: AsyncSession, envelope: EnvelopeEncryptionService, row: ProfileSecret) -> tuple[bool, bool]:
    """Return ``(encrypted, fingerprinted)`` for one row."""
    workspace_id = row.identity_id
    encrypted = fingerprinted = False

    if row.bank_details_enc and row.bank_details_enc.strip():
        if is_encrypted(row.bank_details_enc):
            bank_details = await envelope.decrypt_field(db, workspace_id, row.bank_details_enc) if row.iban_fp is None else None
        else:
            bank_details = row.bank_details_enc
            row.bank_details_enc = await envelope.encrypt_field(db, workspace_id, bank_details)
            encrypted = True
        if bank_details is not None:
            iban_fp = envelope.iban_fingerprint(bank_details)
            if iban_fp is not None and iban_fp != row.iban_fp:
                row.iban_fp = iban_fp
                fingerprinted = True

    if row.vat_id_enc and row.vat_id_enc.strip():
        if is_encrypted(row.vat_id_enc):
            vat_id = await envelope.decrypt_field(db, workspace_id, row.vat_id_enc) if row.vat_fp is None else None
        else:
            vat_id = row.vat_id_enc
            row.vat_id_enc = await envelope.encrypt_field(db, workspace_id, vat_id)
            encrypted = True
        if vat_id is not None:
            row.vat_fp = envelope.hmac_fingerprint(vat_id)
            fingerprinted = True

    if encrypted or fingerprinted:
        db.add(row)
    return encrypted, fingerprinted


async def backfill_profile_secrets(
    db: AsyncSession,
    envelope: EnvelopeEncryptionService,
    *,
    context: ClientContext | None = None,
) -> BackfillReport:
    """Encrypt every legacy plaintext profile secret, one SAVEPOINT per row.

    Safe to rerun: encrypted values with fingerprints are never selected again,
    and a failed row is left as it was for the next run.
    """
    report = BackfillReport()
    result = await db.execute(_pending_rows_stmt())
    rows = list(result.scalars().all())
    logger.info("Backfilling encryption for %s profile rows", len(rows))

    for row in rows:
        identity_id = row.identity_id
        try:
            async with db.begin_nested():
                encrypted, fingerprinted = await _backfill_row(db, envelope, row)
        except (DecryptionError, SQLAlchemyError) as exc:
            report.failed += 1
            message = exc.message if isinstance(exc, DecryptionError) else str(exc)
            report.errors.append(f"{identity_id}: {message}")
            logger.error("Encryption backfill failed for identity=%s: %s", identity_id, message)
            continue

        if encrypted:
            report.encrypted += 1
        elif fingerprinted:
            report.fingerprinted += 1
        else:
            # Encrypted bank details that are not an IBAN have no fingerprint to fill in.
            report.skipped += 1

    await audit.record_event(
        db,
        None,
        audit.ENCRYPTION_BACKFILL,
        {
            "encrypted": report.encrypted,
            "fingerprinted": report.fingerprinted,
            "skipped": report.skipped,
            "failed": report.failed,
            "errors": len(report.errors),
        },
        context=context,
    )
    await db.commit()
    logger.info("Encryption backfill finished: %s", report.as_dict())
    return report
