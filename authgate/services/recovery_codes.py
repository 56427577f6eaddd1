from __future__ import annotations

import hashlib
import secrets

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.core.context import ClientContext
from authgate.models.mfa_recovery_code import MfaRecoveryCode
from authgate.models.types import utcnow
from authgate.services import audit

RECOVERY_CODE_COUNT = 10
RECOVERY_CODE_LENGTH = 8  # 8-character codes like "A1B2-C3D4"
_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # Exclude confusing chars: 0, O, 1, I


def _generate_recovery_code() -> str:
    """Generate a human-readable recovery code like 'A1B2-C3D4'."""
    code = "".join(secrets.choice(_ALPHABET) for _ in range(RECOVERY_CODE_LENGTH))
    return f"{code[:4]}-{code[4:]}"


def normalize_recovery_code(code: str) -> str:
    return "".join((code or "").split()).upper().replace("-", "")


def hash_recovery_code(code: str) -> str:
    """Hash a recovery code for storage."""
    return hashlib.sha256(normalize_recovery_code(code).encode("utf-8")).hexdigest()


async def generate_recovery_codes(
    db: AsyncSession,
    identity_id: str,
    *,
    context: ClientContext | None = None,
) -> list[str]:
    """Replace the identity's batch with fresh codes; plaintext is returned exactly once."""
    plain_codes = [_generate_recovery_code() for _ in range(RECOVERY_CODE_COUNT)]
    try:
        await db.execute(delete(MfaRecoveryCode).where(MfaRecoveryCode.identity_id == identity_id))
        db.add_all(
            [
                MfaRecoveryCode(identity_id=identity_id, code_hash=hash_recovery_code(code), used=False)
                for code in plain_codes
            ]
        )
        await db.flush()
    except Exception:
        await db.rollback()
        raise

    await audit.record_event(
        db,
        identity_id,
        audit.RECOVERY_CODES_REGENERATED,
        {"codes_count": len(plain_codes)},
        context=context,
    )
    await db.commit()
    return plain_codes


async def consume_recovery_code(db: AsyncSession, identity_id: str, code: str) -> bool:
    """Validate and burn a recovery code in one conditional UPDATE.

    Two concurrent requests presenting the same code race on ``used = false``;
    the database lets exactly one of them see a returned row.
    """
    normalized = normalize_recovery_code(code)
    if not normalized:
        return False
    stmt = (
        update(MfaRecoveryCode)
        .where(
            MfaRecoveryCode.identity_id == identity_id,
            MfaRecoveryCode.code_hash == hash_recovery_code(normalized),
            MfaRecoveryCode.used.is_(False),
        )
        .values(used=True, used_at=utcnow())
        .returning(MfaRecoveryCode.id)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    consumed = result.first() is not None
    await db.commit()
    return consumed


async def remaining_recovery_codes(db: AsyncSession, identity_id: str) -> int:
    """Get the count of unused recovery codes for an identity."""
    stmt = select(func.count()).select_from(MfaRecoveryCode).where(
        MfaRecoveryCode.identity_id == identity_id,
        MfaRecoveryCode.used.is_(False),
    )
    result = await db.execute(stmt)
    return result.scalar() or 0


async def delete_recovery_codes(db: AsyncSession, identity_id: str) -> None:
    await db.execute(delete(MfaRecoveryCode).where(MfaRecoveryCode.identity_id == identity_id))
    await db.flush()
