"""Master key rotation.

Only the wrapped workspace keys depend on the master key, so rotating it means
re-wrapping every ``workspace_keys`` row; field ciphertexts stay untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.core import aes_gcm
from authgate.core.context import ClientContext
from authgate.core.errors import ConfigError, DecryptionError
from authgate.core.settings import settings
from authgate.models.types import utcnow
from authgate.models.workspace_key import WorkspaceKey
from authgate.services import audit
from authgate.services.envelope import DekCache, unwrap_dek, wrap_dek

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3


@dataclass
class RotationReport:
    rotated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def as_dict(self) -> dict:
        return {"rotated": self.rotated, "skipped": self.skipped, "failed": self.failed, "errors": list(self.errors)}


def load_rotation_keys() -> tuple[bytes, bytes]:
    if not settings.encryption_master_key_prev_b64:
        raise ConfigError(
            "Key rotation requires both ENCRYPTION_MASTER_KEY_B64 and ENCRYPTION_MASTER_KEY_PREV_B64 to be set",
            hint="Move the old key to ENCRYPTION_MASTER_KEY_PREV_B64 and put the new key in ENCRYPTION_MASTER_KEY_B64",
        )
    current = aes_gcm.decode_key_b64(settings.encryption_master_key_b64, name="ENCRYPTION_MASTER_KEY_B64")
    previous = aes_gcm.decode_key_b64(settings.encryption_master_key_prev_b64, name="ENCRYPTION_MASTER_KEY_PREV_B64")
    return current, previous


def _unwraps_under(master_key: bytes, row: WorkspaceKey) -> bool:
    try:
        unwrap_dek(master_key, row)
    except DecryptionError:
        return False
    return True


async def _rewrap_row(db: AsyncSession, row: WorkspaceKey, current: bytes, previous: bytes) -> None:
    dek = unwrap_dek(previous, row)
    box = wrap_dek(current, dek)
    async with db.begin_nested():
        row.dek_cipher = box.ciphertext
        row.dek_nonce = box.nonce
        row.dek_tag = box.tag
        row.version = (row.version or 1) + 1
        row.rotated_at = utcnow()
        db.add(row)


async def rotate_master_key(
    db: AsyncSession,
    current_key: bytes,
    previous_key: bytes,
    *,
    cache: DekCache | None = None,
    context: ClientContext | None = None,
) -> RotationReport:
    """Re-wrap every workspace key from ``previous_key`` to ``current_key``.

    Idempotent: rows already readable under the current key are skipped, so an
    interrupted run can simply be restarted.
    """
    if current_key == previous_key:
        raise ConfigError("Current and previous master keys are identical; nothing to rotate")

    report = RotationReport()
    result = await db.execute(select(WorkspaceKey).order_by(WorkspaceKey.workspace_id))
    rows = list(result.scalars().all())
    logger.info("Rotating master key for %s workspace keys", len(rows))

    for row in rows:
        workspace_id = row.workspace_id
        if _unwraps_under(current_key, row):
            report.skipped += 1
            continue

        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                await _rewrap_row(db, row, current_key, previous_key)
            except DecryptionError as exc:
                report.failed += 1
                report.errors.append(f"{workspace_id}: {exc.message}")
                logger.error("Workspace key %s unwraps under neither master key", workspace_id)
                break
            except SQLAlchemyError as exc:
                logger.warning("Re-wrap of workspace key %s failed (attempt %s/%s): %s", workspace_id, attempt, MAX_ATTEMPTS, exc)
                await db.refresh(row)
                if attempt == MAX_ATTEMPTS:
                    report.failed += 1
                    report.errors.append(f"{workspace_id}: {exc}")
            else:
                report.rotated += 1
                break

    await audit.record_event(
        db,
        None,
        audit.ENCRYPTION_KEY_ROTATION,
        {"rotated": report.rotated, "skipped": report.skipped, "failed": report.failed, "errors": len(report.errors)},
        context=context,
    )
    await db.commit()

    if cache is not None:
        cache.clear()
    logger.info("Master key rotation finished: %s", report.as_dict())
    return report
