from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from fastapi.encoders import jsonable_encoder
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.core.context import ClientContext
from authgate.core.logging import get_audit_logger
from authgate.models.audit_log import AuditLog

logger = logging.getLogger(__name__)

MFA_SUCCESS = "mfa_success"
MFA_FAILURE = "mfa_failure"
MFA_ENROLLED = "mfa_enrolled"
MFA_UNENROLLED = "mfa_unenrolled"
RECOVERY_CODES_REGENERATED = "recovery_codes_regenerated"
TRUSTED_DEVICE_ADDED = "trusted_device_added"
TRUSTED_DEVICE_USED = "trusted_device_used"
TRUSTED_DEVICE_REVOKED = "trusted_device_revoked"
ALL_TRUSTED_DEVICES_REVOKED = "all_trusted_devices_revoked"
PROFILE_ENCRYPTED_UPDATE = "profile_encrypted_update"
ENCRYPTION_KEY_ROTATION = "encryption_key_rotation"
ENCRYPTION_BACKFILL = "encryption_backfill"

USER_AGENT_MAX = 500


def serialize_for_audit(value: Any) -> Any:
    return jsonable_encoder(
        value,
        custom_encoder={
            Decimal: lambda v: str(v),
            datetime: lambda v: v.isoformat(),
            date: lambda v: v.isoformat(),
            bytes: lambda v: v.hex(),
        },
    )


async def record_event(
    db: AsyncSession,
    identity_id: str | None,
    event_type: str,
    details: dict[str, Any] | None = None,
    *,
    context: ClientContext | None = None,
) -> None:
    """Append an audit entry without ever failing the caller.

    The insert runs in a SAVEPOINT so a broken audit write cannot poison the
    surrounding transaction; the security decision it describes stands either way.
    """
    payload = serialize_for_audit(details or {})
    ip_address = context.ip_address if context else None
    user_agent = context.user_agent[:USER_AGENT_MAX] if context else None

    get_audit_logger().info(
        "%s identity=%s",
        event_type,
        identity_id or "-",
        extra={"event": {"type": event_type, "details": payload, "ip": ip_address}},
    )

    try:
        async with db.begin_nested():
            db.add(
                AuditLog(
                    identity_id=identity_id,
                    event_type=event_type,
                    details=payload,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            )
    except SQLAlchemyError:
        logger.exception("Audit write failed for event=%s identity=%s", event_type, identity_id)


async def list_events(db: AsyncSession, identity_id: str, *, limit: int = 50) -> list[AuditLog]:
    stmt = (
        select(AuditLog)
        .where(AuditLog.identity_id == identity_id)
        .order_by(AuditLog.created_at.desc())
        .limit(limit)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())
