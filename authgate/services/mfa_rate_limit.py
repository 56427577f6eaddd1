from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import case, delete, literal
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.core.settings import settings
from authgate.models.mfa_rate_limit import MfaRateLimit
from authgate.models.types import UtcDateTime, ensure_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    allowed: bool
    attempts: int
    retry_after_seconds: int = 0


def _dialect_insert(db: AsyncSession):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:  # pragma: no cover - only the two supported backends
        raise NotImplementedError(f"Atomic rate limiting is not implemented for {dialect}")
    return insert


async def check_and_increment(
    db: AsyncSession,
    identity_id: str,
    *,
    now: datetime | None = None,
    max_attempts: int | None = None,
    window_seconds: int | None = None,
) -> RateLimitDecision:
    """Count one verification attempt against a fixed window.

    A single upsert creates the window, resets an expired one or increments the
    live one, so concurrent attempts can never slip past the cap.
    """
    now = ensure_utc(now) or utcnow()
    limit = max_attempts if max_attempts is not None else settings.mfa_rate_limit_attempts
    window = timedelta(seconds=window_seconds if window_seconds is not None else settings.mfa_rate_limit_window_seconds)
    cutoff = now - window

    table = MfaRateLimit.__table__
    insert = _dialect_insert(db)
    expired = table.c.window_start < cutoff
    stmt = (
        insert(table)
        .values(identity_id=identity_id, window_start=now, attempts=1)
        .on_conflict_do_update(
            index_elements=[table.c.identity_id],
            set_={
                "attempts": case((expired, 1), else_=table.c.attempts + 1),
                "window_start": case((expired, literal(now, UtcDateTime())), else_=table.c.window_start),
            },
        )
        .returning(table.c.attempts, table.c.window_start)
    )
    result = await db.execute(stmt)
    attempts, window_start = result.one()
    await db.commit()

    if attempts <= limit:
        return RateLimitDecision(allowed=True, attempts=attempts)

    window_end = ensure_utc(window_start) + window
    retry_after = max(1, math.ceil((window_end - now).total_seconds()))
    logger.warning("MFA rate limit hit for identity=%s attempts=%s retry_after=%ss", identity_id, attempts, retry_after)
    return RateLimitDecision(allowed=False, attempts=attempts, retry_after_seconds=retry_after)


async def reset(db: AsyncSession, identity_id: str) -> None:
    """Clear the window after a fully successful verification."""
    await db.execute(delete(MfaRateLimit).where(MfaRateLimit.identity_id == identity_id))
    await db.commit()
