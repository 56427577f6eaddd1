from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal, NoReturn

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.core.context import ClientContext
from authgate.core.errors import InvalidCode, NotFoundError, RateLimited
from authgate.core.settings import settings
from authgate.models.mfa_challenge import MfaChallenge
from authgate.models.mfa_factor import FACTOR_STATUS_UNVERIFIED, FACTOR_STATUS_VERIFIED, MfaFactor
from authgate.models.types import ensure_utc, utcnow
from authgate.services import audit, mfa_rate_limit
from authgate.services.envelope import EnvelopeEncryptionService
from authgate.services.mfa_factors import claim_totp_step, decrypt_factor_secret, get_factor, match_totp_step
from authgate.services.recovery_codes import consume_recovery_code, remaining_recovery_codes
from authgate.services.trusted_devices import TrustedDeviceGrant, TrustedDeviceLedger

logger = logging.getLogger(__name__)

VerificationType = Literal["totp", "recovery"]

REASON_RATE_LIMITED = "rate_limited"
REASON_INVALID_TOTP = "invalid_totp"
REASON_INVALID_RECOVERY_CODE = "invalid_recovery_code"
REASON_CHALLENGE_EXPIRED = "challenge_expired"
REASON_CHALLENGE_NOT_FOUND = "challenge_not_found"
REASON_FACTOR_NOT_FOUND = "factor_not_found"
REASON_FACTOR_NOT_VERIFIED = "factor_not_verified"
REASON_TOTP_REUSED = "totp_reused"

_FAILURE_MESSAGES = {
    REASON_INVALID_TOTP: "Invalid verification code",
    REASON_INVALID_RECOVERY_CODE: "Invalid or already used recovery code",
    REASON_CHALLENGE_EXPIRED: "Challenge expired, request a new one",
    REASON_CHALLENGE_NOT_FOUND: "Challenge not found",
    REASON_FACTOR_NOT_FOUND: "MFA factor not found",
    REASON_FACTOR_NOT_VERIFIED: "Confirm this factor with a code from the authenticator app",
    REASON_TOTP_REUSED: "Verification code already used, wait for the next one",
}


@dataclass(frozen=True, slots=True)
class VerificationRequest:
    factor_id: uuid.UUID
    challenge_id: uuid.UUID
    code: str
    type: VerificationType = "totp"
    remember_device: bool = False


@dataclass(frozen=True, slots=True)
class VerificationResult:
    success: bool
    factor_id: uuid.UUID
    trusted_device: TrustedDeviceGrant | None = None
    remaining_recovery_codes: int | None = None


async def issue_challenge(
    db: AsyncSession,
    identity_id: str,
    factor_id: uuid.UUID,
    *,
    context: ClientContext | None = None,
) -> MfaChallenge:
    factor = await get_factor(db, identity_id, factor_id)
    if factor is None:
        raise NotFoundError("MFA factor not found")

    challenge = MfaChallenge(
        id=uuid.uuid4(),
        factor_id=factor.id,
        identity_id=identity_id,
        issued_at=utcnow(),
        ip_address=context.ip_address if context else None,
    )
    db.add(challenge)
    await db.commit()
    return challenge


class ChallengeVerifier:
    """Runs one verification attempt: rate limit, challenge binding, code check, bookkeeping."""

    def __init__(
        self,
        envelope: EnvelopeEncryptionService,
        ledger: TrustedDeviceLedger,
        *,
        challenge_ttl_seconds: int | None = None,
    ) -> None:
        self.envelope = envelope
        self.ledger = ledger
        ttl = challenge_ttl_seconds if challenge_ttl_seconds is not None else settings.mfa_challenge_ttl_seconds
        self.challenge_ttl = timedelta(seconds=ttl)

    async def verify(
        self,
        db: AsyncSession,
        identity_id: str,
        request: VerificationRequest,
        context: ClientContext,
        *,
        now: datetime | None = None,
    ) -> VerificationResult:
        now = ensure_utc(now) or utcnow()

        decision = await mfa_rate_limit.check_and_increment(db, identity_id, now=now)
        if not decision.allowed:
            await self._fail(db, identity_id, request, context, REASON_RATE_LIMITED)
            raise RateLimited(decision.retry_after_seconds)

        challenge = await self._load_challenge(db, identity_id, request)
        if challenge is None:
            await self._reject(db, identity_id, request, context, REASON_CHALLENGE_NOT_FOUND)
        if challenge.consumed_at is not None or ensure_utc(challenge.issued_at) <= now - self.challenge_ttl:
            await self._reject(db, identity_id, request, context, REASON_CHALLENGE_EXPIRED)

        factor = await get_factor(db, identity_id, request.factor_id)
        if factor is None:
            await self._reject(db, identity_id, request, context, REASON_FACTOR_NOT_FOUND)

        if request.type == "recovery":
            # Only a code from the authenticator proves an enrollment.
            if factor.status != FACTOR_STATUS_VERIFIED:
                await self._reject(db, identity_id, request, context, REASON_FACTOR_NOT_VERIFIED)
            if not await consume_recovery_code(db, identity_id, request.code):
                await self._reject(db, identity_id, request, context, REASON_INVALID_RECOVERY_CODE)
        else:
            secret = await decrypt_factor_secret(db, self.envelope, factor)
            step = match_totp_step(secret, request.code, for_time=now)
            if step is None:
                await self._reject(db, identity_id, request, context, REASON_INVALID_TOTP)
            if not await claim_totp_step(db, factor.id, step):
                await self._reject(db, identity_id, request, context, REASON_TOTP_REUSED)

        # A concurrent request may have spent the same challenge since it was loaded.
        if not await self._consume_challenge(db, challenge.id, now):
            await self._reject(db, identity_id, request, context, REASON_CHALLENGE_EXPIRED)

        if request.type == "totp" and factor.status == FACTOR_STATUS_UNVERIFIED:
            await self._promote_factor(db, factor, now)

        await mfa_rate_limit.reset(db, identity_id)

        details: dict[str, object] = {"type": request.type, "factor_id": factor.id}
        remaining = None
        if request.type == "recovery":
            remaining = await remaining_recovery_codes(db, identity_id)
            details["remaining_recovery_codes"] = remaining
        await audit.record_event(db, identity_id, audit.MFA_SUCCESS, details, context=context)
        await db.commit()

        grant = None
        if request.remember_device:
            grant = await self.ledger.add(db, identity_id, context, now=now)

        return VerificationResult(
            success=True,
            factor_id=factor.id,
            trusted_device=grant,
            remaining_recovery_codes=remaining,
        )

    async def _load_challenge(
        self,
        db: AsyncSession,
        identity_id: str,
        request: VerificationRequest,
    ) -> MfaChallenge | None:
        stmt = select(MfaChallenge).where(
            MfaChallenge.id == request.challenge_id,
            MfaChallenge.identity_id == identity_id,
            MfaChallenge.factor_id == request.factor_id,
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def _consume_challenge(self, db: AsyncSession, challenge_id: uuid.UUID, now: datetime) -> bool:
        stmt = (
            update(MfaChallenge)
            .where(
                MfaChallenge.id == challenge_id,
                MfaChallenge.consumed_at.is_(None),
                MfaChallenge.issued_at > now - self.challenge_ttl,
            )
            .values(consumed_at=now)
            .returning(MfaChallenge.id)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        consumed = result.first() is not None
        await db.commit()
        return consumed

    async def _promote_factor(self, db: AsyncSession, factor: MfaFactor, now: datetime) -> None:
        factor.status = FACTOR_STATUS_VERIFIED
        factor.verified_at = now
        db.add(factor)
        await db.flush()
        logger.info("Factor %s verified for identity=%s", factor.id, factor.identity_id)

    async def _fail(
        self,
        db: AsyncSession,
        identity_id: str,
        request: VerificationRequest,
        context: ClientContext,
        reason: str,
    ) -> None:
        await audit.record_event(
            db,
            identity_id,
            audit.MFA_FAILURE,
            {"reason": reason, "type": request.type, "factor_id": request.factor_id},
            context=context,
        )
        await db.commit()

    async def _reject(
        self,
        db: AsyncSession,
        identity_id: str,
        request: VerificationRequest,
        context: ClientContext,
        reason: str,
    ) -> NoReturn:
        await self._fail(db, identity_id, request, context, reason)
        raise InvalidCode(reason, _FAILURE_MESSAGES.get(reason))
