from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from authgate.core.context import ClientContext
from authgate.core.security import AssuranceLevel
from authgate.services.mfa_factors import has_verified_factor
from authgate.services.trusted_devices import TrustedDeviceLedger

logger = logging.getLogger(__name__)

REASON_NO_USER = "no_user"
REASON_ALREADY_AAL2 = "already_aal2"
REASON_MFA_NOT_ENABLED = "mfa_not_enabled"
REASON_TRUSTED_DEVICE = "trusted_device"
REASON_VERIFICATION_REQUIRED = "mfa_verification_required"
REASON_ERROR_DEFAULT_SECURE = "error_default_secure"


@dataclass(frozen=True, slots=True)
class AuthState:
    enrolled: bool
    needs_mfa: bool
    assurance: AssuranceLevel | None
    trusted_device: bool
    reason: str

    def as_dict(self) -> dict:
        return asdict(self)


class AuthStateResolver:
    """Decides whether a session must complete a second factor before proceeding."""

    def __init__(self, ledger: TrustedDeviceLedger) -> None:
        self.ledger = ledger

    async def resolve(
        self,
        db: AsyncSession,
        identity_id: str | None,
        session_aal: AssuranceLevel | None,
        *,
        device_cookie: str | None = None,
        context: ClientContext | None = None,
    ) -> AuthState:
        if not identity_id:
            return AuthState(False, False, None, False, REASON_NO_USER)
        if session_aal == "aal2":
            # Enrollment is not looked up; an aal2 session implies it.
            return AuthState(True, False, "aal2", False, REASON_ALREADY_AAL2)

        try:
            if not await has_verified_factor(db, identity_id):
                return AuthState(False, False, session_aal, False, REASON_MFA_NOT_ENABLED)

            status = await self.ledger.check(db, identity_id, device_cookie, context or ClientContext())
            if status.trusted:
                return AuthState(True, False, session_aal, True, REASON_TRUSTED_DEVICE)
            return AuthState(True, True, session_aal, False, REASON_VERIFICATION_REQUIRED)
        except Exception:
            logger.warning("Auth state resolution failed for identity=%s; requiring MFA", identity_id, exc_info=True)
            return AuthState(True, True, session_aal, False, REASON_ERROR_DEFAULT_SECURE)
