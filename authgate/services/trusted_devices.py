from __future__ import annotations

import hashlib
import hmac
import ipaddress
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Iterable

from fastapi import Response
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.core.context import ClientContext
from authgate.core.errors import ConfigError
from authgate.core.settings import settings
from authgate.models.trusted_device import TrustedDevice
from authgate.models.types import ensure_utc, utcnow
from authgate.services import audit

logger = logging.getLogger(__name__)

DEVICE_ID_BYTES = 16  # 128-bit, 32 hex chars
SIGNATURE_HEX_CHARS = 32


@dataclass(frozen=True, slots=True)
class TrustedDeviceGrant:
    device_id: str
    expires_at: datetime
    cookie_value: str


@dataclass(frozen=True, slots=True)
class TrustedDeviceStatus:
    trusted: bool
    device_id: str | None = None
    expires_at: datetime | None = None


def hash_user_agent(user_agent: str) -> str:
    return hashlib.sha256((user_agent or "").encode("utf-8")).hexdigest()


def ip_prefix(ip: str | None) -> str | None:
    """Coarse network prefix: /24 for IPv4, /56 for IPv6."""
    try:
        address = ipaddress.ip_address((ip or "").strip())
    except ValueError:
        return None
    prefix = 24 if address.version == 4 else 56
    return str(ipaddress.ip_network(f"{address}/{prefix}", strict=False).network_address)


def _canonical_expiry(expires_at: datetime) -> str:
    return str(int(ensure_utc(expires_at).timestamp()))


class DeviceCookieSigner:
    """HMAC signer for ``deviceId.signature`` cookies.

    Signs with the current secret only, verifies against current and previous
    secrets so the signing key can be rolled without logging every device out.
    """

    def __init__(self, current_secret: str, previous_secrets: Iterable[str] = ()) -> None:
        if not current_secret:
            raise ConfigError("TRUSTED_DEVICE_SECRET is not set", hint="Generate with: openssl rand -hex 32")
        self._current = current_secret.encode("utf-8")
        self._previous = [secret.encode("utf-8") for secret in previous_secrets if secret]

    @staticmethod
    def _digest(secret: bytes, device_id: str, identity_id: str, expires_at: datetime) -> str:
        message = f"{device_id}|{identity_id}|{_canonical_expiry(expires_at)}".encode("utf-8")
        return hmac.new(secret, message, hashlib.sha256).hexdigest()[:SIGNATURE_HEX_CHARS]

    def sign(self, device_id: str, identity_id: str, expires_at: datetime) -> str:
        return self._digest(self._current, device_id, identity_id, expires_at)

    def verify(self, signature: str, device_id: str, identity_id: str, expires_at: datetime) -> bool:
        for secret in (self._current, *self._previous):
            expected = self._digest(secret, device_id, identity_id, expires_at)
            if hmac.compare_digest(expected, signature):
                return True
        return False


def parse_device_cookie(cookie: str | None) -> tuple[str, str] | None:
    if not cookie:
        return None
    device_id, sep, signature = cookie.strip().partition(".")
    if not sep or not device_id or not signature or "." in signature:
        return None
    if len(device_id) != DEVICE_ID_BYTES * 2 or len(signature) != SIGNATURE_HEX_CHARS:
        return None
    return device_id, signature


class TrustedDeviceLedger:
    def __init__(self, signer: DeviceCookieSigner, *, trust_days: int | None = None) -> None:
        self.signer = signer
        self.trust_days = trust_days if trust_days is not None else settings.trusted_device_days

    @classmethod
    def from_settings(cls) -> "TrustedDeviceLedger":
        previous = [settings.trusted_device_secret_prev] if settings.trusted_device_secret_prev else []
        return cls(DeviceCookieSigner(settings.trusted_device_secret, previous))

    async def add(
        self,
        db: AsyncSession,
        identity_id: str,
        context: ClientContext,
        *,
        now: datetime | None = None,
    ) -> TrustedDeviceGrant:
        now = ensure_utc(now) or utcnow()
        device_id = secrets.token_hex(DEVICE_ID_BYTES)
        expires_at = (now + timedelta(days=self.trust_days)).replace(microsecond=0)

        db.add(
            TrustedDevice(
                identity_id=identity_id,
                device_id=device_id,
                ua_hash=hash_user_agent(context.user_agent),
                ip_prefix=ip_prefix(context.ip_address),
                created_at=now,
                last_seen_at=now,
                expires_at=expires_at,
            )
        )
        await db.flush()
        await audit.record_event(
            db,
            identity_id,
            audit.TRUSTED_DEVICE_ADDED,
            {"device_id": device_id, "expires_at": expires_at},
            context=context,
        )
        await db.commit()

        signature = self.signer.sign(device_id, identity_id, expires_at)
        return TrustedDeviceGrant(device_id=device_id, expires_at=expires_at, cookie_value=f"{device_id}.{signature}")

    async def check(
        self,
        db: AsyncSession,
        identity_id: str,
        cookie: str | None,
        context: ClientContext,
        *,
        now: datetime | None = None,
    ) -> TrustedDeviceStatus:
        parsed = parse_device_cookie(cookie)
        if parsed is None:
            return TrustedDeviceStatus(trusted=False)
        device_id, signature = parsed
        now = ensure_utc(now) or utcnow()

        stmt = select(TrustedDevice).where(
            TrustedDevice.identity_id == identity_id,
            TrustedDevice.device_id == device_id,
            TrustedDevice.revoked_at.is_(None),
            TrustedDevice.expires_at > now,
        )
        result = await db.execute(stmt)
        device = result.scalar_one_or_none()
        if device is None:
            return TrustedDeviceStatus(trusted=False)

        expires_at = ensure_utc(device.expires_at)
        if not self.signer.verify(signature, device_id, identity_id, expires_at):
            logger.warning("Trusted device signature mismatch for identity=%s device=%s", identity_id, device_id)
            return TrustedDeviceStatus(trusted=False)

        # Drift is observed, not enforced.
        if device.ua_hash != hash_user_agent(context.user_agent):
            logger.info("User agent changed for trusted device %s; allowing", device_id)
        current_prefix = ip_prefix(context.ip_address)
        if device.ip_prefix and device.ip_prefix != current_prefix:
            logger.info("IP prefix changed for trusted device %s: %s -> %s", device_id, device.ip_prefix, current_prefix)

        device.last_seen_at = now
        db.add(device)
        await audit.record_event(
            db,
            identity_id,
            audit.TRUSTED_DEVICE_USED,
            {"device_id": device_id},
            context=context,
        )
        await db.commit()
        return TrustedDeviceStatus(trusted=True, device_id=device_id, expires_at=expires_at)

    async def revoke(
        self,
        db: AsyncSession,
        identity_id: str,
        device_id: str,
        *,
        context: ClientContext | None = None,
    ) -> bool:
        stmt = (
            update(TrustedDevice)
            .where(
                TrustedDevice.identity_id == identity_id,
                TrustedDevice.device_id == device_id,
                TrustedDevice.revoked_at.is_(None),
            )
            .values(revoked_at=utcnow())
            .returning(TrustedDevice.id)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        revoked = result.first() is not None
        await audit.record_event(
            db,
            identity_id,
            audit.TRUSTED_DEVICE_REVOKED,
            {"device_id": device_id, "revoked": revoked},
            context=context,
        )
        await db.commit()
        return revoked

    async def revoke_all(
        self,
        db: AsyncSession,
        identity_id: str,
        *,
        context: ClientContext | None = None,
    ) -> int:
        stmt = (
            update(TrustedDevice)
            .where(TrustedDevice.identity_id == identity_id, TrustedDevice.revoked_at.is_(None))
            .values(revoked_at=utcnow())
            .returning(TrustedDevice.id)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        count = len(result.all())
        await audit.record_event(
            db,
            identity_id,
            audit.ALL_TRUSTED_DEVICES_REVOKED,
            {"revoked_count": count},
            context=context,
        )
        await db.commit()
        return count

    async def list_devices(self, db: AsyncSession, identity_id: str, *, now: datetime | None = None) -> list[TrustedDevice]:
        now = ensure_utc(now) or utcnow()
        stmt = (
            select(TrustedDevice)
            .where(
                TrustedDevice.identity_id == identity_id,
                TrustedDevice.revoked_at.is_(None),
                TrustedDevice.expires_at > now,
            )
            .order_by(TrustedDevice.created_at.desc())
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())


def set_device_cookie(response: Response, grant: TrustedDeviceGrant) -> None:
    response.set_cookie(
        key=settings.trusted_device_cookie_name,
        value=grant.cookie_value,
        max_age=settings.trusted_device_days * 24 * 60 * 60,
        path="/",
        domain=settings.cookie_domain or None,
        secure=settings.cookie_secure,
        httponly=True,
        samesite="lax",
    )


def clear_device_cookie(response: Response) -> None:
    response.delete_cookie(
        key=settings.trusted_device_cookie_name,
        path="/",
        domain=settings.cookie_domain or None,
        secure=settings.cookie_secure,
        httponly=True,
        samesite="lax",
    )


@lru_cache(maxsize=1)
def get_trusted_device_ledger() -> TrustedDeviceLedger:
    return TrustedDeviceLedger.from_settings()
