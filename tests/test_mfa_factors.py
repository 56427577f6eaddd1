import uuid
from datetime import datetime, timedelta, timezone

import pyotp
import pytest
from sqlalchemy import select

from authgate.core.context import ClientContext
from authgate.core.errors import NotFoundError
from authgate.models.mfa_factor import FACTOR_STATUS_UNVERIFIED, FACTOR_STATUS_VERIFIED, MfaFactor
from authgate.services import mfa_factors
from authgate.services.recovery_codes import generate_recovery_codes, remaining_recovery_codes

CLIENT = ClientContext(ip_address="198.51.100.1", user_agent="pytest")


async def _mark_verified(db, factor_id):
    factor = (await db.execute(select(MfaFactor).where(MfaFactor.id == factor_id))).scalar_one()
    factor.status = FACTOR_STATUS_VERIFIED
    await db.commit()


@pytest.mark.asyncio
async def test_enroll_stores_encrypted_secret(db_session, envelope):
    enrollment = await mfa_factors.enroll_totp(
        db_session, envelope, "user-1", friendly_name="Phone", account_name="user@example.com", context=CLIENT
    )

    factor = (await db_session.execute(select(MfaFactor).where(MfaFactor.id == enrollment.factor_id))).scalar_one()
    assert factor.status == FACTOR_STATUS_UNVERIFIED
    assert factor.secret_encrypted.startswith("enc:v1:")
    assert enrollment.secret not in factor.secret_encrypted
    assert await mfa_factors.decrypt_factor_secret(db_session, envelope, factor) == enrollment.secret
    assert enrollment.uri.startswith("otpauth://totp/")
    assert "user%40example.com" in enrollment.uri


@pytest.mark.asyncio
async def test_reenroll_replaces_abandoned_unverified_factor(db_session, envelope):
    first = await mfa_factors.enroll_totp(db_session, envelope, "user-1")
    second = await mfa_factors.enroll_totp(db_session, envelope, "user-1")

    factors = await mfa_factors.list_factors(db_session, "user-1")
    assert [factor.id for factor in factors] == [second.factor_id]
    assert first.factor_id != second.factor_id


@pytest.mark.asyncio
async def test_has_verified_factor(db_session, envelope):
    enrollment = await mfa_factors.enroll_totp(db_session, envelope, "user-1")
    assert await mfa_factors.has_verified_factor(db_session, "user-1") is False

    await _mark_verified(db_session, enrollment.factor_id)
    assert await mfa_factors.has_verified_factor(db_session, "user-1") is True
    assert await mfa_factors.has_verified_factor(db_session, "user-2") is False


@pytest.mark.asyncio
async def test_unenroll_last_factor_clears_codes_and_devices(db_session, envelope, ledger):
    enrollment = await mfa_factors.enroll_totp(db_session, envelope, "user-1")
    await _mark_verified(db_session, enrollment.factor_id)
    await generate_recovery_codes(db_session, "user-1")
    await ledger.add(db_session, "user-1", CLIENT)

    await mfa_factors.unenroll(db_session, "user-1", enrollment.factor_id, ledger=ledger, context=CLIENT)

    assert await mfa_factors.list_factors(db_session, "user-1") == []
    assert await remaining_recovery_codes(db_session, "user-1") == 0
    assert await ledger.list_devices(db_session, "user-1") == []


@pytest.mark.asyncio
async def test_unenroll_unknown_factor(db_session, ledger):
    with pytest.raises(NotFoundError):
        await mfa_factors.unenroll(db_session, "user-1", uuid.uuid4(), ledger=ledger)


def test_match_totp_step_accepts_current_code_only():
    secret = mfa_factors.generate_totp_secret()
    code = pyotp.TOTP(secret).now()

    assert mfa_factors.match_totp_step(secret, code) is not None
    assert mfa_factors.match_totp_step(secret, "12a456") is None
    assert mfa_factors.match_totp_step(secret, "") is None


def test_match_totp_step_reports_the_step_within_the_window():
    secret = mfa_factors.generate_totp_secret()
    totp = pyotp.TOTP(secret)
    moment = datetime(2026, 1, 5, 12, 0, 10, tzinfo=timezone.utc)
    step = totp.timecode(moment)

    assert mfa_factors.match_totp_step(secret, totp.at(moment), for_time=moment) == step
    assert mfa_factors.match_totp_step(secret, totp.at(moment - timedelta(seconds=30)), for_time=moment) == step - 1
    assert mfa_factors.match_totp_step(secret, totp.at(moment + timedelta(seconds=30)), for_time=moment) == step + 1
    assert mfa_factors.match_totp_step(secret, "abc123", for_time=moment) is None


@pytest.mark.asyncio
async def test_claim_totp_step_only_moves_forward(db_session, envelope):
    enrollment = await mfa_factors.enroll_totp(db_session, envelope, "user-1")

    assert await mfa_factors.claim_totp_step(db_session, enrollment.factor_id, 100) is True
    assert await mfa_factors.claim_totp_step(db_session, enrollment.factor_id, 100) is False
    assert await mfa_factors.claim_totp_step(db_session, enrollment.factor_id, 99) is False
    assert await mfa_factors.claim_totp_step(db_session, enrollment.factor_id, 101) is True
