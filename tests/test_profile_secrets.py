import pytest
from sqlalchemy import select

from authgate.models.audit_log import AuditLog
from authgate.models.profile_secret import ProfileSecret
from authgate.services import audit, profile_secrets

IBAN = "DE89 3704 0044 0532 0130 00"


@pytest.mark.asyncio
async def test_save_and_fetch_round_trip(db_session, envelope):
    updated = await profile_secrets.save_profile_secrets(
        db_session, envelope, "user-1", bank_details=IBAN, vat_id="DE123456789"
    )

    assert updated == ["bank_details_enc", "iban_fp", "vat_id_enc", "vat_fp"]
    secrets = await profile_secrets.fetch_profile_secrets(db_session, envelope, "user-1")
    assert secrets.bank_details == IBAN
    assert secrets.vat_id == "DE123456789"


@pytest.mark.asyncio
async def test_values_are_stored_encrypted(db_session, envelope):
    await profile_secrets.save_profile_secrets(db_session, envelope, "user-1", bank_details=IBAN, vat_id="DE123456789")

    row = (await db_session.execute(select(ProfileSecret))).scalar_one()
    assert row.bank_details_enc.startswith("enc:v1:")
    assert row.vat_id_enc.startswith("enc:v1:")
    assert "DE123456789" not in row.vat_id_enc
    assert row.vat_fp == envelope.hmac_fingerprint("DE123456789")


@pytest.mark.asyncio
async def test_lookup_by_fingerprint(db_session, envelope):
    await profile_secrets.save_profile_secrets(db_session, envelope, "user-1", bank_details=IBAN, vat_id="DE123456789")

    assert await profile_secrets.find_identity_by_vat_id(db_session, envelope, " de123456789 ") == "user-1"
    assert await profile_secrets.find_identity_by_iban(db_session, envelope, "DE89370400440532013000") == "user-1"
    assert await profile_secrets.find_identity_by_vat_id(db_session, envelope, "FR000") is None
    assert await profile_secrets.find_identity_by_iban(db_session, envelope, "garbage") is None


@pytest.mark.asyncio
async def test_partial_update_leaves_other_field(db_session, envelope):
    await profile_secrets.save_profile_secrets(db_session, envelope, "user-1", bank_details=IBAN, vat_id="DE123456789")

    updated = await profile_secrets.save_profile_secrets(db_session, envelope, "user-1", vat_id="")

    assert updated == ["vat_id_enc", "vat_fp"]
    secrets = await profile_secrets.fetch_profile_secrets(db_session, envelope, "user-1")
    assert secrets.bank_details == IBAN
    assert secrets.vat_id is None


@pytest.mark.asyncio
async def test_update_is_audited_without_plaintext(db_session, envelope):
    await profile_secrets.save_profile_secrets(db_session, envelope, "user-1", vat_id="DE123456789")

    event = (
        await db_session.execute(select(AuditLog).where(AuditLog.event_type == audit.PROFILE_ENCRYPTED_UPDATE))
    ).scalar_one()
    assert event.details["fields_updated"] == ["vat_id_enc", "vat_fp"]
    assert event.details["has_encrypted_data"] is True
    assert "DE123456789" not in str(event.details)


@pytest.mark.asyncio
async def test_fetch_without_row(db_session, envelope):
    secrets = await profile_secrets.fetch_profile_secrets(db_session, envelope, "nobody")
    assert secrets.bank_details is None
    assert secrets.vat_id is None
