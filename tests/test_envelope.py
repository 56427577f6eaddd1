import base64

import pytest
from sqlalchemy import select

from conftest import TEST_INDEX_KEY, TEST_MASTER_KEY
from authgate.core import aes_gcm
from authgate.core.errors import ConfigError, DecryptionError
from authgate.models.workspace_key import WorkspaceKey
from authgate.services.envelope import DekCache, EnvelopeEncryptionService, check_configuration, is_encrypted


@pytest.mark.asyncio
async def test_encrypt_then_decrypt_returns_plaintext(db_session, envelope):
    token = await envelope.encrypt_field(db_session, "ws-1", "DE89 3704 0044 0532 0130 00")

    assert token.startswith("enc:v1:")
    assert len(token.split(":")) == 5
    assert "DE89" not in token
    assert await envelope.decrypt_field(db_session, "ws-1", token) == "DE89 3704 0044 0532 0130 00"


@pytest.mark.asyncio
async def test_same_plaintext_encrypts_to_different_tokens(db_session, envelope):
    first = await envelope.encrypt_field(db_session, "ws-1", "secret")
    second = await envelope.encrypt_field(db_session, "ws-1", "secret")
    assert first != second


@pytest.mark.asyncio
async def test_blank_and_already_encrypted_values_pass_through(db_session, envelope):
    assert await envelope.encrypt_field(db_session, "ws-1", "") == ""
    assert await envelope.encrypt_field(db_session, "ws-1", "   ") == "   "

    token = await envelope.encrypt_field(db_session, "ws-1", "value")
    assert await envelope.encrypt_field(db_session, "ws-1", token) == token


@pytest.mark.asyncio
async def test_legacy_plaintext_is_returned_unchanged(db_session, envelope):
    assert await envelope.decrypt_field(db_session, "ws-1", "plain legacy value") == "plain legacy value"
    assert await envelope.decrypt_field(db_session, "ws-1", "") == ""
    assert is_encrypted("plain legacy value") is False


@pytest.mark.asyncio
async def test_tampered_ciphertext_fails(db_session, envelope):
    token = await envelope.encrypt_field(db_session, "ws-1", "sensitive")
    prefix, version, iv, ciphertext, tag = token.split(":")
    raw = bytearray(base64.b64decode(ciphertext))
    raw[0] ^= 0x01
    tampered = ":".join([prefix, version, iv, base64.b64encode(bytes(raw)).decode(), tag])

    with pytest.raises(DecryptionError):
        await envelope.decrypt_field(db_session, "ws-1", tampered)


@pytest.mark.asyncio
async def test_tampered_tag_fails(db_session, envelope):
    token = await envelope.encrypt_field(db_session, "ws-1", "sensitive")
    parts = token.split(":")
    parts[4] = base64.b64encode(b"\x00" * 16).decode()

    with pytest.raises(DecryptionError):
        await envelope.decrypt_field(db_session, "ws-1", ":".join(parts))


@pytest.mark.asyncio
@pytest.mark.parametrize("token", ["enc:v1:abc", "enc:v2:a:b:c", "enc:v1:!!:!!:!!"])
async def test_malformed_tokens_are_rejected(db_session, envelope, token):
    with pytest.raises(DecryptionError):
        await envelope.decrypt_field(db_session, "ws-1", token)


@pytest.mark.asyncio
async def test_token_from_another_workspace_does_not_decrypt(db_session, envelope):
    token = await envelope.encrypt_field(db_session, "ws-1", "sensitive")
    with pytest.raises(DecryptionError):
        await envelope.decrypt_field(db_session, "ws-2", token)


@pytest.mark.asyncio
async def test_workspace_key_is_persisted_wrapped(db_session, envelope):
    dek = await envelope.get_or_create_workspace_dek(db_session, "ws-1")

    row = (await db_session.execute(select(WorkspaceKey).where(WorkspaceKey.workspace_id == "ws-1"))).scalar_one()
    assert row.version == 1
    assert dek not in bytes(row.dek_cipher)
    assert len(bytes(row.dek_nonce)) == aes_gcm.NONCE_BYTES
    assert len(bytes(row.dek_tag)) == aes_gcm.TAG_BYTES


@pytest.mark.asyncio
async def test_fresh_service_unwraps_stored_key(db_session, envelope):
    token = await envelope.encrypt_field(db_session, "ws-1", "survives restart")

    restarted = EnvelopeEncryptionService(TEST_MASTER_KEY, TEST_INDEX_KEY, cache=DekCache(600))
    assert await restarted.decrypt_field(db_session, "ws-1", token) == "survives restart"


@pytest.mark.asyncio
async def test_wrong_master_key_cannot_unwrap(db_session, envelope):
    token = await envelope.encrypt_field(db_session, "ws-1", "secret")

    other = EnvelopeEncryptionService(bytes(range(64, 96)), TEST_INDEX_KEY)
    with pytest.raises(DecryptionError):
        await other.decrypt_field(db_session, "ws-1", token)


@pytest.mark.asyncio
async def test_dek_cache_expires_after_ttl(db_session, envelope, clock):
    await envelope.get_or_create_workspace_dek(db_session, "ws-1")
    await db_session.commit()
    assert envelope.cache.get("ws-1") is not None

    clock.advance(599)
    assert envelope.cache.get("ws-1") is not None

    clock.advance(2)
    assert envelope.cache.get("ws-1") is None
    assert len(envelope.cache) == 0


@pytest.mark.asyncio
async def test_cache_miss_reloads_same_key(db_session, envelope):
    first = await envelope.get_or_create_workspace_dek(db_session, "ws-1")
    envelope.cache.clear()
    second = await envelope.get_or_create_workspace_dek(db_session, "ws-1")
    assert first == second


@pytest.mark.asyncio
async def test_new_workspace_key_is_left_for_the_caller_to_commit(db_session, envelope):
    await envelope.encrypt_field(db_session, "ws-1", "secret")

    assert db_session.in_transaction()
    assert envelope.cache.get("ws-1") is None

    await db_session.commit()
    assert envelope.cache.get("ws-1") is not None


@pytest.mark.asyncio
async def test_rolled_back_workspace_key_is_never_cached(db_session, envelope):
    await envelope.encrypt_field(db_session, "ws-1", "first")
    await db_session.rollback()

    rows = (await db_session.execute(select(WorkspaceKey))).scalars().all()
    assert rows == []
    assert envelope.cache.get("ws-1") is None

    token = await envelope.encrypt_field(db_session, "ws-1", "second")
    await db_session.commit()
    assert await envelope.decrypt_field(db_session, "ws-1", token) == "second"


@pytest.mark.asyncio
async def test_nested_savepoint_does_not_publish_new_key(db_session, envelope):
    await envelope.encrypt_field(db_session, "ws-1", "secret")
    async with db_session.begin_nested():
        pass

    assert envelope.cache.get("ws-1") is None


@pytest.mark.asyncio
async def test_key_from_rolled_back_savepoint_is_not_published(db_session, envelope):
    savepoint = await db_session.begin_nested()
    await envelope.encrypt_field(db_session, "ws-1", "discarded")
    await savepoint.rollback()
    await db_session.commit()

    assert envelope.cache.get("ws-1") is None
    assert (await db_session.execute(select(WorkspaceKey))).scalars().all() == []


def test_hmac_fingerprint_normalizes_case_and_whitespace(envelope):
    assert envelope.hmac_fingerprint("  DE123456789 ") == envelope.hmac_fingerprint("de123456789")
    assert envelope.hmac_fingerprint("DE123456789") != envelope.hmac_fingerprint("DE123456780")
    assert len(envelope.hmac_fingerprint("x")) == 32


def test_hmac_fingerprint_rejects_empty(envelope):
    with pytest.raises(ValueError):
        envelope.hmac_fingerprint("")


def test_iban_fingerprint_ignores_spacing(envelope):
    compact = envelope.iban_fingerprint("DE89370400440532013000")
    spaced = envelope.iban_fingerprint("de89 3704 0044 0532 0130 00")
    assert compact is not None
    assert compact == spaced


def test_iban_fingerprint_rejects_non_iban(envelope):
    assert envelope.iban_fingerprint("not an iban") is None


def test_fingerprint_depends_on_index_key(envelope):
    other = EnvelopeEncryptionService(TEST_MASTER_KEY, bytes(range(96, 128)))
    assert other.hmac_fingerprint("value") != envelope.hmac_fingerprint("value")


def test_identical_master_and_index_keys_are_rejected():
    with pytest.raises(ConfigError):
        EnvelopeEncryptionService(TEST_MASTER_KEY, TEST_MASTER_KEY)


def test_short_keys_are_rejected():
    with pytest.raises(ConfigError):
        EnvelopeEncryptionService(b"short", TEST_INDEX_KEY)


def test_check_configuration_reports_missing_key(monkeypatch):
    from authgate.services import envelope as envelope_module

    assert check_configuration() == {"valid": True}

    monkeypatch.setattr(envelope_module.settings, "encryption_master_key_b64", "")
    result = check_configuration()
    assert result["valid"] is False
    assert "ENCRYPTION_MASTER_KEY_B64" in result["error"]


def test_decode_key_rejects_wrong_length():
    with pytest.raises(ConfigError) as excinfo:
        aes_gcm.decode_key_b64(base64.b64encode(b"x" * 16).decode(), name="ENCRYPTION_MASTER_KEY_B64")
    assert "32 bytes" in excinfo.value.message
    assert excinfo.value.hint
