"""Workspace-scoped envelope encryption.

Field values are sealed with a per-workspace data encryption key (DEK). The DEK
is itself sealed ("wrapped") under the process-wide master key and persisted in
``workspace_keys``; the plaintext DEK only ever lives in memory, in a TTL cache
owned by the service instance. Searchable fingerprints use a separate index key
so a leaked fingerprint column says nothing about the ciphertexts.

Token format: ``enc:v1:<iv_b64>:<ciphertext_b64>:<tag_b64>``. Values without the
``enc:`` prefix are legacy plaintext and pass through decryption untouched.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
import re
import time
from dataclasses import dataclass
from functools import lru_cache
from threading import Lock
from typing import Callable

from sqlalchemy import event, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import SessionTransaction

from authgate.core import aes_gcm
from authgate.core.errors import ConfigError, DecryptionError
from authgate.core.settings import settings
from authgate.models.workspace_key import WorkspaceKey

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "enc:"
TOKEN_VERSION = "v1"
DEK_BYTES = 32
# Session.info key holding DEKs created in the current transaction.
STAGED_DEKS_KEY = "authgate.staged_deks"
_STAGING_LISTENERS_KEY = "authgate.staged_deks_listeners"

_IBAN_PATTERN = re.compile(r"^[A-Z]{2}[0-9]{2}[A-Z0-9]{4,30}$")


def is_encrypted(value: str | None) -> bool:
    return bool(value) and value.startswith(TOKEN_PREFIX)


@dataclass(slots=True)
class _CachedDek:
    key: bytes
    expires_at: float


@dataclass(slots=True)
class _StagedDek:
    """A DEK whose key row is not committed yet, and the transaction that holds the row."""

    key: bytes
    transaction: SessionTransaction | None

    def created_within(self, transaction: SessionTransaction) -> bool:
        current = self.transaction
        while current is not None:
            if current is transaction:
                return True
            current = current.parent
        return False


class DekCache:
    """In-memory DEK cache with an injectable clock.

    Purely a latency optimisation: a miss falls back to unwrapping from storage,
    so eviction or disagreement between processes is always safe.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _CachedDek] = {}
        self._lock = Lock()

    def get(self, workspace_id: str) -> bytes | None:
        with self._lock:
            entry = self._entries.get(workspace_id)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[workspace_id]
                return None
            return entry.key

    def put(self, workspace_id: str, key: bytes) -> None:
        with self._lock:
            self._entries[workspace_id] = _CachedDek(key=key, expires_at=self._clock() + self.ttl_seconds)

    def invalidate(self, workspace_id: str) -> None:
        with self._lock:
            self._entries.pop(workspace_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def wrap_dek(master_key: bytes, dek: bytes) -> aes_gcm.SealedBox:
    return aes_gcm.seal(master_key, dek)


def unwrap_dek(master_key: bytes, row: WorkspaceKey) -> bytes:
    box = aes_gcm.SealedBox(nonce=bytes(row.dek_nonce), ciphertext=bytes(row.dek_cipher), tag=bytes(row.dek_tag))
    try:
        dek = aes_gcm.open_box(master_key, box)
    except DecryptionError as exc:
        raise DecryptionError(
            f"Failed to unwrap workspace key for {row.workspace_id}; the master key does not match"
        ) from exc
    if len(dek) != DEK_BYTES:
        raise DecryptionError(f"Unwrapped workspace key for {row.workspace_id} has the wrong length")
    return dek


class EnvelopeEncryptionService:
    def __init__(
        self,
        master_key: bytes,
        index_key: bytes,
        *,
        cache: DekCache | None = None,
    ) -> None:
        if len(master_key) != aes_gcm.KEY_BYTES or len(index_key) != aes_gcm.KEY_BYTES:
            raise ConfigError("Master and index keys must be 32 bytes", hint=aes_gcm.KEYGEN_HINT)
        if hmac.compare_digest(master_key, index_key):
            raise ConfigError(
                "ENCRYPTION_INDEX_KEY_B64 must differ from ENCRYPTION_MASTER_KEY_B64",
                hint=aes_gcm.KEYGEN_HINT,
            )
        self._master_key = master_key
        self._index_key = index_key
        self.cache = cache or DekCache(settings.dek_cache_ttl_seconds)

    @classmethod
    def from_settings(cls) -> "EnvelopeEncryptionService":
        return cls(
            aes_gcm.decode_key_b64(settings.encryption_master_key_b64, name="ENCRYPTION_MASTER_KEY_B64"),
            aes_gcm.decode_key_b64(settings.encryption_index_key_b64, name="ENCRYPTION_INDEX_KEY_B64"),
        )

    async def get_or_create_workspace_dek(self, db: AsyncSession, workspace_id: str) -> bytes:
        cached = self.cache.get(workspace_id)
        if cached is not None:
            return cached
        staged = db.info.get(STAGED_DEKS_KEY, {}).get(workspace_id)
        if staged is not None:
            return staged.key

        row = await self._load_key_row(db, workspace_id)
        if row is None:
            # Cached only once the caller commits the new key row.
            return await self._create_workspace_dek(db, workspace_id)

        dek = unwrap_dek(self._master_key, row)
        logger.debug("Unwrapped DEK for workspace=%s version=%s", workspace_id, row.version)
        self.cache.put(workspace_id, dek)
        return dek

    async def _load_key_row(self, db: AsyncSession, workspace_id: str) -> WorkspaceKey | None:
        stmt = select(WorkspaceKey).where(WorkspaceKey.workspace_id == workspace_id)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def _create_workspace_dek(self, db: AsyncSession, workspace_id: str) -> bytes:
        dek = os.urandom(DEK_BYTES)
        box = wrap_dek(self._master_key, dek)
        try:
            async with db.begin_nested():
                db.add(
                    WorkspaceKey(
                        workspace_id=workspace_id,
                        dek_cipher=box.ciphertext,
                        dek_nonce=box.nonce,
                        dek_tag=box.tag,
                        version=1,
                    )
                )
        except IntegrityError:
            # Another request created the key first; theirs is the one on disk.
            row = await self._load_key_row(db, workspace_id)
            if row is None:
                raise
            return unwrap_dek(self._master_key, row)
        self._stage_until_commit(db, workspace_id, dek)
        logger.info("Created workspace DEK for workspace=%s", workspace_id)
        return dek

    def _stage_until_commit(self, db: AsyncSession, workspace_id: str, dek: bytes) -> None:
        """Hold a new DEK on the session; it reaches the cache only if the key row commits."""
        sync_session = db.sync_session
        holder = sync_session.get_nested_transaction() or sync_session.get_transaction()
        db.info.setdefault(STAGED_DEKS_KEY, {})[workspace_id] = _StagedDek(key=dek, transaction=holder)
        if db.info.get(_STAGING_LISTENERS_KEY):
            return
        db.info[_STAGING_LISTENERS_KEY] = True

        # after_commit also fires when a SAVEPOINT is released; only the outer commit counts.
        def publish(session) -> None:
            if session.in_nested_transaction():
                return
            for staged_workspace, staged in session.info.pop(STAGED_DEKS_KEY, {}).items():
                self.cache.put(staged_workspace, staged.key)

        # A rolled back SAVEPOINT takes the key rows created inside it along.
        def discard(session, previous_transaction) -> None:
            staged = session.info.get(STAGED_DEKS_KEY, {})
            for staged_workspace in [ws for ws, entry in staged.items() if entry.created_within(previous_transaction)]:
                del staged[staged_workspace]

        event.listen(sync_session, "after_commit", publish)
        event.listen(sync_session, "after_soft_rollback", discard)

    async def encrypt_field(self, db: AsyncSession, workspace_id: str, plaintext: str) -> str:
        if not plaintext or not plaintext.strip():
            return plaintext or ""
        if is_encrypted(plaintext):
            return plaintext

        dek = await self.get_or_create_workspace_dek(db, workspace_id)
        box = aes_gcm.seal(dek, plaintext.encode("utf-8"))
        return ":".join(
            [
                TOKEN_PREFIX.rstrip(":"),
                TOKEN_VERSION,
                aes_gcm.b64encode(box.nonce),
                aes_gcm.b64encode(box.ciphertext),
                aes_gcm.b64encode(box.tag),
            ]
        )

    async def decrypt_field(self, db: AsyncSession, workspace_id: str, token: str) -> str:
        if not token:
            return ""
        if not is_encrypted(token):
            return token

        box = parse_token(token)
        dek = await self.get_or_create_workspace_dek(db, workspace_id)
        plaintext = aes_gcm.open_box(dek, box)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Decrypted value is not valid UTF-8") from exc

    def hmac_fingerprint(self, value: str) -> bytes:
        if not value or not isinstance(value, str):
            raise ValueError("Value must be a non-empty string")
        normalized = value.strip().lower()
        return hmac.new(self._index_key, normalized.encode("utf-8"), hashlib.sha256).digest()

    def iban_fingerprint(self, value: str) -> bytes | None:
        normalized = re.sub(r"\s", "", value or "").upper()
        if not _IBAN_PATTERN.match(normalized):
            return None
        return self.hmac_fingerprint(normalized)


def parse_token(token: str) -> aes_gcm.SealedBox:
    parts = token.split(":")
    if len(parts) != 5 or parts[0] != "enc" or parts[1] != TOKEN_VERSION:
        raise DecryptionError("Invalid encrypted token format")
    return aes_gcm.SealedBox(
        nonce=aes_gcm.b64decode(parts[2]),
        ciphertext=aes_gcm.b64decode(parts[3]),
        tag=aes_gcm.b64decode(parts[4]),
    )


def check_configuration() -> dict[str, object]:
    try:
        EnvelopeEncryptionService.from_settings()
    except ConfigError as exc:
        return {"valid": False, "error": exc.message}
    return {"valid": True}


@lru_cache(maxsize=1)
def get_envelope_service() -> EnvelopeEncryptionService:
    return EnvelopeEncryptionService.from_settings()
