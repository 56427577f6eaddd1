"""AES-256-GCM and base64 key helpers shared by the envelope and rotation code."""

from __future__ import annotations

import base64
import binascii
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from authgate.core.errors import ConfigError, DecryptionError

KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16

KEYGEN_HINT = (
    "Generate with: python -c \"import base64, os; "
    "print(base64.b64encode(os.urandom(32)).decode())\""
)


@dataclass(frozen=True, slots=True)
class SealedBox:
    nonce: bytes
    ciphertext: bytes
    tag: bytes


def decode_key_b64(value: str, *, name: str) -> bytes:
    """Decode a base64 key from configuration, insisting on exactly 32 bytes."""
    if not value or not value.strip():
        raise ConfigError(f"{name} is not set", hint=KEYGEN_HINT)
    try:
        raw = base64.b64decode(value.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ConfigError(f"{name} is not valid base64", hint=KEYGEN_HINT) from exc
    if len(raw) != KEY_BYTES:
        raise ConfigError(f"{name} must decode to exactly {KEY_BYTES} bytes (got {len(raw)})", hint=KEYGEN_HINT)
    return raw


def seal(key: bytes, plaintext: bytes, *, nonce: bytes | None = None) -> SealedBox:
    nonce = nonce or os.urandom(NONCE_BYTES)
    combined = AESGCM(key).encrypt(nonce, plaintext, None)
    return SealedBox(nonce=nonce, ciphertext=combined[:-TAG_BYTES], tag=combined[-TAG_BYTES:])


def open_box(key: bytes, box: SealedBox) -> bytes:
    if len(box.nonce) != NONCE_BYTES or len(box.tag) != TAG_BYTES:
        raise DecryptionError("Malformed ciphertext")
    try:
        return AESGCM(key).decrypt(box.nonce, box.ciphertext + box.tag, None)
    except InvalidTag as exc:
        raise DecryptionError("Failed to decrypt data") from exc


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError("Malformed base64 in encrypted token") from exc
