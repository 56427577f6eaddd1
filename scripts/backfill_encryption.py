"""Encrypt profile secrets that still hold legacy plaintext.

Usage: ``python -m scripts.backfill_encryption``. Reruns only touch rows that
are still plaintext or missing a fingerprint.
"""

import asyncio
import sys

from authgate.core.errors import ConfigError
from authgate.core.logging import configure_logging
from authgate.db.session import AsyncSessionLocal, engine
from authgate.services.encryption_backfill import backfill_profile_secrets, ensure_encryption_configured
from authgate.services.envelope import EnvelopeEncryptionService


async def main() -> int:
    configure_logging()
    try:
        ensure_encryption_configured()
    except ConfigError as exc:
        print(f"❌ {exc}")
        return 2

    envelope = EnvelopeEncryptionService.from_settings()
    print("🔐 Encrypting legacy profile secrets...")
    async with AsyncSessionLocal() as session:
        report = await backfill_profile_secrets(session, envelope)
    await engine.dispose()

    print(
        f"✅ Encrypted: {report.encrypted}  Fingerprinted: {report.fingerprinted}  "
        f"Skipped: {report.skipped}  Failed: {report.failed}"
    )
    for error in report.errors:
        print(f"❌ {error}")
    return 0 if report.ok else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
