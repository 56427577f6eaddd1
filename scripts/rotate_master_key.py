"""Re-wrap every workspace key under a new master key.

Usage: move the old key to ENCRYPTION_MASTER_KEY_PREV_B64, put the new one in
ENCRYPTION_MASTER_KEY_B64, then run ``python -m scripts.rotate_master_key``.
Once it reports zero failures the previous key can be removed.
"""

import asyncio
import sys

from authgate.core.errors import ConfigError
from authgate.core.logging import configure_logging
from authgate.db.session import AsyncSessionLocal, engine
from authgate.services.key_rotation import load_rotation_keys, rotate_master_key


async def main() -> int:
    configure_logging()
    try:
        current, previous = load_rotation_keys()
    except ConfigError as exc:
        print(f"❌ {exc}")
        return 2

    print("🔑 Rotating workspace keys to the current master key...")
    async with AsyncSessionLocal() as session:
        report = await rotate_master_key(session, current, previous)
    await engine.dispose()

    print(f"✅ Rotated: {report.rotated}  Skipped: {report.skipped}  Failed: {report.failed}")
    for error in report.errors:
        print(f"❌ {error}")
    return 0 if report.ok else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
