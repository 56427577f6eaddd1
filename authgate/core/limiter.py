from slowapi import Limiter
from slowapi.util import get_remote_address

from authgate.core.settings import settings

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"],
    storage_uri=settings.redis_url,
)

# Verification endpoints get a tighter per-IP ceiling on top of the per-identity window.
MFA_VERIFY_LIMIT = "20/minute"

__all__ = ["limiter", "MFA_VERIFY_LIMIT"]
