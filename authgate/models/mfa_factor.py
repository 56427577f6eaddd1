import uuid

from sqlalchemy import BigInteger, Column, String, Text, Uuid, func

from authgate.db.base import Base
from authgate.models.types import UtcDateTime, utcnow

FACTOR_TYPE_TOTP = "totp"
FACTOR_STATUS_UNVERIFIED = "unverified"
FACTOR_STATUS_VERIFIED = "verified"


class MfaFactor(Base):
    __tablename__ = "mfa_factors"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    identity_id = Column(String(64), nullable=False, index=True)
    factor_type = Column(String(20), nullable=False, default=FACTOR_TYPE_TOTP)
    status = Column(String(20), nullable=False, default=FACTOR_STATUS_UNVERIFIED)
    friendly_name = Column(String(100), nullable=True)
    # Envelope-encrypted under the identity's workspace key.
    secret_encrypted = Column(Text, nullable=False)
    created_at = Column(UtcDateTime, nullable=False, default=utcnow, server_default=func.now())
    verified_at = Column(UtcDateTime, nullable=True)
    # TOTP time step of the last accepted code; codes at or before it are refused.
    last_used_step = Column(BigInteger, nullable=True)
