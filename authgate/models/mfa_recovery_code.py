import uuid

from sqlalchemy import Boolean, Column, Index, String, Uuid, false, func

from authgate.db.base import Base
from authgate.models.types import UtcDateTime, utcnow


class MfaRecoveryCode(Base):
    """Stores hashed one-time recovery codes for MFA backup."""
    __tablename__ = "mfa_recovery_codes"
    __table_args__ = (Index("ix_mfa_recovery_codes_identity_hash", "identity_id", "code_hash"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    identity_id = Column(String(64), nullable=False, index=True)
    code_hash = Column(String(64), nullable=False)
    used = Column(Boolean, nullable=False, default=False, server_default=false())
    created_at = Column(UtcDateTime, nullable=False, default=utcnow, server_default=func.now())
    used_at = Column(UtcDateTime, nullable=True)
