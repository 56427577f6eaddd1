import uuid

from sqlalchemy import Column, ForeignKey, String, Uuid, func

from authgate.db.base import Base
from authgate.models.types import UtcDateTime, utcnow


class MfaChallenge(Base):
    """Single-use binding between one verification attempt and a factor."""

    __tablename__ = "mfa_challenges"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    factor_id = Column(Uuid, ForeignKey("mfa_factors.id", ondelete="CASCADE"), nullable=False, index=True)
    identity_id = Column(String(64), nullable=False, index=True)
    issued_at = Column(UtcDateTime, nullable=False, default=utcnow, server_default=func.now())
    consumed_at = Column(UtcDateTime, nullable=True)
    ip_address = Column(String(64), nullable=True)
