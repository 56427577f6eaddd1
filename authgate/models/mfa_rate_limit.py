from sqlalchemy import Column, Integer, String

from authgate.db.base import Base
from authgate.models.types import UtcDateTime


class MfaRateLimit(Base):
    __tablename__ = "mfa_rate_limits"

    identity_id = Column(String(64), primary_key=True)
    window_start = Column(UtcDateTime, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
