from sqlalchemy import Column, LargeBinary, String, Text, func

from authgate.db.base import Base
from authgate.models.types import UtcDateTime, utcnow


class ProfileSecret(Base):
    __tablename__ = "profile_secrets"

    identity_id = Column(String(64), primary_key=True)
    bank_details_enc = Column(Text, nullable=True)
    iban_fp = Column(LargeBinary, nullable=True, index=True)
    vat_id_enc = Column(Text, nullable=True)
    vat_fp = Column(LargeBinary, nullable=True, index=True)
    updated_at = Column(UtcDateTime, nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now())
