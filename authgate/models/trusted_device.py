import uuid

from sqlalchemy import Column, String, UniqueConstraint, Uuid, func

from authgate.db.base import Base
from authgate.models.types import UtcDateTime, utcnow


class TrustedDevice(Base):
    __tablename__ = "trusted_devices"
    __table_args__ = (UniqueConstraint("identity_id", "device_id", name="uq_trusted_devices_identity_device"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    identity_id = Column(String(64), nullable=False, index=True)
    device_id = Column(String(32), nullable=False)
    ua_hash = Column(String(64), nullable=False)
    ip_prefix = Column(String(64), nullable=True)
    created_at = Column(UtcDateTime, nullable=False, default=utcnow, server_default=func.now())
    last_seen_at = Column(UtcDateTime, nullable=True)
    expires_at = Column(UtcDateTime, nullable=False)
    # Tombstone; rows are never hard-deleted so the audit trail stays intact.
    revoked_at = Column(UtcDateTime, nullable=True)
