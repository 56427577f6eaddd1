import uuid

from sqlalchemy import JSON, Column, String, Uuid, func

from authgate.db.base import Base
from authgate.models.types import UtcDateTime, utcnow


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    identity_id = Column(String(64), nullable=True, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    details = Column(JSON, nullable=False, default=dict)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)
    created_at = Column(UtcDateTime, nullable=False, default=utcnow, server_default=func.now())
