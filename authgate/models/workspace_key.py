from sqlalchemy import Column, Integer, LargeBinary, String, func

from authgate.db.base import Base
from authgate.models.types import UtcDateTime, utcnow


class WorkspaceKey(Base):
    """Per-workspace data encryption key, stored only in wrapped form."""

    __tablename__ = "workspace_keys"

    workspace_id = Column(String(64), primary_key=True)
    dek_cipher = Column(LargeBinary, nullable=False)
    dek_nonce = Column(LargeBinary, nullable=False)
    dek_tag = Column(LargeBinary, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(UtcDateTime, nullable=False, default=utcnow, server_default=func.now())
    rotated_at = Column(UtcDateTime, nullable=True)
