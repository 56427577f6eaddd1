from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class TrustedDeviceRequest(BaseModel):
    action: Literal["check", "add", "revoke", "revoke_all"]
    device_id: Optional[str] = Field(default=None, max_length=32)

    @model_validator(mode="after")
    def _require_device_for_revoke(self) -> "TrustedDeviceRequest":
        if self.action == "revoke" and not self.device_id:
            raise ValueError("device_id is required for revoke")
        return self


class TrustedDeviceCheckResponse(BaseModel):
    is_trusted: bool
    expires_at: Optional[datetime] = None


class TrustedDeviceAddResponse(BaseModel):
    success: bool
    device_id: str
    expires_at: datetime


class TrustedDeviceRevokeResponse(BaseModel):
    success: bool
    revoked: int = 0


class TrustedDeviceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    device_id: str
    ip_prefix: Optional[str] = None
    created_at: datetime
    last_seen_at: Optional[datetime] = None
    expires_at: datetime
