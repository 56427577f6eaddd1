from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class MfaVerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    factor_id: UUID = Field(alias="factorId")
    challenge_id: UUID = Field(alias="challengeId")
    code: str = Field(min_length=1, max_length=32)
    type: Literal["totp", "recovery"] = "totp"
    remember_device: bool = Field(default=False, alias="rememberDevice")


class MfaVerifyResponse(BaseModel):
    success: bool
    aal: Literal["aal2"] = "aal2"
    trusted_device_token: Optional[str] = None
    remaining_recovery_codes: Optional[int] = None


class EnrollTotpRequest(BaseModel):
    friendly_name: Optional[str] = Field(default=None, max_length=100)


class EnrollTotpResponse(BaseModel):
    factor_id: UUID
    secret: str
    uri: str


class ChallengeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    factor_id: UUID = Field(alias="factorId")


class ChallengeResponse(BaseModel):
    challenge_id: UUID
    factor_id: UUID
    expires_at: datetime


class FactorOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    factor_type: str
    status: str
    friendly_name: Optional[str] = None
    created_at: datetime
    verified_at: Optional[datetime] = None


class AuthStateOut(BaseModel):
    enrolled: bool
    needs_mfa: bool
    assurance: Optional[Literal["aal1", "aal2"]] = None
    trusted_device: bool
    reason: str


class RecoveryCodesResponse(BaseModel):
    codes: list[str]


class RecoveryCodesRemainingResponse(BaseModel):
    remaining: int
