from typing import Optional

from pydantic import BaseModel, Field


class ProfileSecretsUpdate(BaseModel):
    """Omitted fields stay untouched; an empty string clears the stored value."""

    bank_details: Optional[str] = Field(default=None, max_length=500)
    vat_id: Optional[str] = Field(default=None, max_length=64)


class ProfileSecretsOut(BaseModel):
    bank_details: Optional[str] = None
    vat_id: Optional[str] = None


class ProfileSecretsSaved(BaseModel):
    success: bool
    fields_updated: list[str]
