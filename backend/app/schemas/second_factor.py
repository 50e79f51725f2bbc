from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from app.models.base import as_naive_utc
from app.models.second_factor import ExemptionType
from app.schemas.common import IDModel, Timestamped


class SecondFactorSetupResponse(BaseModel):
    secret: str
    otpauth_url: str
    backup_codes: list[str]


class SecondFactorConfirmRequest(BaseModel):
    code: str = Field(min_length=6, max_length=8)


class BackupCodesResponse(BaseModel):
    backup_codes: list[str]


class ExemptionCreate(BaseModel):
    user_id: UUID
    organization_id: UUID | None = None
    exemption_type: ExemptionType = ExemptionType.SIGNING
    expires_at: datetime
    reason: str = Field(min_length=3, max_length=1000)

    @field_validator("expires_at")
    @classmethod
    def normalize_expiry(cls, value: datetime) -> datetime:
        return as_naive_utc(value)


class ExemptionRevoke(BaseModel):
    reason: str = Field(min_length=3, max_length=1000)


class ExemptionRead(IDModel, Timestamped):
    user_id: UUID
    organization_id: UUID | None
    exemption_type: ExemptionType
    reason: str
    granted_by: UUID
    expires_at: datetime
    revoked_at: datetime | None
    revoked_by: UUID | None
