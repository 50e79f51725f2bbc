from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator

from app.models.base import as_naive_utc
from app.models.workflow import (
    ArtifactStatus,
    SecondFactorMethod,
    SignerStatus,
    SigningMode,
    SigningRequestStatus,
)
from app.schemas.common import IDModel, Timestamped


class SignerCreate(BaseModel):
    email: EmailStr
    full_name: str = Field(min_length=1, max_length=255)
    signing_order: int | None = Field(default=None, ge=1)
    notification_channel: Literal["email", "sms"] = "email"
    phone_number: str | None = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class SigningRequestCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    message: str | None = None
    signing_mode: SigningMode = SigningMode.SEQUENTIAL
    requires_second_factor: bool = False
    expires_at: datetime | None = None
    organization_id: UUID | None = None
    signers: list[SignerCreate] = Field(min_length=1)

    @field_validator("expires_at")
    @classmethod
    def normalize_expiry(cls, value: datetime | None) -> datetime | None:
        return as_naive_utc(value)


class SignerRead(IDModel, Timestamped):
    request_id: UUID
    email: str
    full_name: str
    signing_order: int
    status: SignerStatus
    viewed_at: datetime | None
    signed_at: datetime | None
    declined_at: datetime | None
    decline_reason: str | None
    second_factor_verified_at: datetime | None
    second_factor_method: SecondFactorMethod | None


class SigningRequestRead(IDModel, Timestamped):
    organization_id: UUID | None
    owner_email: str
    title: str
    status: SigningRequestStatus
    signing_mode: SigningMode
    requires_second_factor: bool
    sent_at: datetime | None
    expires_at: datetime | None
    last_reminder_sent_at: datetime | None
    reminder_count: int
    completed_at: datetime | None
    declined_at: datetime | None
    expired_at: datetime | None
    decline_reason: str | None
    declined_by: UUID | None
    artifact_status: ArtifactStatus
    signers: list[SignerRead] = Field(default_factory=list)


class SignerActionPayload(BaseModel):
    action: Literal["sign", "decline", "view"]
    code: str | None = Field(default=None, max_length=16)
    reason: str | None = Field(default=None, max_length=1000)


class TransitionRead(BaseModel):
    request_id: UUID
    signer_id: UUID | None = None
    action: str
    request_status: SigningRequestStatus
    signer_status: SignerStatus | None = None
    changed: bool
    second_factor_method: SecondFactorMethod | None = None
    affected_signer_ids: list[UUID] = Field(default_factory=list)
    events: list[str] = Field(default_factory=list)
