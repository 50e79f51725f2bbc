from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from sqlalchemy import JSON
from sqlmodel import Field

from app.models.base import TimestampedModel, UUIDModel


class ExemptionType(str, Enum):
    LOGIN = "login"
    SIGNING = "signing"
    BOTH = "both"


class SecondFactorEnrollment(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "second_factor_enrollments"

    user_id: UUID = Field(foreign_key="users.id", index=True, unique=True)
    secret: str = Field(max_length=64)
    backup_code_hashes: list[str] = Field(default_factory=list, sa_type=JSON)
    enabled: bool = Field(default=False)
    last_used_at: Optional[datetime] = Field(default=None)


class SecondFactorExemption(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "second_factor_exemptions"

    user_id: UUID = Field(foreign_key="users.id", index=True)
    organization_id: UUID | None = Field(default=None, foreign_key="organizations.id", index=True)
    exemption_type: ExemptionType = Field(default=ExemptionType.SIGNING)
    reason: str
    granted_by: UUID = Field(foreign_key="users.id")
    expires_at: datetime = Field(index=True)
    revoked_at: Optional[datetime] = Field(default=None)
    revoked_by: UUID | None = Field(default=None, foreign_key="users.id")

    def is_active(self, now: datetime) -> bool:
        return self.revoked_at is None and self.expires_at > now
