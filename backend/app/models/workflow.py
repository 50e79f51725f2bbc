from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID

from sqlmodel import Field, Relationship

from app.models.base import TimestampedModel, UUIDModel


class SigningRequestStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DECLINED = "declined"
    EXPIRED = "expired"


TERMINAL_REQUEST_STATUSES = frozenset(
    {SigningRequestStatus.COMPLETED, SigningRequestStatus.DECLINED, SigningRequestStatus.EXPIRED}
)
OPEN_REQUEST_STATUSES = frozenset({SigningRequestStatus.PENDING, SigningRequestStatus.IN_PROGRESS})


class SigningMode(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class SignerStatus(str, Enum):
    PENDING = "pending"
    VIEWED = "viewed"
    SIGNED = "signed"
    DECLINED = "declined"


TERMINAL_SIGNER_STATUSES = frozenset({SignerStatus.SIGNED, SignerStatus.DECLINED})


class SecondFactorMethod(str, Enum):
    NOT_REQUIRED = "not_required"
    EXEMPTION = "exemption"
    TOTP = "totp"
    BACKUP_CODE = "backup_code"


class ArtifactStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    GENERATING = "generating"
    GENERATED = "generated"
    FAILED = "failed"


class SigningRequest(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "signing_requests"

    organization_id: UUID | None = Field(default=None, foreign_key="organizations.id", index=True)
    owner_id: UUID | None = Field(default=None, foreign_key="users.id", index=True)
    owner_email: str
    title: str = Field(max_length=255)
    message: str | None = Field(default=None)

    status: SigningRequestStatus = Field(default=SigningRequestStatus.DRAFT, index=True)
    signing_mode: SigningMode = Field(default=SigningMode.SEQUENTIAL)
    requires_second_factor: bool = Field(default=False)

    sent_at: Optional[datetime] = Field(default=None)
    expires_at: Optional[datetime] = Field(default=None, index=True)
    last_reminder_sent_at: Optional[datetime] = Field(default=None)
    reminder_count: int = Field(default=0)
    completed_at: Optional[datetime] = Field(default=None)
    declined_at: Optional[datetime] = Field(default=None)
    expired_at: Optional[datetime] = Field(default=None)
    decline_reason: str | None = Field(default=None)
    declined_by: UUID | None = Field(default=None)

    lock_version: int = Field(default=0, nullable=False)

    artifact_status: ArtifactStatus = Field(default=ArtifactStatus.NONE)
    artifact_attempts: int = Field(default=0)
    artifact_path: str | None = Field(default=None)
    artifact_claimed_at: Optional[datetime] = Field(default=None)

    signers: List["Signer"] = Relationship(
        back_populates="request",
        sa_relationship_kwargs={"cascade": "all, delete-orphan", "order_by": "Signer.signing_order"},
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_REQUEST_STATUSES


class Signer(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "signers"

    request_id: UUID = Field(foreign_key="signing_requests.id", index=True, ondelete="CASCADE")
    user_id: UUID | None = Field(default=None, foreign_key="users.id", index=True)
    email: str = Field(index=True)
    full_name: str
    signing_order: int = Field(default=1)
    notification_channel: str = Field(default="email", max_length=16)
    phone_number: str | None = Field(default=None, max_length=32)

    status: SignerStatus = Field(default=SignerStatus.PENDING)
    viewed_at: Optional[datetime] = Field(default=None)
    signed_at: Optional[datetime] = Field(default=None)
    declined_at: Optional[datetime] = Field(default=None)
    decline_reason: str | None = Field(default=None)
    second_factor_verified_at: Optional[datetime] = Field(default=None)
    second_factor_method: SecondFactorMethod | None = Field(default=None)
    ip_address: str | None = Field(default=None)
    user_agent: str | None = Field(default=None)

    request: SigningRequest = Relationship(back_populates="signers")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SIGNER_STATUSES
