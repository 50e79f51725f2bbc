from enum import Enum
from typing import Optional
from uuid import UUID

from sqlmodel import Field, Relationship

from app.models.base import TimestampedModel, UUIDModel
from app.models.organization import Organization


class UserRole(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"


class User(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "users"

    organization_id: UUID | None = Field(default=None, foreign_key="organizations.id", index=True)

    email: str = Field(index=True, unique=True)
    full_name: str
    phone_number: str | None = Field(default=None, max_length=32)
    role: str = Field(default=UserRole.MEMBER.value)
    is_active: bool = Field(default=True)

    organization: Optional[Organization] = Relationship(back_populates="users")
