from typing import List, TYPE_CHECKING

from sqlmodel import Field, Relationship

from app.models.base import TimestampedModel, UUIDModel

if TYPE_CHECKING:  # pragma: no cover
    from app.models.user import User


class Organization(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "organizations"

    name: str = Field(index=True)
    slug: str = Field(unique=True, index=True)
    enforce_signing_second_factor: bool = Field(default=False)
    is_active: bool = Field(default=True)

    users: List["User"] = Relationship(back_populates="organization")
