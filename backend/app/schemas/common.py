from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class Timestamped(ORMModel):
    created_at: datetime
    updated_at: datetime | None = None


class IDModel(ORMModel):
    id: UUID


class ErrorRead(BaseModel):
    kind: str
    message: str
