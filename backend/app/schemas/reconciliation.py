from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from app.models.base import as_naive_utc


class SweepErrorRead(BaseModel):
    request_id: str
    error: str


class SweepReportRead(BaseModel):
    processed: int = 0
    sent: int = 0
    errors: list[SweepErrorRead] = Field(default_factory=list)


class ReconciliationReportRead(BaseModel):
    ran_at: datetime
    reminders: SweepReportRead
    expiry_warnings: SweepReportRead
    expirations: SweepReportRead
    notification_retries: SweepReportRead
    artifact_retries: SweepReportRead


class ReconciliationRunRequest(BaseModel):
    now: datetime | None = None

    @field_validator("now")
    @classmethod
    def normalize_now(cls, value: datetime | None) -> datetime | None:
        return as_naive_utc(value)
