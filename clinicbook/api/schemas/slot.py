from datetime import date
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from clinicbook.core import clock
from clinicbook.models.slot import SlotPublic


class AvailableSlotsResponse(BaseModel):
    date: str  # YYYY-MM-DD
    location: str | None = None
    total: int
    slots: list[SlotPublic]


class GenerateSlotsRequest(BaseModel):
    """Either `days_ahead`, or `start_date` + `end_date` (inclusive)."""

    days_ahead: int | None = Field(default=None, ge=1, le=365)
    start_date: date | None = None
    end_date: date | None = None

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def parse_date(cls, value: Any) -> Any:
        if isinstance(value, str):
            return clock.parse_flexible_date(value)
        return value

    @model_validator(mode="after")
    def require_range(self) -> "GenerateSlotsRequest":
        if self.days_ahead is None and (self.start_date is None or self.end_date is None):
            raise ValueError("Please provide either days_ahead or start_date and end_date")
        return self


class MaintenanceResponse(BaseModel):
    success: bool
    message: str
    report: dict[str, Any]
    stats: dict[str, int] | None = None


class CronStatusResponse(BaseModel):
    current_time: str
    timezone: str
    jobs: dict[str, str]
