"""Pydantic schemas for report schedules."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

from medreports.models.report import ReportType
from medreports.models.schedule import DeliveryMethod, ScheduleFrequency
from medreports.schemas.common import PageInfo, RequestModel
from medreports.schemas.report import ReportParameters, _tag_parameters


class ScheduleSpec(RequestModel):
    """
    Recurrence description.

    Frequency and ranges are not enforced here: the recurrence validator
    reports every violated field at once.
    """

    frequency: str = Field(..., description="daily, weekly, monthly, quarterly or yearly")
    day_of_week: Optional[int] = Field(None, description="0=Sunday .. 6=Saturday")
    day_of_month: Optional[int] = Field(None, description="1-31, clamped to month end")
    hour: int = 9
    minute: int = 0
    timezone: str = "UTC"
    is_active: bool = True


class ScheduleUpdateSpec(RequestModel):
    frequency: Optional[str] = None
    day_of_week: Optional[int] = None
    day_of_month: Optional[int] = None
    hour: Optional[int] = None
    minute: Optional[int] = None
    timezone: Optional[str] = None
    is_active: Optional[bool] = None


class Recipient(RequestModel):
    user_id: str
    delivery_method: DeliveryMethod = DeliveryMethod.SYSTEM_NOTIFICATION


class ScheduleCreate(RequestModel):
    """Schedule a report: either a new definition or an existing report."""

    report_id: Optional[str] = Field(None, description="Schedule an existing report")
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    type: Optional[ReportType] = None
    parameters: Optional[ReportParameters] = None
    template_id: Optional[str] = None
    schedule: ScheduleSpec
    recipients: list[Recipient] = Field(default_factory=list)
    generated_by_id: Optional[str] = Field(None, description="Defaults to the caller")
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def tag_parameters(cls, data: Any) -> Any:
        return _tag_parameters(data)

    @model_validator(mode="after")
    def require_definition(self) -> "ScheduleCreate":
        if self.report_id is None:
            missing = [
                name
                for name, value in (
                    ("title", self.title),
                    ("type", self.type),
                    ("parameters", self.parameters),
                )
                if value is None
            ]
            if missing:
                raise ValueError(
                    f"{', '.join(missing)} required when report_id is not given"
                )
        if self.start_date and self.end_date and self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class ScheduleUpdate(RequestModel):
    schedule: Optional[ScheduleUpdateSpec] = None
    recipients: Optional[list[Recipient]] = None
    end_date: Optional[datetime] = None
    is_active: Optional[bool] = None


class ScheduleResponse(BaseModel):
    id: str
    report_id: str
    title: str
    report_type: ReportType
    frequency: ScheduleFrequency
    day_of_week: Optional[int]
    day_of_month: Optional[int]
    hour: int
    minute: int
    timezone: str
    is_active: bool
    recipients: list[dict[str, Any]]
    start_date: datetime
    end_date: Optional[datetime]
    next_run_time: Optional[datetime]
    last_run_at: Optional[datetime]
    last_successful_run: Optional[datetime]
    run_count: int
    is_overdue: bool
    created_by_id: str
    created_at: datetime


class ScheduleSummary(BaseModel):
    total: int = 0
    active: int = 0
    inactive: int = 0
    overdue: int = 0
    by_frequency: dict[str, int] = Field(default_factory=dict)


class ScheduleListResponse(BaseModel):
    items: list[ScheduleResponse]
    pagination: PageInfo
    summary: ScheduleSummary


class DispatchResult(BaseModel):
    schedule_id: str
    report_id: Optional[str]
    status: str
    next_run_time: Optional[datetime]
    error: Optional[str] = None


class DispatchResponse(BaseModel):
    dispatched: int
    results: list[DispatchResult]
