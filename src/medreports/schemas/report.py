"""Pydantic schemas for reports and their typed parameters."""

from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from medreports.models.booking import AppointmentStatus, PaymentStatus
from medreports.models.report import ReportFormat, ReportStatus, ReportType
from medreports.schemas.common import PageInfo, RequestModel


# =============================================================================
# Parameters
# =============================================================================


class DateRangePreset(str, Enum):
    """Relative date ranges, resolved when the report runs."""

    LAST_7_DAYS = "last_7_days"
    LAST_30_DAYS = "last_30_days"
    LAST_90_DAYS = "last_90_days"
    CURRENT_MONTH = "current_month"
    PREVIOUS_MONTH = "previous_month"
    CURRENT_QUARTER = "current_quarter"
    PREVIOUS_QUARTER = "previous_quarter"
    CUSTOM = "custom"


class BaseReportParameters(RequestModel):
    """Parameters shared by every report kind."""

    date_from: Optional[date] = Field(None, description="First day included")
    date_to: Optional[date] = Field(None, description="Last day included")
    date_range: Optional[DateRangePreset] = Field(
        None, description="Relative range; overrides date_from/date_to unless custom"
    )
    # Unknown values fall back to day buckets
    group_by: str = Field(default="day", description="day, week or month")
    format: ReportFormat = Field(default=ReportFormat.JSON)
    include_details: bool = Field(default=False, description="Include row-level data")
    include_charts: bool = Field(default=True)
    agent_ids: list[str] = Field(default_factory=list)
    doctor_ids: list[str] = Field(default_factory=list)
    hospital_ids: list[str] = Field(default_factory=list)
    top_n: int = Field(default=10, ge=1, le=100)

    @model_validator(mode="after")
    def require_date_range(self) -> "BaseReportParameters":
        """Either a relative preset or both explicit dates must be given."""
        uses_preset = self.date_range is not None and self.date_range != DateRangePreset.CUSTOM
        if not uses_preset and (self.date_from is None or self.date_to is None):
            missing = [
                name
                for name, value in (("dateFrom", self.date_from), ("dateTo", self.date_to))
                if value is None
            ]
            raise ValueError(f"{' and '.join(missing)} required unless a dateRange preset is used")
        return self


class AppointmentSummaryParameters(BaseReportParameters):
    kind: Literal["APPOINTMENT_SUMMARY"] = "APPOINTMENT_SUMMARY"
    statuses: list[AppointmentStatus] = Field(default_factory=list)
    specializations: list[str] = Field(default_factory=list)


class RevenueAnalysisParameters(BaseReportParameters):
    kind: Literal["REVENUE_ANALYSIS"] = "REVENUE_ANALYSIS"
    payment_statuses: list[PaymentStatus] = Field(default_factory=list)
    payment_methods: list[str] = Field(default_factory=list)


class AgentPerformanceParameters(BaseReportParameters):
    kind: Literal["AGENT_PERFORMANCE"] = "AGENT_PERFORMANCE"
    min_bookings: int = Field(default=0, ge=0)


class CustomerSatisfactionParameters(BaseReportParameters):
    kind: Literal["CUSTOMER_SATISFACTION"] = "CUSTOMER_SATISFACTION"
    min_rating: Optional[int] = Field(None, ge=1, le=5)


class OperationalMetricsParameters(BaseReportParameters):
    kind: Literal["OPERATIONAL_METRICS"] = "OPERATIONAL_METRICS"


ReportParameters = Annotated[
    Union[
        AppointmentSummaryParameters,
        RevenueAnalysisParameters,
        AgentPerformanceParameters,
        CustomerSatisfactionParameters,
        OperationalMetricsParameters,
    ],
    Field(discriminator="kind"),
]


def _tag_parameters(data: Any) -> Any:
    """Copy the report type into the parameters so the union can dispatch."""
    if isinstance(data, dict) and isinstance(data.get("parameters"), dict):
        report_type = data.get("type")
        if isinstance(report_type, Enum):
            report_type = report_type.value
        if report_type is not None:
            data = {**data, "parameters": {**data["parameters"], "kind": report_type}}
    return data


# =============================================================================
# Requests
# =============================================================================


class ReportCreate(RequestModel):
    """Schema for creating a report."""

    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    type: ReportType
    parameters: ReportParameters
    template_id: Optional[str] = None
    auto_generate: bool = Field(default=False, description="Start generation right away")

    @model_validator(mode="before")
    @classmethod
    def tag_parameters(cls, data: Any) -> Any:
        return _tag_parameters(data)


class ReportListFilters(BaseModel):
    type: Optional[ReportType] = None
    status: Optional[ReportStatus] = None
    generated_by_id: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    search: Optional[str] = None


# =============================================================================
# Responses
# =============================================================================


class ReportResponse(BaseModel):
    """Schema for report response, including computed view fields."""

    id: str
    title: str
    description: Optional[str]
    type: ReportType
    status: ReportStatus
    parameters: dict[str, Any]
    generated_by_id: str
    template_id: Optional[str]
    schedule_id: Optional[str]
    scheduled_at: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    file_path: Optional[str]
    file_size: Optional[int]
    record_count: Optional[int]
    error_message: Optional[str]
    created_at: datetime
    updated_at: datetime

    # View-only fields, never persisted
    generation_seconds: Optional[int] = None
    is_scheduled: bool = False
    is_overdue: bool = False
    can_download: bool = False
    age_days: int = 0


class ReportCreateResponse(ReportResponse):
    estimated_generation_seconds: int


class ReportStatistics(BaseModel):
    total: int = 0
    pending: int = 0
    generating: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    this_month: int = 0
    success_rate: float = 0.0


class ReportListResponse(BaseModel):
    items: list[ReportResponse]
    pagination: PageInfo
    statistics: ReportStatistics


class ReportCancelResponse(BaseModel):
    id: str
    status: ReportStatus
    scheduled_at: Optional[datetime]
    error_message: Optional[str]
