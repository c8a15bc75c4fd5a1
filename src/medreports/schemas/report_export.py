"""Pydantic schemas for exporting finished reports."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, EmailStr, Field, model_validator

from medreports.core.config import settings
from medreports.models.report import ReportFormat
from medreports.models.report_export import (
    ExportCompression,
    ExportDeliveryMethod,
    ReportExportKind,
    ReportExportStatus,
)
from medreports.schemas.common import PageInfo, RequestModel


class PageSize(str, Enum):
    A4 = "A4"
    A3 = "A3"
    LETTER = "LETTER"
    LEGAL = "LEGAL"


class PageOrientation(str, Enum):
    PORTRAIT = "portrait"
    LANDSCAPE = "landscape"


class ReportExportOptions(RequestModel):
    """Output options for one exported report."""

    include_charts: bool = True
    include_raw_data: bool = False
    include_metadata: bool = True
    include_headers: bool = True
    compression: ExportCompression = ExportCompression.NONE
    # Template used instead of the report's own
    custom_template: Optional[str] = None
    # None picks landscape for wide tables
    orientation: Optional[PageOrientation] = None
    page_size: PageSize = PageSize.A4


class BulkReportExportOptions(RequestModel):
    """Output options for a bulk export. Reports are always bundled in a zip."""

    include_charts: bool = True
    include_raw_data: bool = False
    include_metadata: bool = True
    include_headers: bool = True
    include_index: bool = Field(default=True, description="Add an index.csv listing the reports")
    custom_template: Optional[str] = None
    orientation: Optional[PageOrientation] = None
    page_size: PageSize = PageSize.A4


class _DeliveryRequest(RequestModel):
    format: ReportFormat = ReportFormat.PDF
    delivery_method: ExportDeliveryMethod = ExportDeliveryMethod.DOWNLOAD
    email_recipients: list[EmailStr] = Field(default_factory=list)

    @model_validator(mode="after")
    def require_recipients_for_email(self) -> "_DeliveryRequest":
        if self.delivery_method == ExportDeliveryMethod.EMAIL and not self.email_recipients:
            raise ValueError("emailRecipients required when deliveryMethod is EMAIL")
        return self


class ReportExportRequest(_DeliveryRequest):
    """Export one COMPLETED report."""

    options: ReportExportOptions = Field(default_factory=ReportExportOptions)


class BulkReportExportRequest(_DeliveryRequest):
    """Export several COMPLETED reports into one archive."""

    report_ids: list[str] = Field(
        ..., min_length=1, max_length=settings.bulk_report_export_max_reports
    )
    options: BulkReportExportOptions = Field(default_factory=BulkReportExportOptions)

    @model_validator(mode="after")
    def dedupe_report_ids(self) -> "BulkReportExportRequest":
        self.report_ids = list(dict.fromkeys(self.report_ids))
        return self


class ReportExportResponse(BaseModel):
    id: str
    kind: ReportExportKind
    report_id: Optional[str]
    report_ids: list[str]
    report_count: int
    format: ReportFormat
    options: dict[str, Any]
    delivery_method: ExportDeliveryMethod
    email_recipients: list[str]
    email_sent: bool
    status: ReportExportStatus
    file_name: str
    file_size: Optional[int]
    content_type: Optional[str]
    error_message: Optional[str]
    requested_by_id: str
    created_at: datetime
    completed_at: Optional[datetime]
    expires_at: Optional[datetime]
    download_count: int
    last_downloaded_at: Optional[datetime]
    is_expired: bool
    can_download: bool
    download_url: Optional[str] = None


class ReportExportSummary(BaseModel):
    """Totals over every export matching the history filters."""

    total_exports: int
    by_format: dict[str, int]
    by_status: dict[str, int]
    expired: int
    total_file_size: int
    total_downloads: int


class ReportExportListResponse(BaseModel):
    items: list[ReportExportResponse]
    pagination: PageInfo
    summary: ReportExportSummary


class ReportExportDeleteResponse(BaseModel):
    id: str
    status: ReportExportStatus
    deleted_at: datetime
