"""Pydantic schemas for data exports."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from medreports.models.export_job import ExportEntityType, ExportJobStatus
from medreports.models.report import ReportFormat
from medreports.schemas.common import PageInfo, RequestModel


class ExportRequest(RequestModel):
    """
    Export request.

    ``filters`` may carry ``dateFrom``/``dateTo`` (applied to creation time);
    every other key is an equality filter, or an IN filter for lists.
    """

    entity_type: ExportEntityType
    format: ReportFormat = ReportFormat.CSV
    filters: dict[str, Any] = Field(default_factory=dict)
    columns: list[str] = Field(default_factory=list)
    include_headers: bool = True
    file_name: Optional[str] = Field(None, max_length=200)
    email_recipients: list[EmailStr] = Field(default_factory=list)
    # Saved or built-in export template supplying columns, filters and format
    template_id: Optional[str] = None

    @field_validator("file_name")
    @classmethod
    def validate_file_name(cls, v: Optional[str]) -> Optional[str]:
        """Reject path separators in user-supplied file names."""
        if v is not None and ("/" in v or "\\" in v or v.startswith(".")):
            raise ValueError("file_name must be a plain name without path separators")
        return v


class ExportJobResponse(BaseModel):
    id: str
    entity_type: ExportEntityType
    format: ReportFormat
    file_name: str
    status: ExportJobStatus
    total_records: Optional[int]
    filters: dict[str, Any]
    columns: list[str]
    file_size: Optional[int]
    error_message: Optional[str]
    exported_by_id: str
    created_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    duration_seconds: Optional[int]
    download_url: Optional[str] = None


class ExportJobListResponse(BaseModel):
    items: list[ExportJobResponse]
    pagination: PageInfo


class InlineExportResponse(BaseModel):
    """Body returned for ``format=json`` exports."""

    job_id: str
    file_name: str
    record_count: int
    size_bytes: int
    data: list[dict[str, Any]]


class ExportTemplateCreate(RequestModel):
    """Saved export template. Omitted columns fall back to the entity's defaults."""

    name: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    entity_type: ExportEntityType
    format: ReportFormat
    columns: list[str] = Field(default_factory=list)
    filters: dict[str, Any] = Field(default_factory=dict)


class ExportTemplateResponse(BaseModel):
    id: str
    name: str
    description: str
    entity_type: ExportEntityType
    format: ReportFormat
    columns: list[str]
    filters: dict[str, Any]
    is_default: bool
    is_builtin: bool
    created_by_id: Optional[str] = None
    created_at: Optional[datetime] = None


class ExportTemplateListResponse(BaseModel):
    items: list[ExportTemplateResponse]
