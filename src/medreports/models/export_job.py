"""
ExportJob model - one-shot serialization of raw entity data to a file.

ExportJobs track:
- Which entity type was exported, in which format, with which filters
- Progress through PROCESSING -> COMPLETED | FAILED | CANCELLED
- Output file location and size for later download
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from medreports.db.base import BaseModel, UTCDateTime, dump_json, load_json


# =============================================================================
# Enums
# =============================================================================


class ExportJobStatus(str, Enum):
    """Status of an export job."""

    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class ExportEntityType(str, Enum):
    """Entity collections that can be exported."""

    APPOINTMENTS = "appointments"
    PATIENTS = "patients"
    DOCTORS = "doctors"
    HOSPITALS = "hospitals"
    USERS = "users"
    PAYMENTS = "payments"
    REPORTS = "reports"
    AUDIT_LOGS = "audit_logs"


EXPORT_TRANSITIONS: dict[ExportJobStatus, frozenset[ExportJobStatus]] = {
    ExportJobStatus.PROCESSING: frozenset(
        {ExportJobStatus.COMPLETED, ExportJobStatus.FAILED, ExportJobStatus.CANCELLED}
    ),
    ExportJobStatus.COMPLETED: frozenset(),
    ExportJobStatus.FAILED: frozenset(),
    ExportJobStatus.CANCELLED: frozenset(),
}


def export_transition_sources(new: ExportJobStatus | str) -> list[str]:
    """Statuses from which ``new`` may be entered."""
    target = ExportJobStatus(new)
    return [src.value for src, targets in EXPORT_TRANSITIONS.items() if target in targets]


# =============================================================================
# Models
# =============================================================================


class ExportJob(BaseModel):
    """Export job record."""

    __tablename__ = "export_jobs"

    exported_by_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )

    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    format: Mapped[str] = mapped_column(String(10), nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ExportJobStatus.PROCESSING.value,
        index=True,
    )

    # Request (JSON stored as text)
    filters: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    columns: Mapped[str] = mapped_column(Text, nullable=False, default="[]")

    # Result
    total_records: Mapped[int | None] = mapped_column(Integer, nullable=True)
    file_path: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (Index("ix_export_jobs_user_created", "exported_by_id", "created_at"),)

    def __repr__(self) -> str:
        return f"<ExportJob {self.entity_type}.{self.format} ({self.status})>"

    def get_filters_dict(self) -> dict[str, Any]:
        return load_json(self.filters, {})

    def get_columns_list(self) -> list[str]:
        return load_json(self.columns, [])

    def set_request(self, filters: dict[str, Any], columns: list[str]) -> None:
        self.filters = dump_json(filters)
        self.columns = dump_json(columns)

    @property
    def duration_seconds(self) -> int | None:
        if self.started_at and self.completed_at:
            return int((self.completed_at - self.started_at).total_seconds())
        return None
