"""
Report model - a requested analytical output and its generation status.

Reports:
- Carry their validated parameters (date range, filters, groupBy, format)
- Move through PENDING -> GENERATING -> COMPLETED | FAILED
- Can be CANCELLED while still PENDING
- Are never physically deleted (soft delete keeps history)

Every run of a scheduled report is its own Report row pointing back at
the schedule that spawned it.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from medreports.db.base import SoftDeleteModel, UTCDateTime, load_json


# =============================================================================
# Enums
# =============================================================================


class ReportType(str, Enum):
    """Kinds of analytical report."""

    APPOINTMENT_SUMMARY = "APPOINTMENT_SUMMARY"
    REVENUE_ANALYSIS = "REVENUE_ANALYSIS"
    AGENT_PERFORMANCE = "AGENT_PERFORMANCE"
    CUSTOMER_SATISFACTION = "CUSTOMER_SATISFACTION"
    OPERATIONAL_METRICS = "OPERATIONAL_METRICS"


class ReportStatus(str, Enum):
    """Generation status of a report."""

    PENDING = "PENDING"
    GENERATING = "GENERATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class ReportFormat(str, Enum):
    """Output formats shared by reports and exports."""

    CSV = "csv"
    EXCEL = "excel"
    PDF = "pdf"
    JSON = "json"


class GroupBy(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


# Legal status changes. Anything not listed here is rejected.
REPORT_TRANSITIONS: dict[ReportStatus, frozenset[ReportStatus]] = {
    ReportStatus.PENDING: frozenset({ReportStatus.GENERATING, ReportStatus.CANCELLED}),
    ReportStatus.GENERATING: frozenset({ReportStatus.COMPLETED, ReportStatus.FAILED}),
    ReportStatus.COMPLETED: frozenset(),
    ReportStatus.FAILED: frozenset(),
    ReportStatus.CANCELLED: frozenset(),
}

TERMINAL_REPORT_STATUSES = frozenset(
    {ReportStatus.COMPLETED, ReportStatus.FAILED, ReportStatus.CANCELLED}
)


def transition_sources(new: ReportStatus | str) -> list[str]:
    """Statuses from which ``new`` may be entered."""
    target = ReportStatus(new)
    return [src.value for src, targets in REPORT_TRANSITIONS.items() if target in targets]


# =============================================================================
# Models
# =============================================================================


class Report(SoftDeleteModel):
    """
    Report model - one requested report and its generation run.

    ``parameters`` holds the validated parameter document as JSON text;
    it is decoded into the typed parameter model at the service layer.
    """

    __tablename__ = "reports"

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    # Validated ReportParameters document (JSON stored as text)
    parameters: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ReportStatus.PENDING.value,
        index=True,
    )

    generated_by_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )
    template_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("report_templates.id", ondelete="SET NULL"),
        nullable=True,
    )
    # Plain column: report_schedules already references reports
    schedule_id: Mapped[str | None] = mapped_column(
        String(36),
        nullable=True,
        index=True,
        doc="Schedule this report belongs to (definition or spawned run)",
    )

    # Timing
    scheduled_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
        doc="Next planned generation; cleared when the schedule is cancelled",
    )
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Result
    file_path: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    record_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_reports_owner_created", "generated_by_id", "created_at"),
        Index("ix_reports_status_started", "status", "started_at"),
    )

    def __repr__(self) -> str:
        return f"<Report {self.title} ({self.type}, {self.status})>"

    def get_parameters_dict(self) -> dict[str, Any]:
        """Parse parameters JSON."""
        return load_json(self.parameters, {})

    @property
    def output_format(self) -> ReportFormat:
        return ReportFormat(self.get_parameters_dict().get("format", ReportFormat.JSON.value))
