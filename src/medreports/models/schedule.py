"""
ReportSchedule model - recurrence rule attached to a report definition.

The definition report keeps ``scheduled_at`` pointing at the next planned
run. Each dispatch creates a fresh Report row for the run itself.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from medreports.db.base import BaseModel, UTCDateTime, dump_json, load_json, utc_now


# =============================================================================
# Enums
# =============================================================================


class ScheduleFrequency(str, Enum):
    """Report recurrence frequencies."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class DeliveryMethod(str, Enum):
    EMAIL = "EMAIL"
    SYSTEM_NOTIFICATION = "SYSTEM_NOTIFICATION"
    BOTH = "BOTH"


# =============================================================================
# Models
# =============================================================================


class ReportSchedule(BaseModel):
    """
    Recurrence rule for a report definition.

    ``day_of_week`` uses 0=Sunday .. 6=Saturday.
    """

    __tablename__ = "report_schedules"

    report_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("reports.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        doc="Report definition that is regenerated on each run",
    )
    created_by_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id"),
        nullable=False,
    )

    # Recurrence
    frequency: Mapped[str] = mapped_column(String(20), nullable=False)
    day_of_week: Mapped[int | None] = mapped_column(Integer, nullable=True)
    day_of_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    hour: Mapped[int] = mapped_column(Integer, nullable=False, default=9)
    minute: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Recipients (JSON stored as text)
    # Format: [{"user_id": "...", "delivery_method": "EMAIL"}]
    recipients: Mapped[str] = mapped_column(Text, nullable=False, default="[]")

    # Window
    start_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    end_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Run tracking
    next_run_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_run_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_successful_run: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    run_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (Index("ix_report_schedules_due", "is_active", "next_run_at"),)

    def __repr__(self) -> str:
        return f"<ReportSchedule report={self.report_id} {self.frequency}>"

    def get_recipients_list(self) -> list[dict[str, Any]]:
        """Parse recipients JSON."""
        return load_json(self.recipients, [])

    def set_recipients(self, recipients: list[dict[str, Any]]) -> None:
        self.recipients = dump_json(recipients)

    @property
    def last_known_run(self) -> datetime:
        """Anchor for overdue checks: last success, else the start date."""
        return self.last_successful_run or self.start_date

    def has_ended(self, now: datetime) -> bool:
        return self.end_date is not None and now > self.end_date
