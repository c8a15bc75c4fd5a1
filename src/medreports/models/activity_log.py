"""
ActivityLog model - append-only audit trail.

Rows are written once and never updated. They reference entities by ID
only; the entities themselves live in their own tables.
"""

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from medreports.db.base import BaseModel


class ActivityAction:
    """Audit action names."""

    REPORT_CREATED = "report.created"
    REPORT_GENERATED = "report.generated"
    REPORT_FAILED = "report.failed"
    REPORT_CANCELLED = "report.cancelled"
    REPORT_DELETED = "report.deleted"
    SCHEDULE_CREATED = "schedule.created"
    SCHEDULE_UPDATED = "schedule.updated"
    SCHEDULE_DELETED = "schedule.deleted"
    SCHEDULE_DISPATCHED = "schedule.dispatched"
    TEMPLATE_CREATED = "template.created"
    TEMPLATE_UPDATED = "template.updated"
    TEMPLATE_DUPLICATED = "template.duplicated"
    TEMPLATE_DELETED = "template.deleted"
    EXPORT_COMPLETED = "export.completed"
    EXPORT_FAILED = "export.failed"
    EXPORT_CANCELLED = "export.cancelled"
    EXPORT_TEMPLATE_CREATED = "export_template.created"
    REPORT_EXPORTED = "report_export.completed"
    BULK_REPORT_EXPORTED = "report_export.bulk_completed"
    REPORT_EXPORT_FAILED = "report_export.failed"
    REPORT_EXPORT_DELETED = "report_export.deleted"


class ActivityLog(BaseModel):
    """Audit log entry."""

    __tablename__ = "activity_logs"

    # Nullable for system-initiated actions such as scheduled dispatch
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False)
    details: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    __table_args__ = (Index("ix_activity_logs_entity", "entity_type", "entity_id"),)

    def __repr__(self) -> str:
        return f"<ActivityLog {self.action} {self.entity_type}:{self.entity_id}>"
