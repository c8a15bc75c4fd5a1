"""
ReportExport model - a COMPLETED report re-serialized for delivery.

A single export converts one report into any supported format with
output options; a bulk export bundles several reports into one zip
archive. Both expire after a fixed window and can be deleted early.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from medreports.db.base import SoftDeleteModel, UTCDateTime, dump_json, load_json


class ReportExportKind(str, Enum):
    SINGLE = "SINGLE"
    BULK = "BULK"


class ReportExportStatus(str, Enum):
    """Status of a report export."""

    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    DELETED = "DELETED"


REPORT_EXPORT_TRANSITIONS: dict[ReportExportStatus, frozenset[ReportExportStatus]] = {
    ReportExportStatus.PROCESSING: frozenset(
        {ReportExportStatus.COMPLETED, ReportExportStatus.FAILED}
    ),
    ReportExportStatus.COMPLETED: frozenset({ReportExportStatus.DELETED}),
    ReportExportStatus.FAILED: frozenset({ReportExportStatus.DELETED}),
    ReportExportStatus.DELETED: frozenset(),
}


def report_export_transition_sources(new: ReportExportStatus | str) -> list[str]:
    """Statuses from which ``new`` may be entered."""
    target = ReportExportStatus(new)
    return [src.value for src, targets in REPORT_EXPORT_TRANSITIONS.items() if target in targets]


class ExportDeliveryMethod(str, Enum):
    DOWNLOAD = "DOWNLOAD"
    EMAIL = "EMAIL"


class ExportCompression(str, Enum):
    NONE = "none"
    ZIP = "zip"
    GZIP = "gzip"


class ReportExport(SoftDeleteModel):
    """Report export record."""

    __tablename__ = "report_exports"

    requested_by_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )
    # Set for single exports; bulk exports list theirs in report_ids
    report_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("reports.id"),
        nullable=True,
        index=True,
    )
    report_ids: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    kind: Mapped[str] = mapped_column(
        String(10), nullable=False, default=ReportExportKind.SINGLE.value
    )

    format: Mapped[str] = mapped_column(String(10), nullable=False)
    options: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    delivery_method: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ExportDeliveryMethod.DOWNLOAD.value
    )
    email_recipients: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    email_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ReportExportStatus.PROCESSING.value,
        index=True,
    )

    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_path: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    content_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    report_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    download_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_downloaded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (Index("ix_report_exports_user_created", "requested_by_id", "created_at"),)

    def __repr__(self) -> str:
        return f"<ReportExport {self.kind} {self.format} ({self.status})>"

    def get_report_ids_list(self) -> list[str]:
        return load_json(self.report_ids, [])

    def get_options_dict(self) -> dict[str, Any]:
        return load_json(self.options, {})

    def get_email_recipients_list(self) -> list[str]:
        return load_json(self.email_recipients, [])

    def set_request(
        self,
        report_ids: list[str],
        options: dict[str, Any],
        email_recipients: list[str],
    ) -> None:
        self.report_ids = dump_json(report_ids)
        self.options = dump_json(options)
        self.email_recipients = dump_json(email_recipients)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at
