"""SQLAlchemy models for medreports."""

from medreports.models.booking import (
    Appointment,
    AppointmentStatus,
    Doctor,
    Hospital,
    Payment,
    PaymentStatus,
    User,
    UserRole,
)
from medreports.models.report import (
    GroupBy,
    Report,
    ReportFormat,
    ReportStatus,
    ReportType,
)
from medreports.models.schedule import DeliveryMethod, ReportSchedule, ScheduleFrequency
from medreports.models.template import ReportTemplate, SectionType, TemplateCategory
from medreports.models.export_job import ExportEntityType, ExportJob, ExportJobStatus
from medreports.models.export_template import ExportTemplate
from medreports.models.report_export import (
    ExportCompression,
    ExportDeliveryMethod,
    ReportExport,
    ReportExportKind,
    ReportExportStatus,
)
from medreports.models.activity_log import ActivityAction, ActivityLog
from medreports.models.notification import Notification

__all__ = [
    # Booking data store
    "Appointment",
    "AppointmentStatus",
    "Doctor",
    "Hospital",
    "Payment",
    "PaymentStatus",
    "User",
    "UserRole",
    # Reports
    "GroupBy",
    "Report",
    "ReportFormat",
    "ReportStatus",
    "ReportType",
    # Schedules
    "DeliveryMethod",
    "ReportSchedule",
    "ScheduleFrequency",
    # Templates
    "ReportTemplate",
    "SectionType",
    "TemplateCategory",
    # Exports
    "ExportEntityType",
    "ExportJob",
    "ExportJobStatus",
    "ExportTemplate",
    # Report exports
    "ExportCompression",
    "ExportDeliveryMethod",
    "ReportExport",
    "ReportExportKind",
    "ReportExportStatus",
    # Audit and notifications
    "ActivityAction",
    "ActivityLog",
    "Notification",
]
