"""Service layer modules."""

from medreports.services.audit_service import AuditService
from medreports.services.email_service import EmailService
from medreports.services.export_job_service import ExportService
from medreports.services.notification import NotificationService
from medreports.services.report import ReportService
from medreports.services.report_generation import ReportGenerator
from medreports.services.schedule import ScheduleService
from medreports.services.template import TemplateService

__all__ = [
    "AuditService",
    "EmailService",
    "ExportService",
    "NotificationService",
    "ReportGenerator",
    "ReportService",
    "ScheduleService",
    "TemplateService",
]
