"""
Export templates.

Built-in templates give each entity collection ready-made column sets;
users can save their own alongside them. A template can be named in an
export request to supply its columns, filters and format.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from medreports.core.exceptions import (
    ExportTemplateNotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from medreports.core.logging import get_logger
from medreports.models.activity_log import ActivityAction
from medreports.models.export_job import ExportEntityType
from medreports.models.export_template import ExportTemplate
from medreports.models.report import ReportFormat
from medreports.schemas.common import Identity
from medreports.schemas.export import ExportRequest, ExportTemplateCreate
from medreports.services.audit_service import AuditService
from medreports.services.export_job_service import build_export_query

logger = get_logger(__name__)


@dataclass(frozen=True)
class BuiltinExportTemplate:
    id: str
    name: str
    description: str
    entity_type: ExportEntityType
    format: ReportFormat
    columns: tuple[str, ...]
    filters: dict[str, Any] = field(default_factory=dict)
    is_default: bool = False


DEFAULT_EXPORT_COLUMNS: dict[ExportEntityType, tuple[str, ...]] = {
    ExportEntityType.APPOINTMENTS: (
        "appointment_number",
        "patient_name",
        "patient_email",
        "patient_phone",
        "doctor_name",
        "hospital_name",
        "session_date",
        "status",
        "payment_status",
        "amount",
        "created_at",
    ),
    ExportEntityType.PATIENTS: ("patient_name", "patient_email", "patient_phone", "created_at"),
    ExportEntityType.DOCTORS: (
        "name",
        "email",
        "specialization",
        "hospital_name",
        "is_active",
        "created_at",
    ),
    ExportEntityType.HOSPITALS: ("name", "city", "doctor_count", "is_active", "created_at"),
    ExportEntityType.USERS: ("name", "email", "phone", "role", "is_active", "created_at"),
    ExportEntityType.PAYMENTS: (
        "amount",
        "payment_method",
        "status",
        "appointment_number",
        "patient_name",
        "created_at",
    ),
    ExportEntityType.REPORTS: (
        "title",
        "type",
        "status",
        "record_count",
        "generated_by_name",
        "created_at",
        "completed_at",
    ),
    ExportEntityType.AUDIT_LOGS: (
        "action",
        "entity_type",
        "entity_id",
        "user_name",
        "user_email",
        "created_at",
    ),
}


def default_columns(entity_type: ExportEntityType | str) -> list[str]:
    """Columns a new template gets when it names none."""
    return list(DEFAULT_EXPORT_COLUMNS.get(ExportEntityType(entity_type), ()))


BUILTIN_EXPORT_TEMPLATES: tuple[BuiltinExportTemplate, ...] = (
    BuiltinExportTemplate(
        id="template_appointments_basic",
        name="Basic Appointment Report",
        description="Essential appointment information",
        entity_type=ExportEntityType.APPOINTMENTS,
        format=ReportFormat.EXCEL,
        columns=(
            "appointment_number",
            "patient_name",
            "patient_email",
            "patient_phone",
            "doctor_name",
            "hospital_name",
            "session_date",
            "status",
            "amount",
        ),
        is_default=True,
    ),
    BuiltinExportTemplate(
        id="template_appointments_detailed",
        name="Detailed Appointment Report",
        description="Comprehensive appointment information including booking agent",
        entity_type=ExportEntityType.APPOINTMENTS,
        format=ReportFormat.EXCEL,
        columns=(
            "appointment_number",
            "patient_name",
            "patient_email",
            "patient_phone",
            "doctor_name",
            "specialization",
            "hospital_name",
            "session_date",
            "status",
            "payment_status",
            "amount",
            "rating",
            "booked_by_name",
            "booked_by_email",
            "created_at",
        ),
    ),
    BuiltinExportTemplate(
        id="template_appointments_financial",
        name="Financial Appointment Report",
        description="Appointment report focused on payment data",
        entity_type=ExportEntityType.APPOINTMENTS,
        format=ReportFormat.EXCEL,
        columns=(
            "appointment_number",
            "patient_name",
            "doctor_name",
            "hospital_name",
            "session_date",
            "status",
            "payment_status",
            "amount",
        ),
    ),
    BuiltinExportTemplate(
        id="template_patients_basic",
        name="Basic Patient List",
        description="Patient contact information",
        entity_type=ExportEntityType.PATIENTS,
        format=ReportFormat.CSV,
        columns=("patient_name", "patient_email", "patient_phone"),
        is_default=True,
    ),
    BuiltinExportTemplate(
        id="template_doctors_basic",
        name="Doctor Directory",
        description="Active doctors with their specialization and hospital",
        entity_type=ExportEntityType.DOCTORS,
        format=ReportFormat.EXCEL,
        columns=("name", "email", "specialization", "hospital_name", "is_active"),
        filters={"is_active": True},
        is_default=True,
    ),
    BuiltinExportTemplate(
        id="template_doctors_performance",
        name="Doctor Performance Report",
        description="Doctors with their appointment counts",
        entity_type=ExportEntityType.DOCTORS,
        format=ReportFormat.EXCEL,
        columns=(
            "name",
            "specialization",
            "hospital_name",
            "appointment_count",
            "is_active",
            "created_at",
        ),
    ),
    BuiltinExportTemplate(
        id="template_hospitals_directory",
        name="Hospital Directory",
        description="Active hospitals with doctor and appointment counts",
        entity_type=ExportEntityType.HOSPITALS,
        format=ReportFormat.EXCEL,
        columns=("name", "city", "doctor_count", "appointment_count", "is_active"),
        filters={"is_active": True},
        is_default=True,
    ),
    BuiltinExportTemplate(
        id="template_users_agents",
        name="Agent User List",
        description="Agent users with contact information",
        entity_type=ExportEntityType.USERS,
        format=ReportFormat.CSV,
        columns=("name", "email", "phone", "is_active", "appointment_count", "created_at"),
        filters={"role": "AGENT"},
        is_default=True,
    ),
    BuiltinExportTemplate(
        id="template_payments_summary",
        name="Payment Summary Report",
        description="Payment transactions summary",
        entity_type=ExportEntityType.PAYMENTS,
        format=ReportFormat.EXCEL,
        columns=(
            "amount",
            "payment_method",
            "status",
            "appointment_number",
            "patient_name",
            "doctor_name",
            "created_at",
        ),
        is_default=True,
    ),
)

_BUILTINS_BY_ID = {t.id: t for t in BUILTIN_EXPORT_TEMPLATES}


def builtin_template_view(template: BuiltinExportTemplate) -> dict[str, Any]:
    return {
        "id": template.id,
        "name": template.name,
        "description": template.description,
        "entity_type": template.entity_type,
        "format": template.format,
        "columns": list(template.columns),
        "filters": dict(template.filters),
        "is_default": template.is_default,
        "is_builtin": True,
    }


def export_template_view(template: ExportTemplate) -> dict[str, Any]:
    return {
        "id": template.id,
        "name": template.name,
        "description": template.description,
        "entity_type": template.entity_type,
        "format": template.format,
        "columns": template.get_columns_list(),
        "filters": template.get_filters_dict(),
        "is_default": False,
        "is_builtin": False,
        "created_by_id": template.created_by_id,
        "created_at": template.created_at,
    }


class ExportTemplateService:
    """Service for built-in and saved export templates."""

    def __init__(self) -> None:
        self.audit = AuditService()

    async def list_templates(
        self,
        db: AsyncSession,
        identity: Identity,
        entity_type: Optional[ExportEntityType] = None,
    ) -> list[dict[str, Any]]:
        """Built-in templates first, then the caller's saved ones (admins see all)."""
        views = [
            builtin_template_view(t)
            for t in BUILTIN_EXPORT_TEMPLATES
            if entity_type is None or t.entity_type == entity_type
        ]

        conditions: list[Any] = []
        if not identity.is_admin:
            conditions.append(ExportTemplate.created_by_id == identity.user_id)
        if entity_type:
            conditions.append(ExportTemplate.entity_type == entity_type.value)
        result = await db.execute(
            select(ExportTemplate)
            .where(*conditions)
            .order_by(ExportTemplate.created_at.desc(), ExportTemplate.id)
        )
        views.extend(export_template_view(t) for t in result.scalars().all())
        return views

    async def get_template(
        self,
        db: AsyncSession,
        identity: Identity,
        template_id: str,
    ) -> dict[str, Any]:
        """Resolve a built-in or saved template.

        Raises:
            ExportTemplateNotFoundError: If no template has this id
            PermissionDeniedError: If a saved template belongs to someone else
        """
        builtin = _BUILTINS_BY_ID.get(template_id)
        if builtin is not None:
            return builtin_template_view(builtin)

        template = await db.get(ExportTemplate, template_id)
        if template is None:
            raise ExportTemplateNotFoundError(template_id)
        if template.created_by_id != identity.user_id and not identity.is_admin:
            raise PermissionDeniedError(resource="export_template", action="use")
        return export_template_view(template)

    async def create_template(
        self,
        db: AsyncSession,
        identity: Identity,
        data: ExportTemplateCreate,
    ) -> ExportTemplate:
        """Save an export template.

        Raises:
            ValidationError: Listing every unknown column or filter key
        """
        columns = data.columns or default_columns(data.entity_type)
        build_export_query(data.entity_type, data.filters, columns)

        template = ExportTemplate(
            name=data.name,
            description=data.description,
            entity_type=data.entity_type.value,
            format=ReportFormat(data.format).value,
            created_by_id=identity.user_id,
        )
        template.set_definition(columns, data.filters)
        db.add(template)
        await db.flush()

        await self.audit.log_action(
            db,
            action=ActivityAction.EXPORT_TEMPLATE_CREATED,
            entity_type="export_template",
            entity_id=template.id,
            user_id=identity.user_id,
            details={"name": template.name, "entity_type": template.entity_type},
        )
        await db.commit()
        logger.info(
            "Export template created",
            extra={"template_id": template.id, "entity_type": template.entity_type},
        )
        return template

    async def apply_template(
        self,
        db: AsyncSession,
        identity: Identity,
        data: ExportRequest,
    ) -> ExportRequest:
        """Fill an export request from its template.

        Columns and format the request sets itself win; filters are merged
        with the request's keys taking precedence.

        Raises:
            ExportTemplateNotFoundError: If the template does not exist
            ValidationError: If the template is for another entity type
        """
        if not data.template_id:
            return data
        template = await self.get_template(db, identity, data.template_id)
        if ExportEntityType(template["entity_type"]) != data.entity_type:
            raise ValidationError(
                "Export template does not match the entity type",
                [
                    {
                        "field": "templateId",
                        "message": (
                            f"Template is for {ExportEntityType(template['entity_type']).value}, "
                            f"export is for {data.entity_type.value}"
                        ),
                    }
                ],
            )
        update: dict[str, Any] = {
            "columns": data.columns or template["columns"],
            "filters": {**template["filters"], **data.filters},
        }
        if "format" not in data.model_fields_set:
            update["format"] = ReportFormat(template["format"])
        return data.model_copy(update=update)
