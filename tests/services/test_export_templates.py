"""
Tests for export templates.
"""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from medreports.core.exceptions import (
    ExportTemplateNotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from medreports.models.export_job import ExportEntityType
from medreports.models.report import ReportFormat
from medreports.schemas.common import Identity
from medreports.schemas.export import ExportRequest, ExportTemplateCreate
from medreports.services.export_job_service import EXPORT_SOURCES, build_export_query
from medreports.services.export_templates import (
    BUILTIN_EXPORT_TEMPLATES,
    ExportTemplateService,
    default_columns,
)


@pytest.fixture
def service() -> ExportTemplateService:
    return ExportTemplateService()


def new_template(**overrides) -> ExportTemplateCreate:
    payload = {"name": "Roster", "entityType": "doctors", "format": "csv"}
    payload.update(overrides)
    return ExportTemplateCreate.model_validate(payload)


@pytest.mark.parametrize("entity_type", list(ExportEntityType), ids=lambda e: e.value)
def test_default_columns_exist_on_the_source(entity_type: ExportEntityType):
    columns = default_columns(entity_type)

    assert columns
    build_export_query(entity_type, {}, columns)


@pytest.mark.parametrize("template", BUILTIN_EXPORT_TEMPLATES, ids=lambda t: t.id)
def test_builtin_templates_are_valid_exports(template):
    assert template.entity_type in EXPORT_SOURCES
    build_export_query(template.entity_type, template.filters, list(template.columns))


class TestExportTemplateService:
    """Tests for listing, saving and applying templates."""

    @pytest.mark.asyncio
    async def test_create_uses_default_columns(
        self, db_session: AsyncSession, agent_identity: Identity, service: ExportTemplateService
    ):
        template = await service.create_template(db_session, agent_identity, new_template())

        assert template.get_columns_list() == default_columns("doctors")
        assert template.created_by_id == agent_identity.user_id

    @pytest.mark.asyncio
    async def test_create_rejects_unknown_columns(
        self, db_session: AsyncSession, agent_identity: Identity, service: ExportTemplateService
    ):
        with pytest.raises(ValidationError) as exc_info:
            await service.create_template(
                db_session,
                agent_identity,
                new_template(columns=["name", "salary"], filters={"shoeSize": 9}),
            )

        assert [e["field"] for e in exc_info.value.errors] == ["filters.shoeSize", "columns"]

    @pytest.mark.asyncio
    async def test_list_builtins_then_own(
        self, db_session: AsyncSession, agent_identity: Identity, other_identity: Identity,
        service: ExportTemplateService,
    ):
        mine = await service.create_template(db_session, agent_identity, new_template())
        await service.create_template(db_session, other_identity, new_template(name="Theirs"))

        views = await service.list_templates(
            db_session, agent_identity, entity_type=ExportEntityType.DOCTORS
        )

        assert [v["id"] for v in views] == [
            "template_doctors_basic",
            "template_doctors_performance",
            mine.id,
        ]
        assert [v["is_builtin"] for v in views] == [True, True, False]

    @pytest.mark.asyncio
    async def test_apply_fills_columns_filters_and_format(
        self, db_session: AsyncSession, agent_identity: Identity, service: ExportTemplateService
    ):
        request = ExportRequest.model_validate(
            {
                "entityType": "doctors",
                "templateId": "template_doctors_basic",
                "filters": {"specialization": "Cardiology"},
            }
        )

        applied = await service.apply_template(db_session, agent_identity, request)

        assert applied.columns == ["name", "email", "specialization", "hospital_name", "is_active"]
        assert applied.filters == {"is_active": True, "specialization": "Cardiology"}
        assert applied.format == ReportFormat.EXCEL

    @pytest.mark.asyncio
    async def test_request_columns_and_format_win(
        self, db_session: AsyncSession, agent_identity: Identity, service: ExportTemplateService
    ):
        request = ExportRequest.model_validate(
            {
                "entityType": "doctors",
                "templateId": "template_doctors_basic",
                "columns": ["name"],
                "format": "csv",
            }
        )

        applied = await service.apply_template(db_session, agent_identity, request)

        assert applied.columns == ["name"]
        assert applied.format == ReportFormat.CSV

    @pytest.mark.asyncio
    async def test_apply_checks_entity_type(
        self, db_session: AsyncSession, agent_identity: Identity, service: ExportTemplateService
    ):
        request = ExportRequest.model_validate(
            {"entityType": "hospitals", "templateId": "template_doctors_basic"}
        )

        with pytest.raises(ValidationError):
            await service.apply_template(db_session, agent_identity, request)

    @pytest.mark.asyncio
    async def test_saved_templates_are_private(
        self, db_session: AsyncSession, agent_identity: Identity, other_identity: Identity,
        admin_identity: Identity, service: ExportTemplateService,
    ):
        template = await service.create_template(db_session, agent_identity, new_template())

        with pytest.raises(PermissionDeniedError):
            await service.get_template(db_session, other_identity, template.id)
        assert (await service.get_template(db_session, admin_identity, template.id))["id"] == (
            template.id
        )
        with pytest.raises(ExportTemplateNotFoundError):
            await service.get_template(db_session, agent_identity, "template_missing")
