"""Report template API endpoints."""

from typing import Optional

from fastapi import APIRouter, Body, Query, status

from medreports.api.deps import CurrentIdentity, DbSession
from medreports.models.template import TemplateCategory
from medreports.schemas.common import PageInfo
from medreports.schemas.template import (
    TemplateCreate,
    TemplateDuplicate,
    TemplateListFilters,
    TemplateListResponse,
    TemplatePreview,
    TemplateResponse,
    TemplateSummary,
    TemplateUpdate,
    TemplateValidateRequest,
    ValidationResult,
)
from medreports.services.template import TemplateService, template_view

router = APIRouter()


def get_template_service() -> TemplateService:
    """Get template service instance."""
    return TemplateService()


# =============================================================================
# Template CRUD
# =============================================================================


@router.post("", response_model=TemplateResponse, status_code=status.HTTP_201_CREATED)
async def create_template(
    data: TemplateCreate,
    db: DbSession,
    identity: CurrentIdentity,
) -> TemplateResponse:
    """Create a template. The structure is validated against the report type."""
    template = await get_template_service().create_template(db, identity, data)
    return TemplateResponse(**template_view(template, identity))


@router.get("", response_model=TemplateListResponse)
async def list_templates(
    db: DbSession,
    identity: CurrentIdentity,
    report_type: Optional[str] = Query(None, alias="reportType"),
    category: Optional[TemplateCategory] = Query(None),
    created_by: Optional[str] = Query(None, alias="createdBy"),
    is_public: Optional[bool] = Query(None, alias="isPublic"),
    search: Optional[str] = Query(None),
    tags: Optional[str] = Query(None, description="Comma-separated tags, all required"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
) -> TemplateListResponse:
    """List templates visible to the caller."""
    filters = TemplateListFilters(
        report_type=report_type,
        category=category,
        created_by_id=created_by,
        is_public=is_public,
        search=search,
        tags=[t.strip() for t in tags.split(",") if t.strip()] if tags else [],
    )
    templates, total, summary = await get_template_service().list_templates(
        db, identity, filters, limit=limit, offset=offset
    )
    return TemplateListResponse(
        items=[TemplateResponse(**template_view(t, identity)) for t in templates],
        pagination=PageInfo.build(total, limit, offset),
        summary=TemplateSummary(**summary),
    )


@router.post("/validate", response_model=ValidationResult)
async def validate_template(
    data: TemplateValidateRequest,
    identity: CurrentIdentity,
) -> ValidationResult:
    """Check a template structure without saving it."""
    return get_template_service().validate(data.report_type, data.structure)


@router.get("/{template_id}", response_model=TemplateResponse)
async def get_template(
    template_id: str,
    db: DbSession,
    identity: CurrentIdentity,
) -> TemplateResponse:
    """Get a template by ID."""
    template = await get_template_service().get_template_for(db, template_id, identity)
    return TemplateResponse(**template_view(template, identity))


@router.put("/{template_id}", response_model=TemplateResponse)
async def update_template(
    template_id: str,
    data: TemplateUpdate,
    db: DbSession,
    identity: CurrentIdentity,
) -> TemplateResponse:
    """Update a template. Every update bumps the version."""
    template = await get_template_service().update_template(db, identity, template_id, data)
    return TemplateResponse(**template_view(template, identity))


@router.delete("/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_template(
    template_id: str,
    db: DbSession,
    identity: CurrentIdentity,
) -> None:
    """Soft-delete a template."""
    await get_template_service().delete_template(db, identity, template_id)


@router.post(
    "/{template_id}/duplicate",
    response_model=TemplateResponse,
    status_code=status.HTTP_201_CREATED,
)
async def duplicate_template(
    template_id: str,
    db: DbSession,
    identity: CurrentIdentity,
    data: Optional[TemplateDuplicate] = Body(None),
) -> TemplateResponse:
    """Copy a template into a new private template at version 1.0."""
    template = await get_template_service().duplicate_template(db, identity, template_id, data)
    return TemplateResponse(**template_view(template, identity))


@router.get("/{template_id}/preview", response_model=TemplatePreview)
async def preview_template(
    template_id: str,
    db: DbSession,
    identity: CurrentIdentity,
) -> TemplatePreview:
    """Render the template with placeholder data."""
    return await get_template_service().preview_template(db, identity, template_id)
