"""Template service: CRUD, duplication and previews for report templates."""

from collections import Counter
from typing import Any, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from medreports.core.exceptions import (
    PermissionDeniedError,
    TemplateNotFoundError,
    TemplateStructureInvalidError,
)
from medreports.core.logging import get_logger
from medreports.db.base import dump_json
from medreports.models.activity_log import ActivityAction
from medreports.models.booking import User
from medreports.models.template import ReportTemplate
from medreports.schemas.common import Identity
from medreports.schemas.template import (
    TemplateCreate,
    TemplateDuplicate,
    TemplateListFilters,
    TemplatePreview,
    TemplateStructure,
    TemplateUpdate,
    ValidationResult,
)
from medreports.services import template_engine
from medreports.services.audit_service import AuditService

logger = get_logger(__name__)


# =============================================================================
# Capabilities
# =============================================================================


def is_owner_or_admin(template: ReportTemplate, identity: Identity) -> bool:
    return template.created_by_id == identity.user_id or identity.is_admin


def can_view(template: ReportTemplate, identity: Identity) -> bool:
    """Public, owned, admin, or explicitly shared by role or user."""
    if template.is_public or is_owner_or_admin(template, identity):
        return True
    permissions = template.get_permissions_dict()
    return (
        identity.role in permissions["allowed_roles"]
        or identity.user_id in permissions["allowed_users"]
    )


def template_view(template: ReportTemplate, identity: Identity) -> dict[str, Any]:
    """Template fields with decoded documents and the caller's capabilities."""
    manage = is_owner_or_admin(template, identity)
    return {
        **template.to_dict(),
        "layout": template.get_layout_dict(),
        "structure": template.get_structure_dict(),
        "styling": template.get_styling_dict(),
        "permissions": template.get_permissions_dict(),
        "tags": template.get_tags_list(),
        "can_edit": manage,
        "can_delete": manage,
        "can_duplicate": can_view(template, identity),
    }


def _require_valid(structure: TemplateStructure, report_type: str) -> None:
    result = template_engine.validate_structure(structure, report_type)
    if not result.is_valid:
        raise TemplateStructureInvalidError(result.errors)


def _like_escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _json_contains(column: Any, value: str) -> Any:
    """Match a JSON-array text column containing ``value`` as an element."""
    return column.like(f"%{_like_escape(dump_json(value))}%", escape="\\")


# =============================================================================
# Template Service
# =============================================================================


class TemplateService:
    """Service for report template operations."""

    def __init__(self) -> None:
        self.audit = AuditService()

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    async def get_template(self, db: AsyncSession, template_id: str) -> ReportTemplate:
        """Get an active template.

        Raises:
            TemplateNotFoundError: If missing or deleted
        """
        template = await db.get(ReportTemplate, template_id)
        if not template or template.is_deleted or not template.is_active:
            raise TemplateNotFoundError(template_id)
        return template

    async def get_template_for(
        self,
        db: AsyncSession,
        template_id: str,
        identity: Identity,
    ) -> ReportTemplate:
        """Get a template the caller may see.

        Raises:
            TemplateNotFoundError: If missing or deleted
            PermissionDeniedError: If the template is not shared with the caller
        """
        template = await self.get_template(db, template_id)
        if not can_view(template, identity):
            raise PermissionDeniedError(resource="template", action="view")
        return template

    async def _get_manageable(
        self,
        db: AsyncSession,
        template_id: str,
        identity: Identity,
        action: str,
    ) -> ReportTemplate:
        template = await self.get_template(db, template_id)
        if not is_owner_or_admin(template, identity):
            raise PermissionDeniedError(resource="template", action=action)
        return template

    # -------------------------------------------------------------------------
    # CRUD Operations
    # -------------------------------------------------------------------------

    async def create_template(
        self,
        db: AsyncSession,
        identity: Identity,
        data: TemplateCreate,
    ) -> ReportTemplate:
        """Create a template.

        Args:
            db: Database session
            identity: Caller, recorded as creator
            data: Template definition

        Returns:
            Created template at version 1.0

        Raises:
            TemplateStructureInvalidError: With every structure violation
        """
        _require_valid(data.structure, data.report_type)

        author = await db.get(User, identity.user_id)
        template = ReportTemplate(
            name=data.name,
            description=data.description,
            report_type=data.report_type,
            category=data.category.value,
            version="1.0",
            author=author.name if author else None,
            created_by_id=identity.user_id,
            usage_count=0,
            is_active=True,
        )
        template.set_documents(
            layout=data.layout.model_dump(mode="json"),
            structure=data.structure.model_dump(mode="json"),
            styling=data.styling.model_dump(mode="json"),
        )
        template.set_permissions(data.permissions.model_dump())
        template.set_tags(data.tags)
        db.add(template)
        await db.flush()

        await self.audit.log_action(
            db,
            action=ActivityAction.TEMPLATE_CREATED,
            entity_type="template",
            entity_id=template.id,
            user_id=identity.user_id,
            details={"name": template.name, "report_type": template.report_type},
        )
        await db.commit()

        logger.info(
            "Template created",
            extra={"template_id": template.id, "report_type": template.report_type},
        )
        return template

    async def list_templates(
        self,
        db: AsyncSession,
        identity: Identity,
        filters: Optional[TemplateListFilters] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[ReportTemplate], int, dict[str, Any]]:
        """List templates visible to the caller.

        Returns:
            Tuple of (page of templates, total, summary by category and type)
        """
        filters = filters or TemplateListFilters()
        conditions: list[Any] = [
            ReportTemplate.deleted_at.is_(None),
            ReportTemplate.is_active.is_(True),
        ]
        if not identity.is_admin:
            conditions.append(
                or_(
                    ReportTemplate.is_public.is_(True),
                    ReportTemplate.created_by_id == identity.user_id,
                    _json_contains(ReportTemplate.allowed_users, identity.user_id),
                    _json_contains(ReportTemplate.allowed_roles, identity.role),
                )
            )
        if filters.report_type:
            conditions.append(ReportTemplate.report_type == filters.report_type)
        if filters.category:
            conditions.append(ReportTemplate.category == filters.category.value)
        if filters.created_by_id:
            conditions.append(ReportTemplate.created_by_id == filters.created_by_id)
        if filters.is_public is not None:
            conditions.append(ReportTemplate.is_public == filters.is_public)
        if filters.search:
            pattern = f"%{_like_escape(filters.search)}%"
            conditions.append(
                or_(
                    ReportTemplate.name.ilike(pattern, escape="\\"),
                    ReportTemplate.description.ilike(pattern, escape="\\"),
                )
            )
        for tag in filters.tags:
            conditions.append(_json_contains(ReportTemplate.tags, tag))

        result = await db.execute(
            select(ReportTemplate)
            .where(*conditions)
            .order_by(ReportTemplate.usage_count.desc(), ReportTemplate.name, ReportTemplate.id)
        )
        templates = list(result.scalars().all())

        summary = {
            "total": len(templates),
            "public": sum(1 for t in templates if t.is_public),
            "by_category": dict(Counter(t.category for t in templates)),
            "by_report_type": dict(Counter(t.report_type for t in templates)),
        }
        return templates[offset : offset + limit], len(templates), summary

    async def update_template(
        self,
        db: AsyncSession,
        identity: Identity,
        template_id: str,
        data: TemplateUpdate,
    ) -> ReportTemplate:
        """Update a template; every update bumps the minor version.

        Raises:
            TemplateNotFoundError: If missing or deleted
            PermissionDeniedError: If the caller may not edit it
            TemplateStructureInvalidError: If a new structure is invalid
        """
        template = await self._get_manageable(db, template_id, identity, "edit")

        if data.structure is not None:
            _require_valid(data.structure, template.report_type)

        if data.name is not None:
            template.name = data.name
        if data.description is not None:
            template.description = data.description
        if data.category is not None:
            template.category = data.category.value
        template.set_documents(
            layout=data.layout.model_dump(mode="json") if data.layout else None,
            structure=data.structure.model_dump(mode="json") if data.structure else None,
            styling=data.styling.model_dump(mode="json") if data.styling else None,
        )
        if data.permissions is not None:
            template.set_permissions(data.permissions.model_dump())
        if data.tags is not None:
            template.set_tags(data.tags)
        template.version = template_engine.increment_version(template.version)

        await self.audit.log_action(
            db,
            action=ActivityAction.TEMPLATE_UPDATED,
            entity_type="template",
            entity_id=template.id,
            user_id=identity.user_id,
            details={
                "version": template.version,
                "fields": sorted(data.model_dump(exclude_unset=True)),
            },
        )
        await db.commit()
        return template

    async def duplicate_template(
        self,
        db: AsyncSession,
        identity: Identity,
        template_id: str,
        data: Optional[TemplateDuplicate] = None,
    ) -> ReportTemplate:
        """Copy a template the caller can see. The copy is private, at version 1.0."""
        original = await self.get_template_for(db, template_id, identity)
        author = await db.get(User, identity.user_id)

        copy = ReportTemplate(
            name=(data.name if data and data.name else f"{original.name} (Copy)"),
            description=original.description,
            report_type=original.report_type,
            category=original.category,
            layout=original.layout,
            structure=original.structure,
            styling=original.styling,
            is_public=False,
            allowed_roles="[]",
            allowed_users="[]",
            version="1.0",
            author=author.name if author else original.author,
            tags=original.tags,
            usage_count=0,
            is_active=True,
            original_template_id=original.id,
            created_by_id=identity.user_id,
        )
        db.add(copy)
        await db.flush()

        await self.audit.log_action(
            db,
            action=ActivityAction.TEMPLATE_DUPLICATED,
            entity_type="template",
            entity_id=copy.id,
            user_id=identity.user_id,
            details={"original_template_id": original.id},
        )
        await db.commit()
        return copy

    async def delete_template(
        self,
        db: AsyncSession,
        identity: Identity,
        template_id: str,
    ) -> None:
        """Soft-delete a template; reports keep their reference."""
        template = await self._get_manageable(db, template_id, identity, "delete")
        template.deactivate()

        await self.audit.log_action(
            db,
            action=ActivityAction.TEMPLATE_DELETED,
            entity_type="template",
            entity_id=template.id,
            user_id=identity.user_id,
        )
        await db.commit()

    # -------------------------------------------------------------------------
    # Validation & Preview
    # -------------------------------------------------------------------------

    def validate(self, report_type: str, structure: TemplateStructure) -> ValidationResult:
        return template_engine.validate_structure(structure, report_type)

    async def preview_template(
        self,
        db: AsyncSession,
        identity: Identity,
        template_id: str,
    ) -> TemplatePreview:
        template = await self.get_template_for(db, template_id, identity)
        return template_engine.preview(
            name=template.name,
            report_type=template.report_type,
            structure=template.get_structure_dict(),
            layout=template.get_layout_dict(),
            template_id=template.id,
        )
